"""
Typed models for the inspection capture application.
"""

from .frame import FrameData
from .detection import (
    BoundingBox,
    ClassTally,
    Detection,
    DetectionBatch,
    EMPTY_BATCH,
    RECOGNIZED_CLASSES,
    filter_detections,
    tally_by_class,
)
from .image import AnonymizedImage, CapturedImage, EncodedImage, FaceRegion
from .draft import (
    DraftRecord,
    InspectionRecord,
    MUNICIPALITIES,
    Municipality,
    get_municipality,
    liters_from_fill,
)
from .status import LoopState, LoopStats, PipelineStatus, StatusLevel
from .config import (
    Config,
    CameraConfig,
    BackendConfig,
    ModelFilesConfig,
    ModelsConfig,
    DetectionConfig,
    CaptureConfig,
    DraftConfig,
    StorageConfig,
)

__all__ = [
    # Frame
    "FrameData",
    # Detection
    "BoundingBox",
    "ClassTally",
    "Detection",
    "DetectionBatch",
    "EMPTY_BATCH",
    "RECOGNIZED_CLASSES",
    "filter_detections",
    "tally_by_class",
    # Images
    "AnonymizedImage",
    "CapturedImage",
    "EncodedImage",
    "FaceRegion",
    # Draft
    "DraftRecord",
    "InspectionRecord",
    "MUNICIPALITIES",
    "Municipality",
    "get_municipality",
    "liters_from_fill",
    # Status
    "LoopState",
    "LoopStats",
    "PipelineStatus",
    "StatusLevel",
    # Config
    "Config",
    "CameraConfig",
    "BackendConfig",
    "ModelFilesConfig",
    "ModelsConfig",
    "DetectionConfig",
    "CaptureConfig",
    "DraftConfig",
    "StorageConfig",
]
