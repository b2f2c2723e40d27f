"""
Pipeline module for the inspection capture system.

- DetectionLoop: throttled object detection driven by the render cadence
- CapturePipeline: snapshot, face blur, compress, tally and draft handoff
- OverlaySurface: detection overlay drawn onto displayed frames
"""

from .capture import Anonymizer, CapturePipeline, CaptureResult, blur_regions, compress, snapshot_frame
from .loop import DetectionLoop, DetectionLoopConfig, create_detection_loop
from .overlay import OverlaySurface, RenderSurface

__all__ = [
    "Anonymizer",
    "CapturePipeline",
    "CaptureResult",
    "blur_regions",
    "compress",
    "snapshot_frame",
    "DetectionLoop",
    "DetectionLoopConfig",
    "create_detection_loop",
    "OverlaySurface",
    "RenderSurface",
]
