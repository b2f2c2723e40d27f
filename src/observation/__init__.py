"""
Observation layer for the frame source.

This layer abstracts where frames come from (live camera, network stream,
or the looping demonstration clip) from the detection and capture pipeline.
Each source implements the ObservationSource interface and returns
FrameData objects.
"""

from .base import ObservationSource, ObservationConfig
from .opencv_source import OpenCVSource, OpenCVSourceConfig, create_source_from_config

__all__ = [
    "ObservationSource",
    "ObservationConfig",
    "OpenCVSource",
    "OpenCVSourceConfig",
    "create_source_from_config",
]
