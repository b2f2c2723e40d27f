"""
ObservationSource interface for the frame source.

The detection loop's host owns the source for its whole lifetime. Readers
(the detection loop, the capture pipeline) only look at ``latest`` and never
open, close or mutate the source.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterator, Optional

from models.frame import FrameData


@dataclass
class ObservationConfig:
    """
    Base configuration for observation sources.

    Attributes:
        source_id: Identifier for this source (e.g. "camera", "demo-clip").
        resolution: Target resolution as (width, height). None = use source default.
        fps: Target frames per second. None = use source default.
    """
    source_id: str = "default"
    resolution: Optional[tuple[int, int]] = None
    fps: Optional[int] = None


class ObservationSource(ABC):
    """
    Abstract base class for frame sources.

    Lifecycle:
        1. Create instance with config
        2. Call open() to start the source
        3. Call read() once per render tick; the result is also kept as ``latest``
        4. Call close() to release the device or file handle

    Can also be used as a context manager:
        with OpenCVSource(config) as source:
            for frame_data in source:
                render(frame_data)
    """

    def __init__(self, config: ObservationConfig):
        self._config = config
        self._is_open = False
        self._frame_index = 0
        self._latest: Optional[FrameData] = None

    @property
    def source_id(self) -> str:
        return self._config.source_id

    @property
    def is_open(self) -> bool:
        return self._is_open

    @property
    def frame_index(self) -> int:
        """Number of frames read since open."""
        return self._frame_index

    @property
    def latest(self) -> Optional[FrameData]:
        """Most recent frame read, or None before the first frame / after close."""
        return self._latest

    @property
    def has_enough_data(self) -> bool:
        """True when a current frame is available to read pixels from."""
        return self._is_open and self._latest is not None

    @property
    def width(self) -> int:
        return self._latest.width if self._latest is not None else 0

    @property
    def height(self) -> int:
        return self._latest.height if self._latest is not None else 0

    @abstractmethod
    def open(self) -> None:
        """
        Open/start the source.

        Raises:
            RuntimeError: If the source cannot be opened.
        """

    @abstractmethod
    def read(self) -> Optional[FrameData]:
        """
        Read the next frame and remember it as ``latest``.

        Returns None if no frame is available.
        """

    @abstractmethod
    def close(self) -> None:
        """
        Release the source's resources. Safe to call multiple times.
        """

    def _remember(self, frame_data: Optional[FrameData]) -> Optional[FrameData]:
        if frame_data is not None:
            self._latest = frame_data
        return frame_data

    def _forget(self) -> None:
        self._latest = None

    def __enter__(self) -> "ObservationSource":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __iter__(self) -> Iterator[FrameData]:
        if not self._is_open:
            raise RuntimeError("Source must be open before iterating")

        while True:
            frame_data = self.read()
            if frame_data is None:
                break
            yield frame_data
