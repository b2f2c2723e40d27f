"""
Frame source backed by cv2.VideoCapture.

One class covers the three ways the inspection camera view gets frames:
a device index, a network stream URL, or a video file. Files can loop,
which is how the prerecorded demonstration clip keeps playing.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import cv2
import numpy as np

from models.frame import FrameData
from .base import ObservationConfig, ObservationSource

# Rotation in degrees -> cv2.rotate code
_ROTATIONS = {
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}

# Live sources get this many reconnect attempts before read() gives up
MAX_READ_FAILURES = 3


@dataclass
class OpenCVSourceConfig(ObservationConfig):
    """
    Configuration for a VideoCapture-backed source.

    Attributes:
        device_id: Device index, stream URL or video file path.
        loop: Rewind a video file when it runs out (demonstration mode).
        buffer_size: Driver-side frame buffer for devices; 1 keeps the view live.
        max_retries: Open attempts before giving up.
        swap_rb: Swap the red and blue channels.
        rotate: Clockwise rotation in degrees: 0, 90, 180 or 270.
        flip_horizontal: Mirror left-right.
        flip_vertical: Mirror top-bottom.
    """
    device_id: Union[int, str] = 0
    loop: bool = False
    buffer_size: int = 1
    max_retries: int = 3
    swap_rb: bool = False
    rotate: int = 0
    flip_horizontal: bool = False
    flip_vertical: bool = False

    @classmethod
    def from_camera_config(cls, camera_cfg: Dict[str, Any], source_id: str = "camera") -> "OpenCVSourceConfig":
        """Adapter: build from the ``camera`` section of the app config."""
        resolution = camera_cfg.get("resolution")
        return cls(
            source_id=source_id,
            resolution=tuple(resolution) if resolution else None,
            fps=camera_cfg.get("fps"),
            device_id=camera_cfg.get("device_id", 0),
            buffer_size=camera_cfg.get("buffer_size", 1),
            max_retries=camera_cfg.get("max_retries", 3),
            swap_rb=camera_cfg.get("swap_rb", False),
            rotate=camera_cfg.get("rotate", 0) or 0,
            flip_horizontal=camera_cfg.get("flip_horizontal", False),
            flip_vertical=camera_cfg.get("flip_vertical", False),
        )

    @classmethod
    def for_demo_clip(cls, clip_path: str) -> "OpenCVSourceConfig":
        """Config for the looping prerecorded clip used in demonstration mode."""
        return cls(source_id="demo-clip", device_id=clip_path, loop=True)

    @property
    def flip_code(self) -> Optional[int]:
        """cv2.flip code for the configured mirroring, or None for no flip."""
        if self.flip_horizontal and self.flip_vertical:
            return -1
        if self.flip_horizontal:
            return 1
        if self.flip_vertical:
            return 0
        return None


class OpenCVSource(ObservationSource):
    """
    Example:
        source = OpenCVSource(OpenCVSourceConfig.for_demo_clip("samples/clip.mp4"))
        with source:
            frame_data = source.read()
    """

    def __init__(self, config: OpenCVSourceConfig):
        super().__init__(config)
        self._cv_config = config
        self._cap: Optional[cv2.VideoCapture] = None
        self._read_failures = 0

    @property
    def device_id(self) -> Union[int, str]:
        return self._cv_config.device_id

    @property
    def is_file(self) -> bool:
        return isinstance(self.device_id, str) and os.path.isfile(self.device_id)

    @property
    def is_stream(self) -> bool:
        return isinstance(self.device_id, str) and "://" in self.device_id

    def open(self) -> None:
        """
        Raises:
            RuntimeError: If a video file is missing or the device never opens.
        """
        if self._is_open:
            return
        if isinstance(self.device_id, str) and not self.is_stream and not self.is_file:
            raise RuntimeError(f"Video file not found: {self.device_id}")

        self._cap = self._connect()
        self._is_open = True
        self._frame_index = 0
        self._read_failures = 0
        self._forget()
        logging.info(
            f"Frame source {self.source_id} opened: device={self.device_id}, loop={self._cv_config.loop}"
        )

    def _connect(self) -> cv2.VideoCapture:
        attempts = max(1, self._cv_config.max_retries)
        for attempt in range(1, attempts + 1):
            cap = cv2.VideoCapture(self.device_id)
            if cap.isOpened():
                self._configure_device(cap)
                return cap
            cap.release()
            if attempt < attempts:
                backoff = min(2 ** attempt, 10)
                logging.warning(
                    f"Could not open {self.device_id} (attempt {attempt}/{attempts}), retrying in {backoff}s"
                )
                time.sleep(backoff)
        raise RuntimeError(f"Could not open {self.device_id} after {attempts} attempts")

    def _configure_device(self, cap: cv2.VideoCapture) -> None:
        # Capture properties only apply to local devices
        if not isinstance(self.device_id, int):
            return
        cfg = self._cv_config
        if cfg.resolution:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, cfg.resolution[0])
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg.resolution[1])
        if cfg.fps:
            cap.set(cv2.CAP_PROP_FPS, cfg.fps)
        cap.set(cv2.CAP_PROP_BUFFERSIZE, cfg.buffer_size)
        logging.info(
            f"Camera {self.device_id} reports "
            f"{cap.get(cv2.CAP_PROP_FRAME_WIDTH):.0f}x{cap.get(cv2.CAP_PROP_FRAME_HEIGHT):.0f} "
            f"@ {cap.get(cv2.CAP_PROP_FPS):.0f} fps"
        )

    def read(self) -> Optional[FrameData]:
        if not self._is_open or self._cap is None:
            return None

        frame = self._grab()
        if frame is None:
            self._on_read_failure()
            return None

        self._read_failures = 0
        frame = self._transform(frame)
        self._frame_index += 1
        return self._remember(FrameData.from_numpy(
            frame,
            timestamp=time.time(),
            frame_index=self._frame_index,
            source=self.source_id,
        ))

    def _grab(self) -> Optional[np.ndarray]:
        ok, frame = self._cap.read()
        if ok and frame is not None:
            return frame
        if self._cv_config.loop and self.is_file:
            self._cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
            ok, frame = self._cap.read()
            if ok and frame is not None:
                return frame
        return None

    def _on_read_failure(self) -> None:
        if self.is_file:
            logging.info(f"Frame source {self.source_id}: end of file")
            return
        self._read_failures += 1
        if self._read_failures > MAX_READ_FAILURES:
            if self._read_failures == MAX_READ_FAILURES + 1:
                logging.error(f"Frame source {self.source_id}: giving up after {MAX_READ_FAILURES} reconnects")
            return
        logging.warning(f"Frame source {self.source_id}: read failed ({self._read_failures}), reconnecting")
        self._cap.release()
        try:
            self._cap = self._connect()
        except RuntimeError as e:
            logging.error(f"Frame source {self.source_id}: reconnect failed: {e}")

    def _transform(self, frame: np.ndarray) -> np.ndarray:
        cfg = self._cv_config
        if cfg.rotate in _ROTATIONS:
            frame = cv2.rotate(frame, _ROTATIONS[cfg.rotate])
        if cfg.flip_code is not None:
            frame = cv2.flip(frame, cfg.flip_code)
        if cfg.swap_rb:
            frame = np.ascontiguousarray(frame[..., ::-1])
        return frame

    def close(self) -> None:
        """Release the capture handle. Synchronous and idempotent."""
        cap, self._cap = self._cap, None
        if cap is not None:
            cap.release()
        was_open = self._is_open
        self._is_open = False
        self._forget()
        if was_open:
            logging.info(f"Frame source {self.source_id} closed")


def create_source_from_config(
    camera_cfg: Dict[str, Any],
    demo: bool = False,
    source_id: str = "camera",
) -> OpenCVSource:
    """Factory: live camera source, or the looping demo clip when ``demo``."""
    if demo:
        clip = camera_cfg.get("demo_clip", "samples/street_gutter_debris.mp4")
        return OpenCVSource(OpenCVSourceConfig.for_demo_clip(clip))
    return OpenCVSource(OpenCVSourceConfig.from_camera_config(camera_cfg, source_id=source_id))
