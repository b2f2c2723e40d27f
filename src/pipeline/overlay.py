"""
Render surface for the detection overlay.

The detection loop only asks the surface to resize and to clear-and-draw a
batch of detections. It never owns the display window.
"""

from __future__ import annotations

from typing import Iterable, Optional, Protocol, Tuple

import cv2
import numpy as np

from models.detection import Detection

# Colors (BGR)
COLOR_BOX = (0, 255, 0)
COLOR_TEXT = (255, 255, 255)


class RenderSurface(Protocol):
    """What the detection loop needs from a display surface."""

    def resize(self, width: int, height: int) -> None:
        ...

    def draw_overlay(self, detections: Iterable[Detection]) -> None:
        ...


class OverlaySurface:
    """
    A reusable BGR canvas holding the detection overlay.

    The canvas is composited onto each displayed frame by the host render
    loop, so redraws happen only when a new batch is published.

    Example:
        surface = OverlaySurface()
        surface.resize(1280, 720)
        surface.draw_overlay(batch)
        cv2.imshow("Inspection", surface.compose(frame))
    """

    def __init__(self, line_thickness: int = 2, font_scale: float = 0.5):
        self.line_thickness = line_thickness
        self.font_scale = font_scale
        self._canvas: Optional[np.ndarray] = None
        self._mask: Optional[np.ndarray] = None
        self.draw_count = 0
        self.resize_count = 0

    @property
    def size(self) -> Tuple[int, int]:
        if self._canvas is None:
            return (0, 0)
        return (self._canvas.shape[1], self._canvas.shape[0])

    @property
    def canvas(self) -> Optional[np.ndarray]:
        return self._canvas

    def resize(self, width: int, height: int) -> None:
        """Reallocate the canvas when the frame dimensions change."""
        if (width, height) == self.size:
            return
        self._canvas = np.zeros((height, width, 3), dtype=np.uint8)
        self._mask = np.zeros((height, width), dtype=bool)
        self.resize_count += 1

    def clear(self) -> None:
        if self._canvas is not None:
            self._canvas[:] = 0
            self._mask[:] = False

    def draw_overlay(self, detections: Iterable[Detection]) -> None:
        """Clear the canvas and draw one labelled rectangle per detection."""
        if self._canvas is None:
            return
        self.clear()
        width, height = self.size
        font = cv2.FONT_HERSHEY_SIMPLEX

        for det in detections:
            x, y, w, h = det.bbox.clip(width, height).as_int_tuple()
            if w <= 0 or h <= 0:
                continue
            cv2.rectangle(self._canvas, (x, y), (x + w, y + h), COLOR_BOX, self.line_thickness)

            # Label with background
            label = det.overlay_label
            (tw, th), _ = cv2.getTextSize(label, font, self.font_scale, 1)
            label_y = max(y, th + 6)
            cv2.rectangle(self._canvas, (x, label_y - th - 6), (x + tw + 4, label_y), COLOR_BOX, -1)
            cv2.putText(self._canvas, label, (x + 2, label_y - 4), font, self.font_scale, COLOR_TEXT, 1)

        self._mask = np.any(self._canvas != 0, axis=2)
        self.draw_count += 1

    def compose(self, frame: np.ndarray) -> np.ndarray:
        """Return a copy of ``frame`` with the overlay painted on top."""
        out = frame.copy()
        if self._canvas is None or self._canvas.shape[:2] != frame.shape[:2]:
            return out
        out[self._mask] = self._canvas[self._mask]
        return out
