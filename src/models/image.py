"""
Image models flowing through the capture pipeline.

snapshot -> CapturedImage -> (face blur) -> AnonymizedImage -> (JPEG) -> EncodedImage

The JPEG step only accepts an AnonymizedImage and the draft only accepts an
EncodedImage, so raw snapshot pixels never reach a draft record.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from models.detection import BoundingBox


@dataclass(frozen=True)
class FaceRegion:
    """
    A face rectangle reported by the face locator.

    Coordinates are in the pixel space of the image the locator ran on.
    """
    top_left: Tuple[float, float]
    bottom_right: Tuple[float, float]

    def corners(self) -> Tuple[float, float, float, float]:
        """Return (x1, y1, x2, y2) with x1 <= x2 and y1 <= y2, whatever order the locator used."""
        (ax, ay), (bx, by) = self.top_left, self.bottom_right
        return min(ax, bx), min(ay, by), max(ax, bx), max(ay, by)

    def to_bbox(self, width: int, height: int) -> BoundingBox:
        """Return the region as a BoundingBox clipped to width x height."""
        return BoundingBox.from_xyxy(*self.corners()).clip(width, height)

    def pixel_slice(self, width: int, height: int) -> Tuple[slice, slice]:
        """
        Return (rows, cols) slices covering the region, rounded outwards.

        A region touching the image covers at least one pixel, even when it
        has zero width or height. A region entirely outside gives empty slices.
        """
        x1, y1, x2, y2 = self.corners()
        if x2 < 0 or y2 < 0 or x1 >= width or y1 >= height:
            return slice(0, 0), slice(0, 0)
        c1 = min(max(int(np.floor(x1)), 0), width - 1)
        r1 = min(max(int(np.floor(y1)), 0), height - 1)
        c2 = min(max(int(np.ceil(x2)), c1 + 1), width)
        r2 = min(max(int(np.ceil(y2)), r1 + 1), height)
        return slice(r1, r2), slice(c1, c2)


@dataclass
class CapturedImage:
    """An owned pixel buffer produced by the snapshot step."""
    pixels: np.ndarray

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def release(self) -> None:
        """Drop the pixel buffer once the pipeline is done with it."""
        self.pixels = np.empty((0, 0, 3), dtype=np.uint8)


@dataclass
class AnonymizedImage:
    """
    Output of the face-blur step.

    Attributes:
        pixels: Image with every located face region blurred.
        faces_blurred: Number of face regions blurred (0 means pass-through).
        degraded: True when the face locator could not run, or a reported
            face region could not be blurred.
        warning: The AnonymizationDegraded error behind ``degraded``.
    """
    pixels: np.ndarray
    faces_blurred: int = 0
    degraded: bool = False
    warning: Optional[Exception] = None

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def release(self) -> None:
        self.pixels = np.empty((0, 0, 3), dtype=np.uint8)


@dataclass(frozen=True)
class EncodedImage:
    """A compressed, transportable anonymized image."""
    data: bytes
    mime_type: str
    width: int
    height: int
    faces_blurred: int = 0
    degraded: bool = False

    @property
    def size_kb(self) -> float:
        return len(self.data) / 1024

    def to_data_url(self) -> str:
        """Return the image as a ``data:image/...;base64,`` URL."""
        payload = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{payload}"
