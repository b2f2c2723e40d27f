"""
Detection models for object detection results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Tuple

# Labels the inspection counts care about. Everything else the COCO model
# reports is dropped before publishing.
RECOGNIZED_CLASSES = ("bottle", "cup", "fork", "knife", "spoon")
UTENSIL_CLASSES = ("fork", "knife", "spoon")

DEFAULT_MIN_CONFIDENCE = 0.5


@dataclass(frozen=True)
class BoundingBox:
    """
    A bounding box in source-frame pixel coordinates.

    Attributes:
        x: Left edge x coordinate.
        y: Top edge y coordinate.
        w: Box width.
        h: Box height.
    """
    x: float
    y: float
    w: float
    h: float

    @property
    def x2(self) -> float:
        return self.x + self.w

    @property
    def y2(self) -> float:
        return self.y + self.h

    @property
    def area(self) -> float:
        return self.w * self.h

    def as_tuple(self) -> Tuple[float, float, float, float]:
        """Return as (x, y, w, h) tuple."""
        return (self.x, self.y, self.w, self.h)

    def as_int_tuple(self) -> Tuple[int, int, int, int]:
        """Return as integer (x, y, w, h) tuple."""
        return (int(self.x), int(self.y), int(self.w), int(self.h))

    def clip(self, width: int, height: int) -> "BoundingBox":
        """Clip the box to a width x height frame."""
        x1 = min(max(self.x, 0.0), float(width))
        y1 = min(max(self.y, 0.0), float(height))
        x2 = min(max(self.x2, 0.0), float(width))
        y2 = min(max(self.y2, 0.0), float(height))
        return BoundingBox(x=x1, y=y1, w=max(x2 - x1, 0.0), h=max(y2 - y1, 0.0))

    @classmethod
    def from_xyxy(cls, x1: float, y1: float, x2: float, y2: float) -> "BoundingBox":
        """Create from corner coordinates."""
        return cls(x=x1, y=y1, w=x2 - x1, h=y2 - y1)


@dataclass(frozen=True)
class Detection:
    """
    A single detection from the object detector.

    Attributes:
        bbox: Bounding box in source-frame pixels.
        class_label: COCO label string (e.g. "bottle").
        confidence: Detection confidence score (0-1).
    """
    bbox: BoundingBox
    class_label: str
    confidence: float

    @classmethod
    def from_xywh(
        cls,
        x: float,
        y: float,
        w: float,
        h: float,
        class_label: str,
        confidence: float,
    ) -> "Detection":
        return cls(bbox=BoundingBox(x=x, y=y, w=w, h=h), class_label=class_label, confidence=confidence)

    @property
    def overlay_label(self) -> str:
        """Text drawn next to the box, e.g. "cup 87%"."""
        return f"{self.class_label} {self.confidence * 100:.0f}%"


@dataclass(frozen=True)
class DetectionBatch:
    """
    The complete, filtered output of one inference pass.

    A batch always replaces the previous one wholesale.

    Attributes:
        detections: Filtered detections.
        frame_width: Width of the frame the inference ran on.
        frame_height: Height of the frame the inference ran on.
        sequence: Submission number that produced this batch (0 = empty start batch).
    """
    detections: Tuple[Detection, ...] = ()
    frame_width: int = 0
    frame_height: int = 0
    sequence: int = 0

    def __len__(self) -> int:
        return len(self.detections)

    def __iter__(self):
        return iter(self.detections)

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(d.class_label for d in self.detections)


EMPTY_BATCH = DetectionBatch()


@dataclass(frozen=True)
class ClassTally:
    """Per-bucket counts derived from a detection batch."""
    bottle: int = 0
    cup: int = 0
    utensils: int = 0

    def to_dict(self) -> dict:
        return {"bottle": self.bottle, "cup": self.cup, "utensils": self.utensils}

    @classmethod
    def from_dict(cls, d: dict) -> "ClassTally":
        return cls(
            bottle=int(d.get("bottle", 0)),
            cup=int(d.get("cup", 0)),
            utensils=int(d.get("utensils", 0)),
        )

    @property
    def total(self) -> int:
        return self.bottle + self.cup + self.utensils


def filter_detections(
    detections: Iterable[Detection],
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    recognized: Iterable[str] = RECOGNIZED_CLASSES,
) -> Tuple[Detection, ...]:
    """Keep detections at or above min_confidence whose label is recognized."""
    allowed = frozenset(recognized)
    return tuple(
        d for d in detections
        if d.confidence >= min_confidence and d.class_label in allowed
    )


def tally_by_class(detections: Iterable) -> ClassTally:
    """
    Count detections into the bottle / cup / utensils buckets.

    Accepts Detection objects or anything with a ``class_label`` attribute,
    as well as plain dicts carrying a ``class`` key. Unrecognized labels
    contribute to no bucket.
    """
    bottle = cup = utensils = 0
    for det in detections:
        label = _label_of(det)
        if label == "bottle":
            bottle += 1
        elif label == "cup":
            cup += 1
        elif label in UTENSIL_CLASSES:
            utensils += 1
    return ClassTally(bottle=bottle, cup=cup, utensils=utensils)


def _label_of(det) -> Optional[str]:
    if isinstance(det, dict):
        return det.get("class") or det.get("class_label")
    return getattr(det, "class_label", None)
