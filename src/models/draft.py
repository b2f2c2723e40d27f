"""
Draft and finalized inspection records.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.detection import ClassTally
from models.image import EncodedImage

BASKET_MAX_LITERS = 120


@dataclass(frozen=True)
class Municipality:
    """A municipality an inspection can be filed under."""
    id: str
    name: str
    region: str
    description: Optional[str] = None


MUNICIPALITIES: List[Municipality] = [
    Municipality("demo-miami", "Miami", "South Florida", "Miami-Dade County coastal areas"),
    Municipality("demo-hallandale", "Hallandale Beach", "South Florida", "Broward County beachfront"),
    Municipality("demo-key-biscayne", "Key Biscayne", "South Florida", "Island municipality"),
    Municipality("demo-fort-lauderdale", "Fort Lauderdale", "South Florida", "Venice of America"),
    Municipality("demo-miami-beach", "Miami Beach", "South Florida", "Art Deco Historic District"),
    Municipality("demo-coral-gables", "Coral Gables", "South Florida", "The City Beautiful"),
]


def get_municipality(municipality_id: str) -> Optional[Municipality]:
    for m in MUNICIPALITIES:
        if m.id == municipality_id:
            return m
    return None


def get_default_municipality() -> Municipality:
    return MUNICIPALITIES[0]


def liters_from_fill(fill_percent: float, max_liters: float = BASKET_MAX_LITERS) -> int:
    """
    Estimate basket volume in liters from a fill percentage.

    The percentage is clamped into [0, 100] before scaling; the result is
    rounded to whole liters.
    """
    clamped = max(0.0, min(100.0, float(fill_percent)))
    return int(math.floor(clamped / 100 * max_liters + 0.5))


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class DraftRecord:
    """
    The single in-progress (unsaved) inspection.

    Attributes:
        id: Opaque unique identifier.
        created_at: ISO-8601 creation timestamp (UTC).
        municipality_id: Municipality the inspection is filed under.
        counts: Detected item tally (adjustable by the operator).
        fill_percent: Basket fill level, 0-100.
        liters_estimate: Volume estimate derived from the fill level.
        anonymized_image: Compressed, face-blurred capture.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=_utc_now_iso)
    municipality_id: str = field(default_factory=lambda: get_default_municipality().id)
    counts: ClassTally = field(default_factory=ClassTally)
    fill_percent: float = 0
    liters_estimate: float = 0
    anonymized_image: Optional[EncodedImage] = None

    def merged(self, **fields: Any) -> "DraftRecord":
        """Return a copy with the given fields replaced (last write wins)."""
        return replace(self, **fields)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "municipalityId": self.municipality_id,
            "counts": self.counts.to_dict(),
            "fillPercent": self.fill_percent,
            "litersEst": self.liters_estimate,
            "hasImage": self.anonymized_image is not None,
        }


class InspectionCounts(BaseModel):
    bottle: int = Field(ge=0)
    cup: int = Field(ge=0)
    utensils: int = Field(ge=0)


class InspectionRecord(BaseModel):
    """Finalized inspection handed to the persistence collaborator."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    created_at: str = Field(alias="createdAt")
    municipality_id: str = Field(alias="municipalityId")
    counts: InspectionCounts
    fill_percent: float = Field(alias="fillPercent", ge=0, le=100)
    liters_est: float = Field(alias="litersEst", ge=0)
    image_anonymized_data_url: str = Field(alias="imageAnonymizedDataUrl")

    @field_validator("image_anonymized_data_url")
    @classmethod
    def _must_be_image_data_url(cls, v: str) -> str:
        if not v.startswith("data:image/"):
            raise ValueError("imageAnonymizedDataUrl must be a data:image/ URL")
        return v

    @classmethod
    def from_draft(cls, draft: DraftRecord) -> "InspectionRecord":
        if draft.anonymized_image is None:
            raise ValueError("Draft has no anonymized image")
        return cls(
            id=draft.id,
            created_at=draft.created_at,
            municipality_id=draft.municipality_id,
            counts=InspectionCounts(**draft.counts.to_dict()),
            fill_percent=draft.fill_percent,
            liters_est=draft.liters_estimate,
            image_anonymized_data_url=draft.anonymized_image.to_data_url(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
