"""
Draft session: the single in-progress inspection.

Created at session start and passed to whoever needs it (the capture
pipeline, the review step). Cleared on successful finalize or on reset().
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Any, Optional, Protocol, Union

from models.detection import ClassTally
from models.draft import (
    BASKET_MAX_LITERS,
    DraftRecord,
    InspectionRecord,
    get_municipality,
    liters_from_fill,
)
from models.image import EncodedImage

DRAFT_FIELDS = frozenset(f.name for f in dataclasses.fields(DraftRecord))


class InspectionPersistence(Protocol):
    """Receives one finalized inspection; raises on failure."""

    def save(self, record: InspectionRecord) -> None:
        ...


class DraftSession:
    """
    Single-slot draft store with last-write-wins field merges.

    Example:
        session = DraftSession()
        session.set_partial(fill_percent=40)
        session.set_counts({"bottle": 1, "cup": 0, "utensils": 0})
        record = session.finalize(store)
    """

    def __init__(self, default_municipality: Optional[str] = None, basket_max_liters: float = BASKET_MAX_LITERS):
        if default_municipality is not None and get_municipality(default_municipality) is None:
            raise ValueError(f"Unknown municipality: {default_municipality}")
        self.default_municipality = default_municipality
        self.basket_max_liters = basket_max_liters
        self._current: Optional[DraftRecord] = None
        self._lock = threading.Lock()

    @property
    def current(self) -> Optional[DraftRecord]:
        return self._current

    @property
    def has_draft(self) -> bool:
        return self._current is not None

    def set_partial(self, **fields: Any) -> DraftRecord:
        """
        Merge ``fields`` into the draft, creating it with defaults if empty.

        Raises:
            TypeError: If a field name is not a DraftRecord field, or
                ``anonymized_image`` is not an EncodedImage.
        """
        unknown = set(fields) - DRAFT_FIELDS
        if unknown:
            raise TypeError(f"Unknown draft field(s): {', '.join(sorted(unknown))}")
        image = fields.get("anonymized_image")
        if image is not None and not isinstance(image, EncodedImage):
            raise TypeError(f"anonymized_image must be an EncodedImage, got {type(image).__name__}")
        with self._lock:
            base = self._current if self._current is not None else self._new_record()
            self._current = base.merged(**fields)
            record = self._current
        logging.debug(f"Draft updated: {sorted(fields)}")
        return record

    def set_counts(self, counts: Union[ClassTally, dict]) -> DraftRecord:
        if isinstance(counts, dict):
            counts = ClassTally.from_dict(counts)
        return self.set_partial(counts=counts)

    def set_fill(self, fill_percent: float) -> DraftRecord:
        """Set the fill level and recompute the liters estimate."""
        clamped = min(max(float(fill_percent), 0.0), 100.0)
        return self.set_partial(
            fill_percent=clamped,
            liters_estimate=liters_from_fill(clamped, self.basket_max_liters),
        )

    def set_municipality(self, municipality_id: str) -> DraftRecord:
        if get_municipality(municipality_id) is None:
            raise ValueError(f"Unknown municipality: {municipality_id}")
        return self.set_partial(municipality_id=municipality_id)

    def reset(self) -> None:
        """Discard the draft unconditionally."""
        with self._lock:
            had_draft = self._current is not None
            self._current = None
        if had_draft:
            logging.info("Draft reset")

    def finalize(self, persistence: InspectionPersistence) -> InspectionRecord:
        """
        Validate the draft, hand it to ``persistence`` once, and clear the slot.

        The slot is kept if validation or saving fails; the error is re-raised.

        Raises:
            ValueError: If there is no draft or it has no anonymized image.
            pydantic.ValidationError: If a field is out of range.
        """
        draft = self._current
        if draft is None:
            raise ValueError("No draft to finalize")

        record = InspectionRecord.from_draft(draft)
        logging.info(
            f"Saving inspection {record.id}: municipality={record.municipality_id}, "
            f"counts={record.counts.model_dump()}, fill={record.fill_percent}%"
        )
        try:
            persistence.save(record)
        except Exception as e:
            logging.error(f"Failed to save inspection {record.id}: {e}")
            raise

        with self._lock:
            if self._current is draft:
                self._current = None
        logging.info(f"Inspection {record.id} saved")
        return record

    def _new_record(self) -> DraftRecord:
        if self.default_municipality is not None:
            return DraftRecord(municipality_id=self.default_municipality)
        return DraftRecord()
