"""
Tests for the draft session.
"""

import numpy as np
import pydantic
import pytest

from models.detection import ClassTally
from models.draft import InspectionRecord
from models.image import EncodedImage
from runtime.session import DraftSession


def _image():
    return EncodedImage(data=b"\xff\xd8jpeg", mime_type="image/jpeg", width=4, height=3)


class RecordingStore:
    def __init__(self, error=None):
        self.error = error
        self.saved = []

    def save(self, record):
        self.saved.append(record)
        if self.error is not None:
            raise self.error


class TestMerge:
    def test_empty_session(self):
        session = DraftSession()
        assert session.current is None
        assert not session.has_draft

    def test_first_write_creates_defaults(self):
        session = DraftSession()
        draft = session.set_partial(fill_percent=40)

        assert draft.fill_percent == 40
        assert draft.counts == ClassTally(0, 0, 0)
        assert draft.municipality_id == "demo-miami"
        assert draft.anonymized_image is None
        assert session.has_draft

    def test_last_write_wins_and_other_fields_survive(self):
        session = DraftSession()
        first = session.set_partial(fill_percent=40)
        second = session.set_counts({"bottle": 2, "cup": 1, "utensils": 0})

        assert second.id == first.id
        assert second.fill_percent == 40
        assert second.counts == ClassTally(2, 1, 0)

        third = session.set_counts(ClassTally(bottle=5))
        assert third.counts == ClassTally(5, 0, 0)
        assert third.fill_percent == 40

    def test_unknown_field(self):
        with pytest.raises(TypeError):
            DraftSession().set_partial(colour="red")

    @pytest.mark.parametrize("image", [b"\xff\xd8raw", "data:image/jpeg;base64,AAAA", np.zeros((4, 4, 3), dtype=np.uint8)])
    def test_image_must_be_encoded_image(self, image):
        session = DraftSession()
        with pytest.raises(TypeError):
            session.set_partial(anonymized_image=image)
        assert not session.has_draft

    def test_set_fill_updates_liters(self):
        session = DraftSession()
        assert session.set_fill(25).liters_estimate == 30
        draft = session.set_fill(150)
        assert draft.fill_percent == 100
        assert draft.liters_estimate == 120

    def test_custom_basket_size(self):
        session = DraftSession(basket_max_liters=100)
        assert session.set_fill(50).liters_estimate == 50
        assert session.set_fill(-10).liters_estimate == 0

    def test_municipality(self):
        session = DraftSession()
        assert session.set_municipality("demo-key-biscayne").municipality_id == "demo-key-biscayne"
        with pytest.raises(ValueError):
            session.set_municipality("atlantis")

    def test_default_municipality(self):
        assert DraftSession("demo-hallandale").set_fill(10).municipality_id == "demo-hallandale"
        with pytest.raises(ValueError):
            DraftSession("atlantis")

    def test_reset(self):
        session = DraftSession()
        first = session.set_fill(10)
        session.reset()
        assert session.current is None
        assert session.set_fill(10).id != first.id

    def test_reset_empty_is_noop(self):
        session = DraftSession()
        session.reset()
        assert session.current is None


class TestFinalize:
    def test_success_saves_once_and_clears(self):
        session = DraftSession()
        session.set_partial(anonymized_image=_image(), counts=ClassTally(1, 0, 2))
        session.set_fill(50)
        store = RecordingStore()

        record = session.finalize(store)

        assert store.saved == [record]
        assert isinstance(record, InspectionRecord)
        assert record.counts.utensils == 2
        assert record.liters_est == 60
        assert record.image_anonymized_data_url.startswith("data:image/jpeg;base64,")
        assert session.current is None

    def test_save_failure_keeps_draft(self):
        session = DraftSession()
        draft = session.set_partial(anonymized_image=_image())
        store = RecordingStore(error=IOError("disk full"))

        with pytest.raises(IOError):
            session.finalize(store)

        assert len(store.saved) == 1
        assert session.current is draft

    def test_missing_image(self):
        session = DraftSession()
        draft = session.set_fill(30)
        store = RecordingStore()

        with pytest.raises(ValueError):
            session.finalize(store)

        assert store.saved == []
        assert session.current is draft

    def test_no_draft(self):
        with pytest.raises(ValueError):
            DraftSession().finalize(RecordingStore())

    def test_negative_counts_rejected(self):
        session = DraftSession()
        session.set_partial(anonymized_image=_image(), counts=ClassTally(bottle=-1))

        with pytest.raises(pydantic.ValidationError):
            session.finalize(RecordingStore())
        assert session.has_draft

    def test_record_serializes_with_aliases(self):
        session = DraftSession()
        session.set_partial(anonymized_image=_image())
        data = session.finalize(RecordingStore()).to_dict()
        assert set(data) >= {"id", "createdAt", "municipalityId", "counts", "fillPercent", "litersEst",
                             "imageAnonymizedDataUrl"}
