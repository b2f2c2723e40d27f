"""
Tests for the object detector and face locator wrappers.
"""

from unittest.mock import MagicMock

import numpy as np
import pytest

from inference.detector import ObjectDetector
from inference.faces import FaceLocator


class TestObjectDetector:
    def test_maps_coco_ids_to_labels(self):
        model = MagicMock()
        model.detect.return_value = (
            np.array([[44], [47], [1]]),
            np.array([[0.9], [0.6], [0.99]]),
            np.array([[10, 20, 30, 40], [0, 0, 5, 5], [1, 1, 2, 2]]),
        )
        detector = ObjectDetector(model, score_threshold=0.3)

        detections = detector.detect(np.zeros((100, 100, 3), dtype=np.uint8))

        assert [d.class_label for d in detections] == ["bottle", "cup", "person"]
        assert detections[0].bbox.as_tuple() == (10.0, 20.0, 30.0, 40.0)
        assert abs(detections[0].confidence - 0.9) < 1e-6
        model.detect.assert_called_once()
        assert model.detect.call_args.kwargs["confThreshold"] == 0.3

    def test_empty_result(self):
        model = MagicMock()
        model.detect.return_value = ((), (), ())
        assert ObjectDetector(model).detect(np.zeros((10, 10, 3), dtype=np.uint8)) == []

    def test_errors_propagate(self):
        model = MagicMock()
        model.detect.side_effect = RuntimeError("device lost")
        with pytest.raises(RuntimeError, match="device lost"):
            ObjectDetector(model).detect(np.zeros((10, 10, 3), dtype=np.uint8))


class TestFaceLocator:
    def test_regions_from_yunet_rows(self):
        row = np.zeros(15, dtype=np.float32)
        row[:4] = (12, 8, 30, 40)
        row[14] = 0.95
        detector = MagicMock()
        detector.detect.return_value = (1, np.array([row]))

        regions = FaceLocator(detector).locate(np.zeros((120, 160, 3), dtype=np.uint8))

        detector.setInputSize.assert_called_once_with((160, 120))
        assert len(regions) == 1
        assert regions[0].top_left == (12.0, 8.0)
        assert regions[0].bottom_right == (42.0, 48.0)

    def test_no_faces(self):
        detector = MagicMock()
        detector.detect.return_value = (1, None)
        assert FaceLocator(detector).locate(np.zeros((10, 10, 3), dtype=np.uint8)) == []
