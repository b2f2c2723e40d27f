"""
Object detector: COCO SSD MobileNet running on OpenCV DNN.

Returns pixel-space detections in the coordinate system of the input frame.
Filtering to the inspection classes happens in the detection loop.
"""

from __future__ import annotations

import logging
import time
from typing import List, Optional

import numpy as np

from models.detection import Detection

# TF Object Detection API label map (1-based ids, gaps are unused ids).
COCO_LABELS = {
    1: "person", 2: "bicycle", 3: "car", 4: "motorcycle", 5: "airplane",
    6: "bus", 7: "train", 8: "truck", 9: "boat", 10: "traffic light",
    11: "fire hydrant", 13: "stop sign", 14: "parking meter", 15: "bench",
    16: "bird", 17: "cat", 18: "dog", 19: "horse", 20: "sheep", 21: "cow",
    22: "elephant", 23: "bear", 24: "zebra", 25: "giraffe", 27: "backpack",
    28: "umbrella", 31: "handbag", 32: "tie", 33: "suitcase", 34: "frisbee",
    35: "skis", 36: "snowboard", 37: "sports ball", 38: "kite",
    39: "baseball bat", 40: "baseball glove", 41: "skateboard", 42: "surfboard",
    43: "tennis racket", 44: "bottle", 46: "wine glass", 47: "cup", 48: "fork",
    49: "knife", 50: "spoon", 51: "bowl", 52: "banana", 53: "apple",
    54: "sandwich", 55: "orange", 56: "broccoli", 57: "carrot", 58: "hot dog",
    59: "pizza", 60: "donut", 61: "cake", 62: "chair", 63: "couch",
    64: "potted plant", 65: "bed", 67: "dining table", 70: "toilet", 72: "tv",
    73: "laptop", 74: "mouse", 75: "remote", 76: "keyboard", 77: "cell phone",
    78: "microwave", 79: "oven", 80: "toaster", 81: "sink", 82: "refrigerator",
    84: "book", 85: "clock", 86: "vase", 87: "scissors", 88: "teddy bear",
    89: "hair drier", 90: "toothbrush",
}


class ObjectDetector:
    """
    Wrapper around a cv2.dnn_DetectionModel loaded with SSD weights.

    Attributes:
        model: The OpenCV detection model (anything with a compatible detect()).
        score_threshold: Minimum score the model itself reports.
        source: Where the weights were loaded from (for diagnostics).
    """

    name = "object_detector"

    def __init__(self, model, score_threshold: float = 0.5, source: Optional[str] = None):
        self.model = model
        self.score_threshold = score_threshold
        self.source = source

    def detect(self, frame: np.ndarray) -> List[Detection]:
        start = time.perf_counter()
        class_ids, confidences, boxes = self.model.detect(frame, confThreshold=self.score_threshold)
        elapsed_ms = (time.perf_counter() - start) * 1000

        out: List[Detection] = []
        if class_ids is None or len(class_ids) == 0:
            logging.debug(f"Object detection: 0 raw detections in {elapsed_ms:.1f}ms")
            return out

        for class_id, conf, box in zip(
            np.asarray(class_ids).reshape(-1),
            np.asarray(confidences).reshape(-1),
            np.asarray(boxes).reshape(-1, 4),
        ):
            label = COCO_LABELS.get(int(class_id), str(int(class_id)))
            x, y, w, h = (float(v) for v in box)
            out.append(Detection.from_xywh(x, y, w, h, class_label=label, confidence=float(conf)))

        logging.debug(f"Object detection: {len(out)} raw detections in {elapsed_ms:.1f}ms")
        return out
