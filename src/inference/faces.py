"""
Face locator: YuNet running through cv2.FaceDetectorYN.
"""

from __future__ import annotations

from typing import List, Optional

import numpy as np

from models.image import FaceRegion


class FaceLocator:
    """Locates face rectangles in an image."""

    name = "face_locator"

    def __init__(self, detector, source: Optional[str] = None):
        self.detector = detector
        self.source = source

    def locate(self, image: np.ndarray) -> List[FaceRegion]:
        h, w = image.shape[:2]
        self.detector.setInputSize((w, h))
        _, faces = self.detector.detect(image)
        if faces is None:
            return []
        regions = []
        for row in np.asarray(faces).reshape(-1, 15):
            x, y, fw, fh = (float(v) for v in row[:4])
            regions.append(FaceRegion(top_left=(x, y), bottom_right=(x + fw, y + fh)))
        return regions
