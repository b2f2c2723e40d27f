"""
Capture pipeline.

Strictly ordered, non-retrying, fail-fast:

    snapshot -> anonymize -> compress -> tally -> draft handoff

A failure in snapshot or compress aborts the capture and leaves the draft
untouched. A face locator failure never blocks a capture: the snapshot is
passed through unblurred and the degradation is logged at warning level.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from inference.errors import AnonymizationDegraded, CaptureAborted, ErrorClassifier, ErrorKind
from models.config import CaptureConfig
from models.detection import EMPTY_BATCH, ClassTally, DetectionBatch, tally_by_class
from models.draft import DraftRecord
from models.image import AnonymizedImage, CapturedImage, EncodedImage, FaceRegion
from observation import ObservationSource

DEFAULT_MAX_WIDTH = 1280
DEFAULT_JPEG_QUALITY = 0.7
DEFAULT_BLUR_MIN_KERNEL = 51


def snapshot_frame(frame: np.ndarray, max_width: int = DEFAULT_MAX_WIDTH) -> CapturedImage:
    """
    Copy a frame into an owned buffer, downscaling to ``max_width``.

    Aspect ratio is preserved. Frames narrower than the cap are copied as is.
    """
    if frame is None or frame.size == 0:
        raise CaptureAborted("No frame available to capture")
    h, w = frame.shape[:2]
    if w > max_width:
        new_h = max(1, int(round(h * max_width / w)))
        pixels = cv2.resize(frame, (max_width, new_h), interpolation=cv2.INTER_AREA)
    else:
        pixels = frame.copy()
    return CapturedImage(pixels=pixels)


def _blur_kernel(roi_w: int, roi_h: int, min_kernel: int) -> int:
    k = max(min_kernel, max(roi_w, roi_h) // 2)
    return k if k % 2 == 1 else k + 1


def _obscure(out: np.ndarray, rows: slice, cols: slice, min_kernel: int) -> None:
    """
    Blur out[rows, cols] in place.

    The Gaussian runs over the region plus a kernel-wide margin, so even a
    one-pixel region is mixed with its surroundings. Any pixel that still
    keeps its value after that (flat surroundings) sends the whole region to
    its mean colour.
    """
    height, width = out.shape[:2]
    k = _blur_kernel(cols.stop - cols.start, rows.stop - rows.start, min_kernel)
    top, bottom = max(rows.start - k, 0), min(rows.stop + k, height)
    left, right = max(cols.start - k, 0), min(cols.stop + k, width)

    original = out[rows, cols].copy()
    area = np.ascontiguousarray(out[top:bottom, left:right])
    for _ in range(2):
        area = cv2.GaussianBlur(area, (k, k), 0)
    blurred = area[rows.start - top:rows.stop - top, cols.start - left:cols.stop - left]

    changed = blurred != original
    if changed.ndim == 3:
        changed = changed.any(axis=2)
    if not changed.all():
        mean = np.rint(original.mean(axis=(0, 1)))
        blurred = np.empty_like(original)
        blurred[...] = mean.astype(original.dtype)
    out[rows, cols] = blurred


def blur_regions(
    pixels: np.ndarray,
    regions: Sequence[FaceRegion],
    min_kernel: int = DEFAULT_BLUR_MIN_KERNEL,
) -> Tuple[np.ndarray, int]:
    """
    Blur each region on a copy of ``pixels``.

    Corners may come in either order. Returns (blurred_copy, regions_blurred);
    a region with no pixels inside the image is not counted.
    """
    out = pixels.copy()
    height, width = out.shape[:2]
    blurred = 0
    for region in regions:
        rows, cols = region.pixel_slice(width, height)
        if rows.stop <= rows.start or cols.stop <= cols.start:
            logging.debug(f"Face region {region} lies outside the {width}x{height} image")
            continue
        _obscure(out, rows, cols, min_kernel)
        blurred += 1
    return out, blurred


class Anonymizer:
    """
    Blurs every face the face locator reports.

    The locator is resolved lazily through ``locator_provider`` so a model
    that failed to load degrades the capture instead of aborting it.
    """

    def __init__(
        self,
        locator_provider: Callable[[], Any],
        classifier: Optional[ErrorClassifier] = None,
        min_kernel: int = DEFAULT_BLUR_MIN_KERNEL,
    ):
        self._locator_provider = locator_provider
        self._classifier = classifier or ErrorClassifier()
        self.min_kernel = min_kernel

    def anonymize(self, captured: CapturedImage) -> AnonymizedImage:
        try:
            faces: List[FaceRegion] = list(self._locator_provider().locate(captured.pixels))
        except Exception as e:
            return self._pass_through(captured, e)

        if not faces:
            return AnonymizedImage(pixels=captured.pixels, faces_blurred=0)

        pixels, count = blur_regions(captured.pixels, faces, self.min_kernel)
        missed = len(faces) - count
        if missed:
            warning = AnonymizationDegraded(
                f"{missed} of {len(faces)} face region(s) could not be placed on the "
                f"{captured.width}x{captured.height} snapshot"
            )
            logging.warning(f"{type(warning).__name__}: {warning}")
            return AnonymizedImage(pixels=pixels, faces_blurred=count, degraded=True, warning=warning)

        logging.info(f"Blurred {count} face region(s)")
        return AnonymizedImage(pixels=pixels, faces_blurred=count)

    def _pass_through(self, captured: CapturedImage, error: Exception) -> AnonymizedImage:
        warning = AnonymizationDegraded(f"face locator failed, passing snapshot through unblurred: {error}")
        warning.__cause__ = error
        kind = self._classifier.classify(error)
        if kind is ErrorKind.BENIGN:
            logging.debug(f"Face locator: suppressed benign backend warning ({error})")
        elif kind is ErrorKind.FATAL:
            logging.error(f"{type(warning).__name__}: {warning}")
        else:
            logging.warning(f"{type(warning).__name__}: {warning}")
        return AnonymizedImage(pixels=captured.pixels, faces_blurred=0, degraded=True, warning=warning)


def compress(anonymized: AnonymizedImage, quality: float = DEFAULT_JPEG_QUALITY) -> EncodedImage:
    """JPEG-encode an anonymized image at ``quality`` (0-1)."""
    if not isinstance(anonymized, AnonymizedImage):
        raise TypeError(f"compress() needs an AnonymizedImage, got {type(anonymized).__name__}")
    params = [int(cv2.IMWRITE_JPEG_QUALITY), int(round(quality * 100))]
    try:
        ok, buf = cv2.imencode(".jpg", anonymized.pixels, params)
    except cv2.error as e:
        raise CaptureAborted(f"JPEG encoding failed: {e}") from e
    if not ok:
        raise CaptureAborted("JPEG encoding failed")
    return EncodedImage(
        data=buf.tobytes(),
        mime_type="image/jpeg",
        width=anonymized.width,
        height=anonymized.height,
        faces_blurred=anonymized.faces_blurred,
        degraded=anonymized.degraded,
    )


@dataclass
class CaptureResult:
    """
    Outcome of one successful capture.

    Attributes:
        draft: The draft record after the handoff.
        tally: Counts taken from the last published detection batch.
        faces_blurred: Face regions blurred in the stored image.
        degraded: True if the image was stored with a face left unblurred.
        warning: The AnonymizationDegraded error behind ``degraded``, if any.
        elapsed_ms: Wall time of the whole capture.
    """
    draft: DraftRecord
    tally: ClassTally
    faces_blurred: int
    degraded: bool
    elapsed_ms: float
    warning: Optional[Exception] = None


class CapturePipeline:
    """
    Runs one capture per trigger. A trigger while a capture is in progress
    is ignored.

    Example:
        pipeline = CapturePipeline(source, anonymizer, session, lambda: loop.latest_batch)
        result = pipeline.capture("demo-miami")
    """

    def __init__(
        self,
        source: ObservationSource,
        anonymizer: Anonymizer,
        session: Any,
        batch_provider: Callable[[], DetectionBatch] = lambda: EMPTY_BATCH,
        config: Optional[CaptureConfig] = None,
        encoder: Callable[[AnonymizedImage, float], EncodedImage] = compress,
    ):
        self._source = source
        self._anonymizer = anonymizer
        self._session = session
        self._batch_provider = batch_provider
        self.config = config or CaptureConfig()
        self._encoder = encoder
        self._guard = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def in_progress(self) -> bool:
        return self._guard.locked()

    def capture(self, municipality_id: Optional[str] = None) -> Optional[CaptureResult]:
        """
        Run a capture on the calling thread.

        Returns None if another capture is in progress.

        Raises:
            CaptureAborted: If the snapshot or compress step failed.
        """
        if not self._guard.acquire(blocking=False):
            logging.info("Capture already in progress, ignoring trigger")
            return None
        try:
            return self._run(municipality_id)
        finally:
            self._guard.release()

    def submit(self, municipality_id: Optional[str] = None) -> Optional[Future]:
        """
        Run a capture on a background worker so the render thread keeps going.

        Returns None if another capture is in progress.
        """
        if not self._guard.acquire(blocking=False):
            logging.info("Capture already in progress, ignoring trigger")
            return None
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capture")

        def job() -> CaptureResult:
            try:
                return self._run(municipality_id)
            finally:
                self._guard.release()

        try:
            return self._executor.submit(job)
        except RuntimeError:
            self._guard.release()
            raise

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _run(self, municipality_id: Optional[str]) -> CaptureResult:
        start = time.perf_counter()

        frame_data = self._source.latest if self._source.has_enough_data else None
        frame = frame_data.frame if frame_data is not None else None
        captured = self._step("snapshot", lambda: snapshot_frame(frame, self.config.max_width))

        anonymized = self._anonymizer.anonymize(captured)
        warning = anonymized.warning
        try:
            encoded = self._step("compress", lambda: self._encoder(anonymized, self.config.jpeg_quality))
        finally:
            anonymized.release()
            captured.release()

        tally = tally_by_class(self._batch_provider())

        fields = {"anonymized_image": encoded, "counts": tally}
        if municipality_id:
            fields["municipality_id"] = municipality_id
        draft = self._session.set_partial(**fields)

        elapsed_ms = (time.perf_counter() - start) * 1000
        logging.info(
            f"Capture complete: {encoded.width}x{encoded.height}, {encoded.size_kb:.0f} KB, "
            f"faces_blurred={encoded.faces_blurred}, degraded={encoded.degraded}, "
            f"counts={tally.to_dict()}, {elapsed_ms:.0f}ms"
        )
        return CaptureResult(
            draft=draft,
            tally=tally,
            faces_blurred=encoded.faces_blurred,
            degraded=encoded.degraded,
            elapsed_ms=elapsed_ms,
            warning=warning,
        )

    @staticmethod
    def _step(name: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except CaptureAborted as e:
            logging.error(f"Capture aborted at {name}: {e}")
            raise
        except Exception as e:
            logging.error(f"Capture aborted at {name}: {e}")
            raise CaptureAborted(f"{name} failed: {e}") from e
