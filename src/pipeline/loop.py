"""
Detection loop.

Driven by the render cadence: the host calls tick() once per display
refresh. Every Nth ready tick the current frame is submitted to a
single-worker executor for object detection. At most one request is ever
in flight, and its result is applied on the rendering thread during a later
tick(), so published batches arrive in submission order.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import cv2
import numpy as np

from inference.errors import ErrorClassifier, ErrorKind, TransientInferenceError
from models.config import DetectionConfig
from models.detection import (
    DEFAULT_MIN_CONFIDENCE,
    EMPTY_BATCH,
    RECOGNIZED_CLASSES,
    Detection,
    DetectionBatch,
    filter_detections,
)
from models.frame import FrameData
from models.status import LoopState, LoopStats
from observation import ObservationSource
from pipeline.overlay import OverlaySurface, RenderSurface


@dataclass
class DetectionLoopConfig:
    """
    Configuration for the detection loop.

    Attributes:
        throttle_factor: Ready ticks per inference submission.
        min_confidence: Detections below this score are dropped.
        classes: Labels that survive filtering.
        refresh_hz: Render cadence used by run().
        display: Show a cv2 window in run().
        max_missed_frames: Consecutive empty reads before run() gives up.
        window_name: Title of the display window.
    """
    throttle_factor: int = 8
    min_confidence: float = DEFAULT_MIN_CONFIDENCE
    classes: Tuple[str, ...] = RECOGNIZED_CLASSES
    refresh_hz: float = 60.0
    display: bool = False
    max_missed_frames: int = 10
    window_name: str = "Inspection"

    @classmethod
    def from_detection_config(cls, cfg: DetectionConfig, display: bool = False) -> "DetectionLoopConfig":
        return cls(
            throttle_factor=cfg.throttle_factor,
            min_confidence=cfg.min_confidence,
            classes=tuple(cfg.classes),
            refresh_hz=cfg.refresh_hz,
            display=display,
        )


@dataclass
class _Submission:
    sequence: int
    width: int
    height: int
    future: Future = field(repr=False, default=None)


class DetectionLoop:
    """
    Throttled, single-flight object detection over a frame source.

    Example:
        loop = DetectionLoop(source, detector, surface=OverlaySurface())
        loop.start()
        while loop.state is not LoopState.STOPPED:
            source.read()
            loop.tick()
            batch = loop.latest_batch
    """

    def __init__(
        self,
        source: ObservationSource,
        detector: Any,
        surface: Optional[RenderSurface] = None,
        config: Optional[DetectionLoopConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
    ):
        self.source = source
        self.detector = detector
        self.surface = surface
        self.config = config or DetectionLoopConfig()
        if self.config.throttle_factor < 1:
            raise ValueError("throttle_factor must be >= 1")
        self._classifier = classifier or ErrorClassifier()
        self.stats = LoopStats()
        self._state = LoopState.IDLE
        self._alive = False
        self._executor: Optional[ThreadPoolExecutor] = None
        self._in_flight: Optional[_Submission] = None
        self._sequence = 0
        self._latest_batch: DetectionBatch = EMPTY_BATCH
        self.last_error: Optional[BaseException] = None
        self._callbacks: List[Callable[[Optional[FrameData], DetectionBatch], None]] = []
        self._key_handlers: Dict[int, Callable[[], None]] = {}

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def latest_batch(self) -> DetectionBatch:
        """The most recently published batch. Readers keep the reference they get."""
        return self._latest_batch

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    def add_callback(self, callback: Callable[[Optional[FrameData], DetectionBatch], None]) -> None:
        """
        Add a callback called by run() after each tick.

        Args:
            callback: Function taking (frame_data, latest_batch) as arguments.
        """
        self._callbacks.append(callback)

    def add_key_handler(self, key: str, handler: Callable[[], None]) -> None:
        """Call ``handler`` when ``key`` is pressed in the display window."""
        self._key_handlers[ord(key)] = handler

    def start(self) -> None:
        """Open the frame source if needed and enter RUNNING."""
        if self._state is not LoopState.IDLE:
            raise RuntimeError(f"Cannot start detection loop in state {self._state.value}")
        if self.detector is None:
            raise RuntimeError("Cannot start detection loop without an object detector")
        if not self.source.is_open:
            self.source.open()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="detect")
        self._alive = True
        self._state = LoopState.RUNNING
        logging.info(
            f"Detection loop started: source={self.source.source_id}, "
            f"throttle={self.config.throttle_factor}"
        )

    def suspend(self) -> None:
        """Stop submitting new inference requests without releasing the source."""
        if self._state is not LoopState.RUNNING:
            raise RuntimeError(f"Cannot suspend detection loop in state {self._state.value}")
        self._state = LoopState.SUSPENDED
        logging.info("Detection loop suspended")

    def resume(self) -> None:
        if self._state is not LoopState.SUSPENDED:
            raise RuntimeError(f"Cannot resume detection loop in state {self._state.value}")
        self._state = LoopState.RUNNING
        logging.info("Detection loop resumed")

    def stop(self) -> None:
        """
        Terminate the loop.

        Synchronously cancels the pending request, closes the frame source
        and flips the liveness flag so no later result is published.
        Safe to call multiple times.
        """
        if self._state is LoopState.STOPPED:
            return
        self._alive = False
        self._state = LoopState.STOPPED

        if self._in_flight is not None:
            self._in_flight.future.cancel()
            self.stats.discarded += 1
            self._in_flight = None
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

        try:
            self.source.close()
        except Exception as e:
            logging.warning(f"Error closing source: {e}")

        logging.info(
            f"Detection loop stopped: ticks={self.stats.ticks}, "
            f"submissions={self.stats.submissions}, completed={self.stats.completed}, "
            f"failures={self.stats.failures}"
        )

    def tick(self) -> None:
        """
        Advance the loop by one render tick.

        Applies a settled result, then submits the current frame when this is
        a throttle tick and nothing is in flight. Never raises for inference
        failures.
        """
        if self._state is LoopState.STOPPED or self._state is LoopState.IDLE:
            return
        if not self.source.is_open:
            logging.info("Frame source closed, stopping detection loop")
            self.stop()
            return

        self.stats.ticks += 1
        self._collect()

        if self._state is not LoopState.RUNNING:
            return
        if not self.source.has_enough_data:
            return

        is_throttle_tick = self.stats.ready_ticks % self.config.throttle_factor == 0
        self.stats.ready_ticks += 1
        if is_throttle_tick and self._in_flight is None:
            self._submit(self.source.latest)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the in-flight request and apply it on the calling thread.

        Returns True if nothing is left in flight.
        """
        submission = self._in_flight
        if submission is None:
            return True
        done, _ = wait([submission.future], timeout=timeout)
        if not done:
            return False
        self._collect()
        return self._in_flight is None

    def run(self, max_ticks: Optional[int] = None) -> None:
        """
        Host render loop: read, tick, display, repeat until stopped.

        Ends on 'q' in the display window, on end of a non-looping video file,
        after ``max_ticks``, or when stop() is called from a callback.
        """
        if self._state is LoopState.IDLE:
            self.start()
        surface = self.surface if isinstance(self.surface, OverlaySurface) else None
        period = 1.0 / self.config.refresh_hz if self.config.refresh_hz > 0 else 0.0
        wait_ms = max(1, int(period * 1000))
        count = 0
        missed = 0

        try:
            while self._state is not LoopState.STOPPED:
                frame_data = self.source.read()
                if frame_data is None:
                    missed += 1
                    if missed >= self.config.max_missed_frames:
                        logging.error(f"No frames for {missed} consecutive reads, stopping")
                        break
                else:
                    missed = 0

                self.tick()
                count += 1

                for callback in self._callbacks:
                    try:
                        callback(frame_data, self._latest_batch)
                    except Exception as e:
                        logging.warning(f"Callback error: {e}")

                if self.config.display and frame_data is not None:
                    shown = surface.compose(frame_data.frame) if surface else frame_data.frame
                    cv2.imshow(self.config.window_name, shown)
                    key = cv2.waitKey(wait_ms) & 0xFF
                    if key == ord('q'):
                        break
                    handler = self._key_handlers.get(key)
                    if handler is not None:
                        try:
                            handler()
                        except Exception as e:
                            logging.warning(f"Key handler error: {e}")
                elif period:
                    time.sleep(period)

                if max_ticks is not None and count >= max_ticks:
                    break
        except KeyboardInterrupt:
            logging.info("Detection loop interrupted by user")
        finally:
            self.stop()
            if self.config.display:
                cv2.destroyAllWindows()

    def _submit(self, frame_data: FrameData) -> None:
        self._sequence += 1
        pixels = frame_data.copy_pixels()
        submission = _Submission(
            sequence=self._sequence,
            width=frame_data.width,
            height=frame_data.height,
        )
        submission.future = self._executor.submit(self._infer, pixels)
        self._in_flight = submission
        self.stats.submissions += 1

    def _infer(self, pixels: np.ndarray) -> Tuple[List[Detection], float]:
        start = time.perf_counter()
        raw = self.detector.detect(pixels)
        return list(raw), (time.perf_counter() - start) * 1000

    def _collect(self) -> None:
        """Apply the in-flight result if it has settled."""
        submission = self._in_flight
        if submission is None or not submission.future.done():
            return
        self._in_flight = None

        if not self._alive:
            self.stats.discarded += 1
            return

        future = submission.future
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self._handle_failure(error)
            return

        raw, latency_ms = future.result()
        self.stats.last_latency_ms = latency_ms
        self._publish(submission, raw)

    def _publish(self, submission: _Submission, raw: List[Detection]) -> None:
        kept = filter_detections(raw, self.config.min_confidence, self.config.classes)
        batch = DetectionBatch(
            detections=kept,
            frame_width=submission.width,
            frame_height=submission.height,
            sequence=submission.sequence,
        )
        self._latest_batch = batch
        self.stats.completed += 1

        if self.surface is not None:
            self.surface.resize(submission.width, submission.height)
            self.surface.draw_overlay(batch)

        logging.debug(
            f"Detection batch #{batch.sequence}: {len(raw)} raw, {len(kept)} kept "
            f"({self.stats.last_latency_ms:.1f}ms)"
        )

    def _handle_failure(self, error: BaseException) -> None:
        kind = self._classifier.classify(error)
        if kind is ErrorKind.BENIGN:
            self.stats.benign_suppressed += 1
            logging.debug(f"Suppressed benign backend warning: {error}")
            return
        self.stats.failures += 1
        if kind is ErrorKind.FATAL:
            # Backend or model is gone; submitting again cannot succeed until the runtime is retried
            self.last_error = error
            if self._state is LoopState.RUNNING:
                self._state = LoopState.SUSPENDED
            logging.error(f"Inference unavailable, detection loop suspended: {error}")
            return
        failure = TransientInferenceError(f"inference failed, keeping previous detections: {error}")
        failure.__cause__ = error
        self.last_error = failure
        logging.warning(f"{type(failure).__name__}: {failure}")

    def stats_dict(self) -> Dict[str, Any]:
        d = self.stats.to_dict()
        d["state"] = self._state.value
        d["in_flight"] = self.in_flight
        d["detections"] = len(self._latest_batch)
        d["last_error"] = str(self.last_error) if self.last_error is not None else None
        return d


def create_detection_loop(
    source: ObservationSource,
    detector: Any,
    detection_cfg: DetectionConfig,
    classifier: Optional[ErrorClassifier] = None,
    display: bool = False,
) -> DetectionLoop:
    """Factory: detection loop with an overlay surface from the ``detection`` config."""
    return DetectionLoop(
        source,
        detector,
        surface=OverlaySurface(),
        config=DetectionLoopConfig.from_detection_config(detection_cfg, display=display),
        classifier=classifier,
    )
