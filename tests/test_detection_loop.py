"""
Tests for the detection loop.
"""

import logging
import math
import threading
import time

import numpy as np
import pytest

from inference.errors import ModelInitError, TransientInferenceError
from models.detection import EMPTY_BATCH, Detection
from models.frame import FrameData
from models.status import LoopState
from observation.base import ObservationConfig, ObservationSource
from pipeline.loop import DetectionLoop, DetectionLoopConfig


class MockObservationSource(ObservationSource):
    """Source serving a fixed list of frames, optionally forever."""

    def __init__(self, frames=None, repeat=True):
        super().__init__(ObservationConfig(source_id="mock"))
        self._frames = frames if frames is not None else [np.zeros((48, 64, 3), dtype=np.uint8)]
        self._repeat = repeat
        self._pos = 0
        self.close_calls = 0

    def open(self) -> None:
        self._is_open = True
        self._pos = 0
        self._frame_index = 0

    def read(self):
        if not self._is_open or not self._frames:
            return None
        if self._pos >= len(self._frames):
            if not self._repeat:
                return None
            self._pos = 0
        frame = self._frames[self._pos]
        self._pos += 1
        self._frame_index += 1
        return self._remember(FrameData.from_numpy(frame, timestamp=time.time(), frame_index=self._frame_index))

    def close(self) -> None:
        self.close_calls += 1
        self._is_open = False
        self._forget()


class ScriptedDetector:
    """Returns (or raises) the scripted outcomes in order; repeats the last one."""

    def __init__(self, *outcomes, gate=None):
        self.outcomes = list(outcomes) or [[]]
        self.gate = gate
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def detect(self, frame):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            index = min(self.calls, len(self.outcomes) - 1)
            self.calls += 1
        try:
            if self.gate is not None:
                self.gate.wait(timeout=5)
            outcome = self.outcomes[index]
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            with self._lock:
                self.active -= 1


class RecordingSurface:
    def __init__(self):
        self.resizes = []
        self.draws = []

    def resize(self, width, height):
        self.resizes.append((width, height))

    def draw_overlay(self, detections):
        self.draws.append(list(detections))


def _det(label, conf=0.9):
    return Detection.from_xywh(1, 2, 10, 10, class_label=label, confidence=conf)


def _running_loop(detector, surface=None, **config):
    source = MockObservationSource()
    loop = DetectionLoop(source, detector, surface=surface, config=DetectionLoopConfig(**config))
    loop.start()
    return loop, source


def _tick(loop, source, n=1, drain=False):
    for _ in range(n):
        source.read()
        loop.tick()
        if drain:
            loop.drain(timeout=5)


class TestLifecycle:
    def test_initial_state(self):
        loop = DetectionLoop(MockObservationSource(), ScriptedDetector())
        assert loop.state is LoopState.IDLE
        assert loop.latest_batch is EMPTY_BATCH

    def test_start_opens_source(self):
        loop, source = _running_loop(ScriptedDetector())
        assert loop.state is LoopState.RUNNING
        assert source.is_open
        loop.stop()

    def test_cannot_start_twice(self):
        loop, _ = _running_loop(ScriptedDetector())
        with pytest.raises(RuntimeError):
            loop.start()
        loop.stop()

    def test_requires_detector(self):
        loop = DetectionLoop(MockObservationSource(), None)
        with pytest.raises(RuntimeError):
            loop.start()

    def test_stop_closes_source_synchronously(self):
        loop, source = _running_loop(ScriptedDetector())
        loop.stop()
        assert loop.state is LoopState.STOPPED
        assert source.close_calls == 1
        assert not source.is_open

    def test_stop_is_idempotent(self):
        loop, source = _running_loop(ScriptedDetector())
        loop.stop()
        loop.stop()
        assert source.close_calls == 1

    def test_source_teardown_stops_loop(self):
        loop, source = _running_loop(ScriptedDetector())
        source.close()
        loop.tick()
        assert loop.state is LoopState.STOPPED

    def test_suspend_and_resume(self):
        detector = ScriptedDetector([])
        loop, source = _running_loop(detector, throttle_factor=1)

        loop.suspend()
        _tick(loop, source, 5, drain=True)
        assert loop.stats.submissions == 0
        assert source.is_open

        loop.resume()
        _tick(loop, source, 1, drain=True)
        assert loop.stats.submissions == 1
        loop.stop()

    def test_invalid_transitions(self):
        loop = DetectionLoop(MockObservationSource(), ScriptedDetector())
        with pytest.raises(RuntimeError):
            loop.suspend()
        with pytest.raises(RuntimeError):
            loop.resume()


class TestThrottle:
    @pytest.mark.parametrize("n_ticks", [1, 7, 8, 9, 17, 64, 65])
    def test_submissions_bounded_by_throttle(self, n_ticks):
        detector = ScriptedDetector([])
        loop, source = _running_loop(detector)

        _tick(loop, source, n_ticks, drain=True)

        assert loop.stats.submissions == math.ceil(n_ticks / 8)
        assert loop.stats.submissions <= math.ceil(n_ticks / 8)
        loop.stop()

    def test_at_most_one_in_flight(self):
        gate = threading.Event()
        detector = ScriptedDetector([], gate=gate)
        loop, source = _running_loop(detector)

        _tick(loop, source, 40)

        assert loop.stats.submissions == 1
        assert loop.in_flight
        gate.set()
        assert loop.drain(timeout=5)
        assert detector.max_active == 1
        loop.stop()

    def test_waits_for_result_before_next_submission(self):
        detector = ScriptedDetector([_det("cup")])
        loop, source = _running_loop(detector, throttle_factor=1)

        _tick(loop, source, 20, drain=True)

        assert loop.stats.submissions == 20
        assert loop.stats.completed == 20
        assert detector.max_active == 1
        loop.stop()

    def test_ticks_without_data_are_not_counted(self):
        source = MockObservationSource(frames=[])
        loop = DetectionLoop(source, ScriptedDetector())
        loop.start()

        for _ in range(16):
            loop.tick()

        assert loop.stats.ticks == 16
        assert loop.stats.ready_ticks == 0
        assert loop.stats.submissions == 0
        loop.stop()


class TestPublishing:
    def test_filters_before_publishing(self):
        detector = ScriptedDetector([_det("person", 0.99), _det("cup", 0.4), _det("bottle", 0.8)])
        loop, source = _running_loop(detector)

        _tick(loop, source, 1, drain=True)

        assert loop.latest_batch.labels == ("bottle",)
        assert loop.latest_batch.frame_width == 64
        assert loop.latest_batch.frame_height == 48
        loop.stop()

    def test_batch_replaced_wholesale_in_order(self):
        detector = ScriptedDetector([_det("cup"), _det("cup")], [_det("bottle")])
        loop, source = _running_loop(detector, throttle_factor=1)

        _tick(loop, source, 1, drain=True)
        first = loop.latest_batch
        _tick(loop, source, 1, drain=True)
        second = loop.latest_batch

        assert first.labels == ("cup", "cup")
        assert second.labels == ("bottle",)
        assert second.sequence > first.sequence
        loop.stop()

    def test_surface_resized_and_redrawn(self):
        surface = RecordingSurface()
        detector = ScriptedDetector([_det("spoon")])
        loop, source = _running_loop(detector, surface=surface)

        _tick(loop, source, 1, drain=True)

        assert surface.resizes == [(64, 48)]
        assert [d.class_label for d in surface.draws[0]] == ["spoon"]
        loop.stop()


class TestErrorContainment:
    def test_transient_failure_keeps_published_batch(self, caplog):
        detector = ScriptedDetector([_det("cup")], RuntimeError("device lost"))
        loop, source = _running_loop(detector, throttle_factor=1)

        _tick(loop, source, 1, drain=True)
        published = loop.latest_batch

        with caplog.at_level(logging.WARNING):
            _tick(loop, source, 1, drain=True)

        assert loop.latest_batch is published
        assert loop.stats.failures == 1
        assert loop.state is LoopState.RUNNING
        assert any("device lost" in r.getMessage() for r in caplog.records if r.levelno == logging.WARNING)
        loop.stop()

    def test_loop_continues_after_failure(self):
        detector = ScriptedDetector(RuntimeError("flaky"), [_det("knife")])
        loop, source = _running_loop(detector, throttle_factor=1)

        _tick(loop, source, 2, drain=True)

        assert loop.stats.failures == 1
        assert loop.latest_batch.labels == ("knife",)
        loop.stop()

    def test_benign_warning_suppressed_silently(self, caplog):
        detector = ScriptedDetector(RuntimeError("Backend name 'cpu' not found"))
        loop, source = _running_loop(detector)

        with caplog.at_level(logging.DEBUG):
            _tick(loop, source, 1, drain=True)

        assert loop.stats.benign_suppressed == 1
        assert loop.stats.failures == 0
        assert not [r for r in caplog.records if r.levelno > logging.DEBUG and "not found" in r.getMessage()]
        loop.stop()

    def test_transient_failure_recorded_with_cause(self):
        cause = RuntimeError("out of memory")
        detector = ScriptedDetector(cause)
        loop, source = _running_loop(detector)

        _tick(loop, source, 1, drain=True)

        assert isinstance(loop.last_error, TransientInferenceError)
        assert loop.last_error.__cause__ is cause
        assert loop.stats_dict()["last_error"]
        loop.stop()

    def test_model_loss_suspends_without_raising(self, caplog):
        detector = ScriptedDetector(ModelInitError("detector unloaded"), [_det("cup")])
        loop, source = _running_loop(detector, throttle_factor=1)

        with caplog.at_level(logging.ERROR):
            _tick(loop, source, 3, drain=True)

        assert loop.state is LoopState.SUSPENDED
        assert loop.stats.submissions == 1
        assert loop.stats.failures == 1
        assert loop.latest_batch is EMPTY_BATCH
        assert any("suspended" in r.getMessage() for r in caplog.records)

        loop.resume()
        _tick(loop, source, 1, drain=True)
        assert loop.latest_batch.labels == ("cup",)
        loop.stop()


class TestCancellation:
    def test_no_publish_after_stop(self):
        gate = threading.Event()
        detector = ScriptedDetector([_det("bottle")], gate=gate)
        loop, source = _running_loop(detector)

        _tick(loop, source, 1)
        assert loop.in_flight
        loop.stop()
        gate.set()
        time.sleep(0.05)
        loop.tick()
        loop.drain(timeout=1)

        assert loop.latest_batch is EMPTY_BATCH
        assert loop.stats.completed == 0
        assert loop.stats.discarded == 1

    def test_tick_after_stop_is_noop(self):
        loop, source = _running_loop(ScriptedDetector())
        loop.stop()
        loop.tick()
        assert loop.stats.ticks == 0


class TestRun:
    def test_run_until_max_ticks(self):
        detector = ScriptedDetector([_det("cup")])
        source = MockObservationSource()
        loop = DetectionLoop(source, detector, config=DetectionLoopConfig(refresh_hz=0))
        seen = []
        loop.add_callback(lambda frame_data, batch: seen.append(batch))

        loop.run(max_ticks=24)

        assert len(seen) == 24
        assert loop.state is LoopState.STOPPED
        assert not source.is_open
        assert 1 <= loop.stats.submissions <= 3

    def test_run_ends_when_source_runs_dry(self):
        source = MockObservationSource(repeat=False)
        loop = DetectionLoop(
            source,
            ScriptedDetector(),
            config=DetectionLoopConfig(refresh_hz=0, max_missed_frames=3),
        )

        loop.run(max_ticks=1000)

        assert loop.state is LoopState.STOPPED
        assert loop.stats.ticks < 1000

    def test_callback_can_stop_loop(self):
        source = MockObservationSource()
        loop = DetectionLoop(source, ScriptedDetector(), config=DetectionLoopConfig(refresh_hz=0))
        loop.add_callback(lambda frame_data, batch: loop.stop() if loop.stats.ticks >= 5 else None)

        loop.run(max_ticks=1000)

        assert loop.stats.ticks == 5

    def test_callback_errors_are_contained(self):
        source = MockObservationSource()
        loop = DetectionLoop(source, ScriptedDetector(), config=DetectionLoopConfig(refresh_hz=0))

        def bad_callback(frame_data, batch):
            raise ValueError("oops")

        loop.add_callback(bad_callback)
        loop.run(max_ticks=3)

        assert loop.stats.ticks == 3
