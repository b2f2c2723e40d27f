"""
Tests for the entry point's capture driver.
"""

import threading
import time

import numpy as np

from main import CaptureDriver
from models.frame import FrameData
from models.status import LoopStats
from observation.base import ObservationConfig, ObservationSource
from pipeline.capture import Anonymizer, CapturePipeline, compress
from runtime.session import DraftSession


class StillSource(ObservationSource):
    def __init__(self, frame):
        super().__init__(ObservationConfig(source_id="still"))
        self._frame = frame

    def open(self):
        self._is_open = True

    def read(self):
        if not self._is_open:
            return None
        return self._remember(FrameData.from_numpy(self._frame, timestamp=time.time()))

    def close(self):
        self._is_open = False
        self._forget()


class NoFaces:
    def locate(self, image):
        return []


class FakeLoop:
    def __init__(self):
        self.stats = LoopStats()
        self.stops = 0

    def stop(self):
        self.stops += 1


class RecordingStore:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0
        self.saved = []

    def save(self, record):
        self.calls += 1
        if self.error is not None:
            raise self.error
        self.saved.append(record)


class FakeContext:
    """Just the parts of RuntimeContext the driver touches."""

    def __init__(self, encoder=compress, frame=None):
        self.session = DraftSession()
        self.loop = FakeLoop()
        self.source = StillSource(frame if frame is not None else np.full((48, 64, 3), 80, dtype=np.uint8))
        self.source.open()
        self.source.read()
        self.capture = CapturePipeline(
            self.source,
            Anonymizer(lambda: NoFaces()),
            self.session,
            encoder=encoder,
        )


def _gated_encoder(entered, release):
    def encoder(anonymized, quality):
        entered.set()
        release.wait(timeout=5)
        return compress(anonymized, quality)
    return encoder


def _tick_until(driver, ctx, condition, limit=200):
    for _ in range(limit):
        ctx.loop.stats.ticks += 1
        driver.on_tick(None, None)
        if condition():
            return True
        time.sleep(0.01)
    return False


class TestHeadlessCapture:
    def test_waits_for_tick_count(self):
        ctx = FakeContext()
        driver = CaptureDriver(ctx, RecordingStore(), capture_after=3)

        ctx.loop.stats.ticks = 2
        driver.on_tick(None, None)

        assert not driver.pending
        assert not ctx.session.has_draft
        ctx.capture.close()

    def test_captures_and_saves_once(self):
        ctx = FakeContext()
        store = RecordingStore()
        driver = CaptureDriver(ctx, store, fill=40, capture_after=1)

        assert _tick_until(driver, ctx, lambda: driver.finished)

        assert store.calls == 1
        assert store.saved[0].fill_percent == 40
        assert driver.record is store.saved[0]
        assert driver.error is None
        assert ctx.loop.stops == 1
        assert not ctx.session.has_draft
        ctx.capture.close()

    def test_failed_save_is_not_retried(self):
        ctx = FakeContext()
        store = RecordingStore(error=IOError("disk full"))
        driver = CaptureDriver(ctx, store, capture_after=1)

        assert _tick_until(driver, ctx, lambda: driver.finished)
        for _ in range(20):
            ctx.loop.stats.ticks += 1
            driver.on_tick(None, None)

        assert store.calls == 1
        assert isinstance(driver.error, IOError)
        assert ctx.loop.stops == 1
        assert not driver.pending
        assert ctx.session.has_draft
        ctx.capture.close()

    def test_aborted_capture_tried_again(self):
        ctx = FakeContext()
        ctx.source.close()
        store = RecordingStore()
        driver = CaptureDriver(ctx, store, capture_after=1)

        _tick_until(driver, ctx, lambda: False, limit=5)
        assert not driver.finished
        assert store.calls == 0

        ctx.source.open()
        ctx.source.read()
        assert _tick_until(driver, ctx, lambda: driver.finished)
        assert store.calls == 1
        ctx.capture.close()


class TestRenderThread:
    def test_tick_not_blocked_by_running_capture(self):
        entered = threading.Event()
        release = threading.Event()
        ctx = FakeContext(encoder=_gated_encoder(entered, release))
        store = RecordingStore()
        driver = CaptureDriver(ctx, store, capture_after=1)

        ctx.loop.stats.ticks = 1
        start = time.perf_counter()
        driver.on_tick(None, None)
        assert entered.wait(timeout=5)
        for _ in range(5):
            ctx.loop.stats.ticks += 1
            driver.on_tick(None, None)
        elapsed = time.perf_counter() - start

        assert elapsed < 1
        assert driver.pending
        assert store.calls == 0

        release.set()
        assert _tick_until(driver, ctx, lambda: driver.finished)
        assert store.calls == 1
        ctx.capture.close()

    def test_second_trigger_ignored_while_running(self):
        entered = threading.Event()
        release = threading.Event()
        ctx = FakeContext(encoder=_gated_encoder(entered, release))
        driver = CaptureDriver(ctx, RecordingStore())

        assert driver.trigger()
        assert entered.wait(timeout=5)
        assert not driver.trigger()

        release.set()
        driver.wait(timeout=5)
        assert not driver.pending
        assert ctx.session.has_draft
        assert not driver.finished
        ctx.capture.close()

    def test_wait_collects_late_capture(self):
        entered = threading.Event()
        release = threading.Event()
        ctx = FakeContext(encoder=_gated_encoder(entered, release))
        store = RecordingStore()
        driver = CaptureDriver(ctx, store, capture_after=1)

        ctx.loop.stats.ticks = 1
        driver.on_tick(None, None)
        assert entered.wait(timeout=5)
        release.set()
        driver.wait(timeout=5)

        assert driver.finished
        assert store.calls == 1
        ctx.capture.close()
