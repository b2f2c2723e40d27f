"""
Compute backend selection.

Backends are tried in preference order (accelerated first, portable second).
Each attempt requests the backend, waits for it to report ready, runs one
trivial warm-up operation to surface lazy initialization failures, and
releases the warm-up resources right away. The first backend that survives
all three steps becomes active and stays active until select_backend() is
called again.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import cv2
import numpy as np

from inference.errors import DEFAULT_BENIGN_PATTERNS, BackendUnavailable, ErrorClassifier
from inference.fallback import Attempt, first_success


@dataclass(frozen=True)
class ActiveBackend:
    """
    The backend models should run on.

    Attributes:
        name: Backend identity (e.g. "cuda", "cpu").
        dnn_backend: OpenCV DNN backend id.
        dnn_target: OpenCV DNN target id.
        selected_at: Unix timestamp of selection.
    """
    name: str
    dnn_backend: int
    dnn_target: int
    selected_at: float = field(default_factory=time.time)


class ComputeBackend(ABC):
    """
    A candidate compute backend.

    Lifecycle of one selection attempt:
        1. request()
        2. wait_ready(timeout)
        3. resource = warm_up(); release(resource)
    """

    name: str = "unknown"

    @abstractmethod
    def request(self) -> None:
        """Ask for the backend. Raises if it is not available here."""

    def wait_ready(self, timeout: float) -> None:
        """Block until the backend reports ready, or raise."""

    @abstractmethod
    def warm_up(self) -> Any:
        """Run one trivial operation; return anything that must be released."""

    def release(self, resource: Any) -> None:
        """Release whatever warm_up() returned."""

    @abstractmethod
    def dnn_preference(self) -> tuple:
        """Return (dnn_backend_id, dnn_target_id) for OpenCV DNN models."""

    def is_alive(self) -> bool:
        return True


class CudaBackend(ComputeBackend):
    """OpenCV DNN on a CUDA device."""

    name = "cuda"

    def __init__(self, device_id: int = 0):
        self.device_id = device_id

    def _device_count(self) -> int:
        if not hasattr(cv2, "cuda"):
            return 0
        return int(cv2.cuda.getCudaEnabledDeviceCount())

    def request(self) -> None:
        if self._device_count() <= self.device_id:
            raise RuntimeError("No CUDA-enabled device available to OpenCV")
        cv2.cuda.setDevice(self.device_id)

    def wait_ready(self, timeout: float) -> None:
        """Wait for the device stream to drain, giving up after ``timeout`` seconds."""
        stream = cv2.cuda.Stream()
        # waitForCompletion() has no timeout of its own; a stuck driver leaves the worker behind
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cuda-ready")
        try:
            executor.submit(stream.waitForCompletion).result(timeout=timeout)
        except FutureTimeoutError:
            raise TimeoutError(f"CUDA device not ready after {timeout:.1f}s") from None
        finally:
            executor.shutdown(wait=False)

    def warm_up(self) -> Any:
        gpu = cv2.cuda_GpuMat()
        gpu.upload(np.ones((1, 1), dtype=np.float32))
        out = gpu.download()
        if float(out[0, 0]) != 1.0:
            gpu.release()
            raise RuntimeError("CUDA warm-up returned wrong value")
        return gpu

    def release(self, resource: Any) -> None:
        if resource is not None:
            resource.release()

    def dnn_preference(self) -> tuple:
        return (cv2.dnn.DNN_BACKEND_CUDA, cv2.dnn.DNN_TARGET_CUDA)

    def is_alive(self) -> bool:
        return self._device_count() > self.device_id


class CpuBackend(ComputeBackend):
    """OpenCV's own DNN implementation on the CPU. Always available."""

    name = "cpu"

    def request(self) -> None:
        cv2.setUseOptimized(True)

    def warm_up(self) -> Any:
        blob = cv2.dnn.blobFromImage(np.ones((1, 1, 3), dtype=np.uint8))
        if blob.shape != (1, 3, 1, 1):
            raise RuntimeError(f"CPU warm-up produced unexpected shape {blob.shape}")
        return None

    def dnn_preference(self) -> tuple:
        return (cv2.dnn.DNN_BACKEND_OPENCV, cv2.dnn.DNN_TARGET_CPU)


BACKEND_FACTORIES: Dict[str, Callable[[], ComputeBackend]] = {
    "cuda": CudaBackend,
    "cpu": CpuBackend,
}


class BackendManager:
    """
    Selects and holds the active compute backend.

    Example:
        manager = BackendManager([CudaBackend(), CpuBackend()])
        active = manager.select_backend()
        print(active.name)
    """

    def __init__(
        self,
        candidates: Sequence[ComputeBackend],
        classifier: Optional[ErrorClassifier] = None,
        ready_timeout: float = 5.0,
    ):
        if not candidates:
            raise ValueError("BackendManager needs at least one candidate")
        self._candidates = list(candidates)
        self._classifier = classifier or ErrorClassifier()
        self._ready_timeout = ready_timeout
        self._active: Optional[ActiveBackend] = None
        self._active_candidate: Optional[ComputeBackend] = None
        self._attempts: List[Attempt] = []

    @property
    def active_backend(self) -> Optional[ActiveBackend]:
        return self._active

    @property
    def active_name(self) -> Optional[str]:
        return self._active.name if self._active else None

    @property
    def attempts(self) -> List[Attempt]:
        """Failures recorded by the most recent select_backend() call."""
        return list(self._attempts)

    @property
    def candidate_names(self) -> List[str]:
        return [c.name for c in self._candidates]

    def is_alive(self) -> bool:
        """Whether a backend is active and still usable."""
        if self._active is None or self._active_candidate is None:
            return False
        try:
            return self._active_candidate.is_alive()
        except Exception as e:
            logging.warning(f"Backend liveness check failed: {e}")
            return False

    def select_backend(self) -> ActiveBackend:
        """
        Run selection from scratch.

        Raises:
            BackendUnavailable: If every candidate failed.
        """
        self._active = None
        self._active_candidate = None
        logging.info(f"Selecting compute backend (preference: {', '.join(self.candidate_names)})")

        result = first_success(
            [(c.name, self._attempt_factory(c)) for c in self._candidates],
            label="Backend",
        )
        self._attempts = result.attempts

        if not result.succeeded:
            summary = "; ".join(f"{a.name}: {a.error}" for a in result.attempts)
            logging.error(f"No compute backend could be initialized ({summary})")
            raise BackendUnavailable(
                f"All compute backends failed: {summary}",
                attempts=[(a.name, a.error) for a in result.attempts],
            )

        candidate = result.value
        dnn_backend, dnn_target = candidate.dnn_preference()
        self._active = ActiveBackend(name=candidate.name, dnn_backend=dnn_backend, dnn_target=dnn_target)
        self._active_candidate = candidate
        logging.info(f"Compute backend initialized: {candidate.name}")
        return self._active

    def _attempt_factory(self, candidate: ComputeBackend) -> Callable[[], ComputeBackend]:
        def attempt() -> ComputeBackend:
            self._soft(candidate, "request", candidate.request)
            self._soft(candidate, "ready", lambda: candidate.wait_ready(self._ready_timeout))
            resource = None
            try:
                resource = self._soft(candidate, "warm-up", candidate.warm_up)
            finally:
                candidate.release(resource)
            logging.debug(f"Backend {candidate.name} warm-up complete")
            return candidate
        return attempt

    def _soft(self, candidate: ComputeBackend, step: str, fn: Callable[[], Any]) -> Any:
        """Run one attempt step; the benign backend warning does not fail it."""
        try:
            return fn()
        except Exception as e:
            if self._classifier.is_benign(e):
                logging.debug(f"Backend {candidate.name} {step}: suppressed benign warning ({e})")
                return None
            raise


def create_backend_manager(backend_cfg: Dict[str, Any]) -> BackendManager:
    """Factory: build a BackendManager from the ``backend`` config section."""
    preference = backend_cfg.get("preference", ["cuda", "cpu"])
    candidates: List[ComputeBackend] = []
    for name in preference:
        factory = BACKEND_FACTORIES.get(name)
        if factory is None:
            raise ValueError(f"Unknown compute backend '{name}' (known: {', '.join(BACKEND_FACTORIES)})")
        candidates.append(factory())
    classifier = ErrorClassifier(backend_cfg.get("benign_error_patterns", DEFAULT_BENIGN_PATTERNS))
    return BackendManager(
        candidates,
        classifier=classifier,
        ready_timeout=backend_cfg.get("ready_timeout_s", 5.0),
    )
