"""
Model registry.

Loads each model kind at most once per process, trying a remote source
first and the bundled local files second. Loaded handles are cached for the
lifetime of the registry.
"""

from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

import cv2
import requests

from inference.backend import ActiveBackend
from inference.detector import ObjectDetector
from inference.errors import ModelInitError
from inference.faces import FaceLocator
from inference.fallback import first_success
from models.config import ModelFilesConfig, ModelsConfig


class ModelKind(str, Enum):
    OBJECT_DETECTOR = "object_detector"
    FACE_LOCATOR = "face_locator"


# (weights_path, config_path, files_cfg, active_backend) -> handle
ModelBuilder = Callable[[str, Optional[str], ModelFilesConfig, Optional[ActiveBackend]], Any]


def build_object_detector(
    weights_path: str,
    config_path: Optional[str],
    files_cfg: ModelFilesConfig,
    backend: Optional[ActiveBackend],
) -> ObjectDetector:
    """Build the SSD MobileNet COCO detector."""
    if config_path:
        model = cv2.dnn_DetectionModel(weights_path, config_path)
    else:
        model = cv2.dnn_DetectionModel(weights_path)
    w, h = files_cfg.input_size
    model.setInputSize(int(w), int(h))
    model.setInputScale(1.0 / 127.5)
    model.setInputMean((127.5, 127.5, 127.5))
    model.setInputSwapRB(True)
    if backend is not None:
        model.setPreferableBackend(backend.dnn_backend)
        model.setPreferableTarget(backend.dnn_target)
    return ObjectDetector(model, score_threshold=files_cfg.score_threshold, source=weights_path)


def build_face_locator(
    weights_path: str,
    config_path: Optional[str],
    files_cfg: ModelFilesConfig,
    backend: Optional[ActiveBackend],
) -> FaceLocator:
    """Build the YuNet face locator."""
    w, h = files_cfg.input_size
    backend_id = backend.dnn_backend if backend is not None else cv2.dnn.DNN_BACKEND_OPENCV
    target_id = backend.dnn_target if backend is not None else cv2.dnn.DNN_TARGET_CPU
    detector = cv2.FaceDetectorYN.create(
        weights_path,
        config_path or "",
        (int(w), int(h)),
        files_cfg.score_threshold,
        0.3,
        5000,
        backend_id,
        target_id,
    )
    return FaceLocator(detector, source=weights_path)


BUILDERS: Dict[ModelKind, ModelBuilder] = {
    ModelKind.OBJECT_DETECTOR: build_object_detector,
    ModelKind.FACE_LOCATOR: build_face_locator,
}


class ModelSource(ABC):
    """One place a model can be loaded from."""

    name: str = "source"

    def __init__(self, files_cfg: ModelFilesConfig, builder: ModelBuilder):
        self.files_cfg = files_cfg
        self.builder = builder

    @abstractmethod
    def load(self, backend: Optional[ActiveBackend]) -> Any:
        """Load and return a model handle, or raise."""


class RemoteModelSource(ModelSource):
    """Downloads model files into a cache directory, then builds the model."""

    name = "remote"

    def __init__(
        self,
        files_cfg: ModelFilesConfig,
        builder: ModelBuilder,
        cache_dir: str,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(files_cfg, builder)
        self.cache_dir = cache_dir
        self.timeout = timeout
        self._session = session or requests.Session()

    def load(self, backend: Optional[ActiveBackend]) -> Any:
        if not self.files_cfg.remote_url:
            raise ValueError("No remote_url configured")
        weights = self._fetch(self.files_cfg.remote_url)
        config = self._fetch(self.files_cfg.remote_config_url) if self.files_cfg.remote_config_url else None
        return self.builder(weights, config, self.files_cfg, backend)

    def _fetch(self, url: str) -> str:
        filename = os.path.basename(urlparse(url).path) or "model.bin"
        target = os.path.join(self.cache_dir, filename)
        if os.path.exists(target) and os.path.getsize(target) > 0:
            logging.debug(f"Using cached model file {target}")
            return target

        os.makedirs(self.cache_dir, exist_ok=True)
        logging.info(f"Downloading model file {url}")
        response = self._session.get(url, timeout=self.timeout)
        response.raise_for_status()
        tmp = target + ".part"
        with open(tmp, "wb") as f:
            f.write(response.content)
        os.replace(tmp, target)
        logging.info(f"Model file saved to {target} ({len(response.content) / 1024:.0f} KB)")
        return target


class LocalModelSource(ModelSource):
    """Loads bundled model files from disk."""

    name = "local"

    def load(self, backend: Optional[ActiveBackend]) -> Any:
        path = self.files_cfg.local_path
        if not path:
            raise ValueError("No local_path configured")
        if not os.path.exists(path):
            raise FileNotFoundError(f"Model file not found: {path}")
        config = self.files_cfg.local_config_path
        if config and not os.path.exists(config):
            raise FileNotFoundError(f"Model config not found: {config}")
        return self.builder(path, config, self.files_cfg, backend)


class ModelRegistry:
    """
    Lazily loads and caches model handles.

    Example:
        registry = create_model_registry(config.models, backend_manager)
        detector = registry.get(ModelKind.OBJECT_DETECTOR)
        handles = registry.get_all([ModelKind.OBJECT_DETECTOR, ModelKind.FACE_LOCATOR])
    """

    def __init__(
        self,
        sources: Dict[ModelKind, List[ModelSource]],
        backend_provider: Optional[Callable[[], Optional[ActiveBackend]]] = None,
    ):
        self._sources = {kind: list(chain) for kind, chain in sources.items()}
        self._backend_provider = backend_provider or (lambda: None)
        self._handles: Dict[ModelKind, Any] = {}
        self._locks: Dict[ModelKind, threading.Lock] = {kind: threading.Lock() for kind in self._sources}
        self._load_counts: Dict[ModelKind, int] = {kind: 0 for kind in self._sources}

    def is_loaded(self, kind: ModelKind) -> bool:
        return kind in self._handles

    @property
    def loaded_kinds(self) -> List[ModelKind]:
        return list(self._handles)

    def load_count(self, kind: ModelKind) -> int:
        """Number of times the load work actually ran for ``kind``."""
        return self._load_counts.get(kind, 0)

    def get(self, kind: ModelKind) -> Any:
        """
        Return the cached handle for ``kind``, loading it on first use.

        Raises:
            ModelInitError: If every source failed.
        """
        handle = self._handles.get(kind)
        if handle is not None:
            return handle
        if kind not in self._sources:
            raise ModelInitError(f"No sources registered for model '{kind.value}'")

        with self._locks[kind]:
            handle = self._handles.get(kind)
            if handle is not None:
                return handle
            handle = self._load(kind)
            self._handles[kind] = handle
            return handle

    def get_all(self, kinds: Iterable[ModelKind]) -> Dict[ModelKind, Any]:
        """
        Load several kinds concurrently.

        Succeeds only if every kind loads. Raises the first error to complete;
        errors from the other loads are logged when they finish.
        """
        kinds = list(dict.fromkeys(kinds))
        if not kinds:
            return {}

        executor = ThreadPoolExecutor(max_workers=len(kinds), thread_name_prefix="model-load")
        futures: Dict[Future, ModelKind] = {executor.submit(self.get, kind): kind for kind in kinds}
        results: Dict[ModelKind, Any] = {}
        try:
            for fut in as_completed(futures):
                kind = futures[fut]
                error = fut.exception()
                if error is not None:
                    for other, other_kind in futures.items():
                        if other is not fut:
                            other.add_done_callback(_log_secondary_failure(other_kind))
                    raise error
                results[kind] = fut.result()
        finally:
            executor.shutdown(wait=False)
        return results

    def _load(self, kind: ModelKind) -> Any:
        self._load_counts[kind] += 1
        backend = self._backend_provider()
        logging.info(
            f"Loading model {kind.value} "
            f"(backend={backend.name if backend else 'default'})"
        )
        result = first_success(
            [(src.name, _bind_load(src, backend)) for src in self._sources[kind]],
            label=f"Model {kind.value} source",
        )
        if not result.succeeded:
            cause = result.last_error
            logging.error(f"Model {kind.value} failed to load from every source")
            raise ModelInitError(
                f"Failed to load {kind.value} from {' and '.join(a.name for a in result.attempts)} sources",
                original_error=cause,
            ) from cause
        logging.info(f"Model {kind.value} loaded from {result.winner} source")
        return result.value


def _bind_load(source: ModelSource, backend: Optional[ActiveBackend]) -> Callable[[], Any]:
    return lambda: source.load(backend)


def _log_secondary_failure(kind: ModelKind) -> Callable[[Future], None]:
    def callback(fut: Future) -> None:
        if fut.cancelled():
            return
        error = fut.exception()
        if error is not None:
            logging.warning(f"Model {kind.value} also failed to load: {error}")
    return callback


def create_model_registry(
    models_cfg: ModelsConfig,
    backend_provider: Optional[Callable[[], Optional[ActiveBackend]]] = None,
) -> ModelRegistry:
    """Factory: remote-then-local source chains for both model kinds."""
    sources: Dict[ModelKind, List[ModelSource]] = {}
    for kind, files_cfg in (
        (ModelKind.OBJECT_DETECTOR, models_cfg.object_detector),
        (ModelKind.FACE_LOCATOR, models_cfg.face_locator),
    ):
        builder = BUILDERS[kind]
        sources[kind] = [
            RemoteModelSource(
                files_cfg,
                builder,
                cache_dir=os.path.join(models_cfg.cache_dir, kind.value),
                timeout=models_cfg.download_timeout_s,
            ),
            LocalModelSource(files_cfg, builder),
        ]
    return ModelRegistry(sources, backend_provider=backend_provider)
