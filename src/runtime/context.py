from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from inference.backend import BackendManager, create_backend_manager
from inference.errors import BackendUnavailable, ErrorClassifier, ModelInitError
from inference.registry import ModelKind, ModelRegistry, create_model_registry
from models.config import Config
from models.status import LoopState, LoopStats, PipelineStatus, StatusLevel
from observation import ObservationSource
from pipeline.capture import Anonymizer, CapturePipeline
from pipeline.loop import DetectionLoop, create_detection_loop
from runtime.session import DraftSession

REQUIRED_MODELS = (ModelKind.OBJECT_DETECTOR, ModelKind.FACE_LOCATOR)


@dataclass
class RuntimeContext:
    """Holds runtime state and service references; avoids global singletons."""

    config: Config
    backend_manager: BackendManager
    registry: ModelRegistry
    session: DraftSession
    classifier: ErrorClassifier = field(default_factory=ErrorClassifier)
    store: Any = None
    source: Optional[ObservationSource] = None
    loop: Optional[DetectionLoop] = None
    capture: Optional[CapturePipeline] = None
    last_error: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.backend_manager.is_alive() and all(self.registry.is_loaded(k) for k in REQUIRED_MODELS)

    def initialize(self) -> None:
        """
        Select a compute backend and load both models.

        Raises:
            BackendUnavailable: If no backend could be initialized.
            ModelInitError: If a model failed to load from every source.
        """
        try:
            self.backend_manager.select_backend()
            self.registry.get_all(REQUIRED_MODELS)
        except (BackendUnavailable, ModelInitError) as e:
            self.last_error = str(e)
            logging.error(f"Initialization failed: {e}")
            raise
        self.last_error = None
        logging.info(
            f"Runtime ready: backend={self.backend_manager.active_name}, "
            f"models={[k.value for k in self.registry.loaded_kinds]}"
        )

    def retry(self) -> None:
        """Re-run initialization from scratch after a user retry."""
        logging.info("Retrying initialization")
        self.initialize()

    def attach_source(self, source: ObservationSource, display: bool = False) -> DetectionLoop:
        """Build the detection loop and capture pipeline around ``source``."""
        if not self.ready:
            raise RuntimeError("Runtime is not initialized")
        self.source = source
        self.loop = create_detection_loop(
            source,
            self.registry.get(ModelKind.OBJECT_DETECTOR),
            self.config.detection,
            classifier=self.classifier,
            display=display,
        )
        anonymizer = Anonymizer(
            lambda: self.registry.get(ModelKind.FACE_LOCATOR),
            classifier=self.classifier,
            min_kernel=self.config.capture.blur_min_kernel,
        )
        loop = self.loop
        self.capture = CapturePipeline(
            source,
            anonymizer,
            self.session,
            batch_provider=lambda: loop.latest_batch,
            config=self.config.capture,
        )
        return self.loop

    def shutdown(self) -> None:
        if self.loop is not None:
            self.loop.stop()
        if self.capture is not None:
            self.capture.close()
        if self.store is not None and hasattr(self.store, "close"):
            self.store.close()

    def status(self) -> PipelineStatus:
        alive = self.backend_manager.is_alive()
        loaded = [k.value for k in self.registry.loaded_kinds]
        if alive and self.ready:
            level = StatusLevel.READY
        elif alive and self.registry.is_loaded(ModelKind.OBJECT_DETECTOR):
            level = StatusLevel.DEGRADED
        else:
            level = StatusLevel.OFFLINE
        return PipelineStatus(
            level=level,
            backend=self.backend_manager.active_name,
            backend_alive=alive,
            models_loaded=loaded,
            loop_state=self.loop.state if self.loop is not None else LoopState.IDLE,
            loop=self.loop.stats if self.loop is not None else LoopStats(),
            detections=len(self.loop.latest_batch) if self.loop is not None else 0,
            has_draft=self.session.has_draft,
            last_error=self.last_error,
        )


def create_context(config: Config, store: Any = None) -> RuntimeContext:
    """Factory: wire backend manager, model registry and draft session from config."""
    backend_manager = create_backend_manager(config.backend.to_dict())
    registry = create_model_registry(config.models, backend_provider=lambda: backend_manager.active_backend)
    session = DraftSession(
        default_municipality=config.draft.default_municipality,
        basket_max_liters=config.draft.basket_max_liters,
    )
    return RuntimeContext(
        config=config,
        backend_manager=backend_manager,
        registry=registry,
        session=session,
        classifier=ErrorClassifier(config.backend.benign_error_patterns),
        store=store,
    )
