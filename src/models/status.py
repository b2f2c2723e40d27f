"""
Status models for the detection loop and the pipeline as a whole.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class LoopState(str, Enum):
    """Detection loop lifecycle states."""
    IDLE = "idle"
    RUNNING = "running"
    SUSPENDED = "suspended"
    STOPPED = "stopped"


class StatusLevel(str, Enum):
    """Overall pipeline status levels."""
    READY = "ready"
    DEGRADED = "degraded"
    OFFLINE = "offline"


@dataclass
class LoopStats:
    """
    Counters kept by the detection loop.

    Attributes:
        ticks: Render ticks seen while running.
        ready_ticks: Ticks where the frame source had data.
        submissions: Inference requests submitted.
        completed: Inference requests whose result was published.
        failures: Inference failures, transient or fatal.
        benign_suppressed: Benign backend warnings swallowed.
        discarded: Results dropped because the loop had stopped.
        last_latency_ms: Duration of the most recent inference.
    """
    ticks: int = 0
    ready_ticks: int = 0
    submissions: int = 0
    completed: int = 0
    failures: int = 0
    benign_suppressed: int = 0
    discarded: int = 0
    last_latency_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticks": self.ticks,
            "ready_ticks": self.ready_ticks,
            "submissions": self.submissions,
            "completed": self.completed,
            "failures": self.failures,
            "benign_suppressed": self.benign_suppressed,
            "discarded": self.discarded,
            "last_latency_ms": self.last_latency_ms,
        }


@dataclass
class PipelineStatus:
    """
    Snapshot of the runtime for display or diagnostics.

    Attributes:
        level: Overall status.
        backend: Active compute backend name, if any.
        backend_alive: Whether the active backend is still usable.
        models_loaded: Names of loaded models.
        loop_state: Detection loop state.
        loop: Detection loop counters.
        detections: Size of the currently published batch.
        has_draft: Whether a draft record is pending.
        last_error: Message of the last initialization error, if any.
    """
    level: StatusLevel = StatusLevel.OFFLINE
    backend: Optional[str] = None
    backend_alive: bool = False
    models_loaded: list = field(default_factory=list)
    loop_state: LoopState = LoopState.IDLE
    loop: LoopStats = field(default_factory=LoopStats)
    detections: int = 0
    has_draft: bool = False
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "backend": self.backend,
            "backend_alive": self.backend_alive,
            "models_loaded": list(self.models_loaded),
            "loop_state": self.loop_state.value,
            "loop": self.loop.to_dict(),
            "detections": self.detections,
            "has_draft": self.has_draft,
            "last_error": self.last_error,
        }
