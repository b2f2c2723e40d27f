"""
Error taxonomy for the inference and capture pipeline.

Initialization errors (BackendUnavailable, ModelInitError) bubble to the
caller and need an explicit retry. Per-tick and per-capture errors are
contained where they happen.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

DEFAULT_BENIGN_PATTERNS = (r"backend name '[^']*' not found",)


class PipelineError(Exception):
    """Base class for pipeline errors."""


class BackendUnavailable(PipelineError):
    """Every compute backend candidate failed to initialize."""

    def __init__(self, message: str, attempts: Sequence[Tuple[str, BaseException]] = ()):
        super().__init__(message)
        self.attempts = list(attempts)


class ModelInitError(PipelineError):
    """A model failed to load from every source."""

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error


class TransientInferenceError(PipelineError):
    """An inference call failed; the tick is skipped."""


class BenignBackendWarning(PipelineError):
    """The spurious "backend name not found" failure some runtimes raise."""


class AnonymizationDegraded(PipelineError):
    """The face locator failed during capture; the snapshot passed through unblurred."""


class CaptureAborted(PipelineError):
    """A capture attempt failed in the snapshot or compress step."""


class ErrorKind(str, Enum):
    BENIGN = "benign"
    TRANSIENT = "transient"
    FATAL = "fatal"


class ErrorClassifier:
    """
    Decide whether an exception is the known-benign backend warning.

    Matching is structural first (BenignBackendWarning), then by message
    pattern for third-party exceptions that carry the legacy text.
    """

    def __init__(self, patterns: Iterable[str] = DEFAULT_BENIGN_PATTERNS):
        self._patterns: List[re.Pattern] = [re.compile(p, re.IGNORECASE) for p in patterns]

    def is_benign(self, exc: BaseException) -> bool:
        if isinstance(exc, BenignBackendWarning):
            return True
        message = str(exc)
        return any(p.search(message) for p in self._patterns)

    def classify(self, exc: BaseException) -> ErrorKind:
        if self.is_benign(exc):
            return ErrorKind.BENIGN
        if isinstance(exc, (BackendUnavailable, ModelInitError)):
            return ErrorKind.FATAL
        return ErrorKind.TRANSIENT
