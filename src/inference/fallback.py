"""
"First success wins" over an ordered list of candidate strategies.

Used for both backend selection and model source selection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

R = TypeVar("R")


@dataclass
class Attempt:
    """One failed candidate."""
    name: str
    error: BaseException


@dataclass
class FallbackResult(Generic[R]):
    """
    Outcome of a fallback chain.

    Attributes:
        value: Result of the winning candidate (None if all failed).
        winner: Name of the winning candidate.
        attempts: Failed candidates, in the order they were tried.
    """
    value: Optional[R] = None
    winner: Optional[str] = None
    attempts: List[Attempt] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.winner is not None

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.attempts[-1].error if self.attempts else None


def first_success(
    candidates: Sequence[Tuple[str, Callable[[], R]]],
    label: str = "candidate",
) -> FallbackResult[R]:
    """
    Try each (name, fn) in order and return on the first that does not raise.

    Failures are recorded, logged at warning level and the next candidate is
    tried. The caller decides what to raise when nothing succeeded.
    """
    result: FallbackResult[R] = FallbackResult()
    for name, fn in candidates:
        try:
            value = fn()
        except Exception as e:
            result.attempts.append(Attempt(name=name, error=e))
            logging.warning(f"{label} '{name}' failed: {e}")
            continue
        result.value = value
        result.winner = name
        return result
    return result
