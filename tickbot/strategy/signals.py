"""
Signal and Evaluation models.

Implements a clean separation between:
- Signal: engine output, a predicted outcome class with its confidence
- Evaluation: the engine's verdict on a history, accepted or not, with the
  reason and the component scores that produced it

The engine builds these; the session decides what to do with them.
"""

from dataclasses import dataclass, field
from enum import Enum
import time


class SignalMethod(Enum):
    """Candidate selection method."""

    PATTERN = "pattern"        # coldest safe continuation of the trailing window
    FREQUENCY = "frequency"    # coldest under-represented class
    STREAK = "streak"          # current run outcome once the run is long enough
    HYBRID = "hybrid"          # pattern candidate, scored with every component


@dataclass(frozen=True)
class Signal:
    """
    Predicted outcome class for the next contract on one instrument.

    Usage:
        signal = Signal(
            instrument="R_50",
            predicted_outcome=4,
            confidence=0.82,
            method=SignalMethod.HYBRID,
            sample_size=37,
            rationale="pattern 3,7 never followed by 4 in 37 matches",
        )
    """

    instrument: str
    predicted_outcome: int
    confidence: float  # 0-1
    method: SignalMethod
    sample_size: int
    rationale: str = ""
    components: dict[str, float] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    @property
    def age_seconds(self) -> float:
        """Age of this signal in seconds."""
        return time.time() - self.created_at


@dataclass(frozen=True)
class Evaluation:
    """
    Result of scoring one history.

    `signal` is set only when `accepted`; `reason` always explains the verdict.
    """

    accepted: bool
    signal: Signal | None = None
    reason: str = ""
    unsafe_outcomes: frozenset[int] = frozenset()
    components: dict[str, float] = field(default_factory=dict)
    confidence: float = 0.0

    @classmethod
    def rejected(
        cls,
        reason: str,
        unsafe_outcomes: frozenset[int] = frozenset(),
        components: dict[str, float] | None = None,
        confidence: float = 0.0,
    ) -> "Evaluation":
        return cls(
            accepted=False,
            reason=reason,
            unsafe_outcomes=unsafe_outcomes,
            components=components or {},
            confidence=confidence,
        )
