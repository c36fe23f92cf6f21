"""
Statistical estimators over an outcome-class sequence.

Every function here is pure: it takes the digit array (oldest first) and
returns plain numbers or small frozen dataclasses. Nothing reads the clock,
the network or the session.

Estimators:
- Frequency deviation: per-class z-score against the uniform rate 1/k
- Run / streak: current run and ticks since the last immediate repeat
- Self-transition rate: P(next == X | current == X) per class
- Exact-pattern continuation: successors of every earlier occurrence of the
  trailing window
- Shannon entropy normalised to [0, 1]
"""

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from tickbot.infrastructure.config import StrategyConfig


def as_digits(digits: Sequence[int] | np.ndarray) -> np.ndarray:
    return np.asarray(digits, dtype=np.int64)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class FrequencyStats:
    """Class counts and deviation from uniform over the frequency window."""
    sample_size: int
    counts: np.ndarray
    z_scores: np.ndarray
    hot: frozenset[int]   # z > threshold
    cold: frozenset[int]  # z < -threshold

    def frequency(self, outcome: int) -> float:
        return float(self.counts[outcome]) / self.sample_size if self.sample_size else 0.0


def frequency_deviation(
    digits: np.ndarray,
    num_classes: int,
    window: int,
    z_threshold: float,
) -> FrequencyStats:
    recent = digits[-window:]
    n = len(recent)
    counts = np.bincount(recent, minlength=num_classes)[:num_classes]

    if n == 0:
        zeros = np.zeros(num_classes)
        return FrequencyStats(0, counts, zeros, frozenset(), frozenset())

    p = 1.0 / num_classes
    expected = n * p
    std = np.sqrt(n * p * (1 - p))
    z_scores = (counts - expected) / std

    return FrequencyStats(
        sample_size=n,
        counts=counts,
        z_scores=z_scores,
        hot=frozenset(int(c) for c in np.flatnonzero(z_scores > z_threshold)),
        cold=frozenset(int(c) for c in np.flatnonzero(z_scores < -z_threshold)),
    )


@dataclass(frozen=True)
class RunStats:
    outcome: int | None
    length: int
    non_repeat_streak: int  # transitions since the last immediate repeat


def run_stats(digits: np.ndarray) -> RunStats:
    n = len(digits)
    if n == 0:
        return RunStats(None, 0, 0)

    changes = digits[1:] != digits[:-1]
    change_idx = np.flatnonzero(changes)
    repeat_idx = np.flatnonzero(~changes)

    length = n - (int(change_idx[-1]) + 1) if change_idx.size else n
    non_repeat = len(changes) - (int(repeat_idx[-1]) + 1) if repeat_idx.size else len(changes)

    return RunStats(outcome=int(digits[-1]), length=length, non_repeat_streak=non_repeat)


def self_transition_rates(digits: np.ndarray, num_classes: int) -> np.ndarray:
    """Rate at which each class is immediately followed by itself (0 if never seen)."""
    if len(digits) < 2:
        return np.zeros(num_classes)

    prev, nxt = digits[:-1], digits[1:]
    occurrences = np.bincount(prev, minlength=num_classes)[:num_classes]
    repeats = np.bincount(prev[prev == nxt], minlength=num_classes)[:num_classes]
    return np.divide(
        repeats,
        occurrences,
        out=np.zeros(num_classes),
        where=occurrences > 0,
    )


@dataclass(frozen=True)
class PatternStats:
    """Successor table for the trailing window."""
    window: tuple[int, ...]
    matches: int
    successor_counts: np.ndarray
    safe: frozenset[int]  # empty until the sample minimum is met
    sample_met: bool


def pattern_continuation(
    digits: np.ndarray,
    num_classes: int,
    length: int,
    max_safe_occurrences: int,
    min_sample_size: int,
) -> PatternStats:
    n = len(digits)
    if n <= length:
        empty = np.zeros(num_classes, dtype=np.int64)
        return PatternStats(tuple(int(d) for d in digits), 0, empty, frozenset(), False)

    window = digits[-length:]
    # windows that still have a successor; the trailing window itself has none
    windows = np.lib.stride_tricks.sliding_window_view(digits[:-1], length)
    mask = np.all(windows == window, axis=1)
    successors = digits[length:][mask]

    counts = np.bincount(successors, minlength=num_classes)[:num_classes]
    matches = int(mask.sum())
    sample_met = matches >= min_sample_size
    safe = (
        frozenset(int(c) for c in np.flatnonzero(counts <= max_safe_occurrences))
        if sample_met else frozenset()
    )

    return PatternStats(
        window=tuple(int(d) for d in window),
        matches=matches,
        successor_counts=counts,
        safe=safe,
        sample_met=sample_met,
    )


def last_seen_gaps(digits: np.ndarray, num_classes: int) -> np.ndarray:
    """Ticks since each class last occurred; len(digits) for classes never seen."""
    n = len(digits)
    gaps = np.full(num_classes, n, dtype=np.int64)
    for outcome in range(num_classes):
        positions = np.flatnonzero(digits == outcome)
        if positions.size:
            gaps[outcome] = n - 1 - int(positions[-1])
    return gaps


def coldest(candidates: frozenset[int] | set[int], gaps: np.ndarray) -> int | None:
    """Candidate seen longest ago; ties go to the lowest class."""
    if not candidates:
        return None
    return min(candidates, key=lambda c: (-int(gaps[c]), c))


def normalized_entropy(digits: np.ndarray, num_classes: int, window: int) -> float:
    recent = digits[-window:]
    n = len(recent)
    if n == 0:
        return 0.0

    counts = np.bincount(recent, minlength=num_classes)[:num_classes]
    p = counts[counts > 0] / n
    entropy = float(-(p * np.log2(p)).sum())
    return clamp(entropy / np.log2(num_classes))


@dataclass(frozen=True)
class HistoryAnalysis:
    """Every estimator evaluated once over the same history."""
    sample_size: int
    last_outcome: int
    frequency: FrequencyStats
    run: RunStats
    repetition_rates: np.ndarray
    pattern: PatternStats
    gaps: np.ndarray
    entropy: float
    max_repetition_rate: float

    @property
    def last_repetition_rate(self) -> float:
        return float(self.repetition_rates[self.last_outcome])

    @property
    def repetition_guard_passed(self) -> bool:
        return self.last_repetition_rate <= self.max_repetition_rate

    @property
    def high_repetition(self) -> frozenset[int]:
        return frozenset(
            int(c) for c in np.flatnonzero(self.repetition_rates > self.max_repetition_rate)
        )

    @property
    def unsafe(self) -> frozenset[int]:
        """Over-represented classes and classes that repeat above the ceiling."""
        return self.frequency.hot | self.high_repetition


def analyze(digits: Sequence[int] | np.ndarray, config: StrategyConfig) -> HistoryAnalysis:
    """Run every estimator; `digits` must be non-empty."""
    digits = as_digits(digits)
    if len(digits) == 0:
        raise ValueError("cannot analyze an empty history")

    k = config.num_classes
    if digits.min() < 0 or digits.max() >= k:
        raise ValueError(f"outcome classes must lie in [0, {k})")
    return HistoryAnalysis(
        sample_size=len(digits),
        last_outcome=int(digits[-1]),
        frequency=frequency_deviation(digits, k, config.frequency_window, config.z_threshold),
        run=run_stats(digits),
        repetition_rates=self_transition_rates(digits, k),
        pattern=pattern_continuation(
            digits,
            k,
            config.pattern_length,
            config.max_safe_occurrences,
            config.min_sample_size,
        ),
        gaps=last_seen_gaps(digits, k),
        entropy=normalized_entropy(digits, k, config.entropy_window),
        max_repetition_rate=config.max_repetition_rate,
    )


def component_scores(
    analysis: HistoryAnalysis,
    candidate: int,
    config: StrategyConfig,
) -> dict[str, float]:
    """Per-component support for predicting `candidate`, each in [0, 1]."""
    pattern = analysis.pattern
    if pattern.matches:
        pattern_score = 1.0 - (int(pattern.successor_counts[candidate]) + 1) / (pattern.matches + 2)
    else:
        pattern_score = 0.0

    z = float(analysis.frequency.z_scores[candidate])
    frequency_score = clamp(0.5 - z / (2 * config.z_threshold))

    run = analysis.run
    if candidate == run.outcome:
        streak_score = min(1.0, (run.length - 1) / config.streak_saturation)
    else:
        streak_score = min(1.0, run.non_repeat_streak / config.streak_saturation)

    repetition_score = clamp(1.0 - analysis.last_repetition_rate / config.max_repetition_rate)

    entropy_score = 1.0 - analysis.entropy
    if analysis.entropy > config.max_entropy:
        entropy_score -= config.entropy_penalty

    return {
        "pattern": clamp(pattern_score),
        "frequency": frequency_score,
        "streak": clamp(streak_score),
        "repetition": repetition_score,
        "entropy": clamp(entropy_score),
    }
