"""
Signal engine: one parameterised scorer selected by `StrategyConfig.method`.

The engine holds configuration only. Each `evaluate()` call is a pure
function of the history it is given and the caller's previous accepted
prediction, so two instruments can share one engine.
"""

from typing import Sequence

import numpy as np

from tickbot.infrastructure.config import StrategyConfig
from tickbot.strategy.analysis import (
    HistoryAnalysis,
    analyze,
    as_digits,
    clamp,
    coldest,
    component_scores,
)
from tickbot.strategy.signals import Evaluation, Signal, SignalMethod


class SignalEngine:
    """
    Scores a bounded outcome history and proposes at most one outcome class.

    Usage:
        engine = SignalEngine(config.strategy)
        evaluation = engine.evaluate("R_50", history.digits(), last_prediction=4)
        if evaluation.accepted:
            place(evaluation.signal)
    """

    def __init__(self, config: StrategyConfig):
        self.config = config
        self.method = SignalMethod(config.method)
        weights = config.weights.as_dict()
        total = sum(weights.values())
        self._weights = {name: w / total for name, w in weights.items()}

    def evaluate(
        self,
        instrument: str,
        digits: Sequence[int] | np.ndarray,
        last_prediction: int | None = None,
    ) -> Evaluation:
        cfg = self.config
        digits = as_digits(digits)

        if len(digits) < cfg.min_history:
            return Evaluation.rejected(
                f"insufficient history ({len(digits)} < {cfg.min_history})"
            )

        analysis = analyze(digits, cfg)
        unsafe = analysis.unsafe

        candidate, sample_size, sample_met = self._select(analysis)
        if candidate is None:
            return Evaluation.rejected(
                f"no {self.method.value} candidate", unsafe_outcomes=unsafe
            )

        components = component_scores(analysis, candidate, cfg)
        confidence = self._confidence(components)

        def reject(reason: str) -> Evaluation:
            return Evaluation.rejected(reason, unsafe, components, confidence)

        if not analysis.repetition_guard_passed:
            return reject(
                f"repetition guard: last outcome {analysis.last_outcome} repeats at "
                f"{analysis.last_repetition_rate:.2f} > {cfg.max_repetition_rate:.2f}"
            )
        if not sample_met:
            return reject(f"sample size {sample_size} below {cfg.min_sample_size}")
        if last_prediction is not None and candidate == last_prediction:
            return reject(f"outcome {candidate} equals previous prediction")
        if confidence < cfg.min_confidence:
            return reject(f"confidence {confidence:.3f} below {cfg.min_confidence:.3f}")

        signal = Signal(
            instrument=instrument,
            predicted_outcome=candidate,
            confidence=confidence,
            method=self.method,
            sample_size=sample_size,
            rationale=self._rationale(analysis, candidate),
            components=components,
        )
        return Evaluation(
            accepted=True,
            signal=signal,
            reason="accepted",
            unsafe_outcomes=unsafe,
            components=components,
            confidence=confidence,
        )

    def _select(self, analysis: HistoryAnalysis) -> tuple[int | None, int, bool]:
        """Candidate outcome, the sample it rests on, and whether that sample suffices."""
        cfg = self.config
        unsafe = analysis.unsafe

        if self.method in (SignalMethod.PATTERN, SignalMethod.HYBRID):
            pattern = analysis.pattern
            candidate = coldest(pattern.safe - unsafe, analysis.gaps)
            return candidate, pattern.matches, pattern.sample_met

        if self.method == SignalMethod.FREQUENCY:
            freq = analysis.frequency
            allowed = [c for c in range(cfg.num_classes) if c not in unsafe]
            if not allowed:
                return None, freq.sample_size, False
            lowest = min(int(freq.counts[c]) for c in allowed)
            under = frozenset(c for c in allowed if int(freq.counts[c]) == lowest)
            return (
                coldest(under, analysis.gaps),
                freq.sample_size,
                freq.sample_size >= cfg.min_sample_size,
            )

        # STREAK: the contract type decides whether the run is faded or followed
        run = analysis.run
        if run.outcome is None or run.length < cfg.min_run_length:
            return None, analysis.sample_size, False
        return run.outcome, analysis.sample_size, analysis.sample_size >= cfg.min_sample_size

    def _confidence(self, components: dict[str, float]) -> float:
        if self.method == SignalMethod.HYBRID:
            score = sum(self._weights[name] * value for name, value in components.items())
        else:
            score = components[self.method.value]
        return clamp(score)

    def _rationale(self, analysis: HistoryAnalysis, candidate: int) -> str:
        if self.method == SignalMethod.FREQUENCY:
            z = float(analysis.frequency.z_scores[candidate])
            return (
                f"outcome {candidate} under-represented (z={z:.2f}) over "
                f"{analysis.frequency.sample_size} ticks"
            )
        if self.method == SignalMethod.STREAK:
            return f"outcome {candidate} on a run of {analysis.run.length}"

        pattern = analysis.pattern
        window = ",".join(str(d) for d in pattern.window)
        seen = int(pattern.successor_counts[candidate])
        return (
            f"pattern {window} followed by {candidate} {seen} times in "
            f"{pattern.matches} matches; last seen {int(analysis.gaps[candidate])} ticks ago"
        )
