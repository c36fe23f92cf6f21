"""
Signal engine for tickbot.

Contains:
- analysis: pure numpy estimators over the outcome-class history
- engine: SignalEngine, one scorer parameterised by StrategyConfig
- signals: Signal and Evaluation models
"""

from tickbot.strategy.engine import SignalEngine
from tickbot.strategy.signals import Evaluation, Signal, SignalMethod

__all__ = [
    "Evaluation",
    "Signal",
    "SignalEngine",
    "SignalMethod",
]
