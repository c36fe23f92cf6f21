"""
Tick observations and the bounded per-instrument history.

A tick's outcome class is the last digit of its quote rendered at the
instrument's precision: 1234.5 with 2 decimals renders "1234.50", class 0.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

import numpy as np


def extract_digit(value: float, decimals: int) -> int:
    """Digit at position `decimals` after the decimal point, zero padded."""
    return int(f"{value:.{decimals}f}"[-1])


@dataclass(frozen=True)
class Observation:
    """One tick for one instrument."""
    instrument: str
    value: float
    digit: int
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_quote(
        cls,
        instrument: str,
        value: float,
        decimals: int,
        timestamp: float | None = None,
    ) -> "Observation":
        return cls(
            instrument=instrument,
            value=float(value),
            digit=extract_digit(float(value), decimals),
            timestamp=time.time() if timestamp is None else float(timestamp),
        )

    @classmethod
    def from_tick(cls, tick: dict[str, Any], decimals: int) -> "Observation":
        """Build from a `tick` push payload ({symbol, quote, epoch})."""
        return cls.from_quote(
            instrument=tick["symbol"],
            value=tick["quote"],
            decimals=decimals,
            timestamp=tick.get("epoch"),
        )


class ObservationHistory:
    """
    FIFO-bounded observation sequence for one instrument.

    Owned by the session; the signal engine only reads `digits()`.
    """

    def __init__(self, instrument: str, max_length: int):
        if max_length <= 0:
            raise ValueError("max_length must be positive")
        self.instrument = instrument
        self.max_length = max_length
        self._observations: deque[Observation] = deque(maxlen=max_length)

    def __len__(self) -> int:
        return len(self._observations)

    def __iter__(self) -> Iterator[Observation]:
        return iter(self._observations)

    @property
    def last(self) -> Observation | None:
        return self._observations[-1] if self._observations else None

    def append(self, observation: Observation) -> None:
        if observation.instrument != self.instrument:
            raise ValueError(
                f"Observation for {observation.instrument} appended to {self.instrument} history"
            )
        self._observations.append(observation)

    def extend(self, observations: Iterable[Observation]) -> None:
        for observation in observations:
            self.append(observation)

    def load_history(
        self,
        prices: Iterable[float],
        times: Iterable[float],
        decimals: int,
    ) -> int:
        """Seed from a `ticks_history` response; returns the number loaded."""
        observations = [
            Observation.from_quote(self.instrument, price, decimals, epoch)
            for price, epoch in zip(prices, times)
        ]
        self.extend(observations)
        return len(observations)

    def clear(self) -> None:
        self._observations.clear()

    def digits(self) -> np.ndarray:
        """Outcome classes, oldest first."""
        return np.fromiter(
            (o.digit for o in self._observations),
            dtype=np.int64,
            count=len(self._observations),
        )
