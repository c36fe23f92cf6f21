"""
Explicit session state.

One `SessionState` per trading session:
- connection state mirrored from the transport
- one `InstrumentState` per configured instrument (history, position,
  cooldown and block bookkeeping, live tick subscription)
- the rotating set of instruments suspended after a loss
- the session-scoped `StakePolicyState`
"""

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tickbot.infrastructure.config import AppConfig, InstrumentConfig
from tickbot.ingestion.observations import ObservationHistory
from tickbot.ingestion.ws_client import ConnectionState
from tickbot.risk.stake_policy import StakePolicyState

if TYPE_CHECKING:
    from tickbot.execution.position_manager import Position


@dataclass
class InstrumentState:
    config: InstrumentConfig
    history: ObservationHistory
    position: "Position | None" = None
    last_settlement_at: float | None = None
    last_prediction: int | None = None
    blocked_until: float = 0.0
    suspended: bool = False
    live_subscription_id: str | None = None

    @property
    def symbol(self) -> str:
        return self.config.symbol

    def is_blocked(self, now: float) -> bool:
        return now < self.blocked_until

    def block(self, until: float) -> None:
        self.blocked_until = max(self.blocked_until, until)


@dataclass
class SessionState:
    instruments: dict[str, InstrumentState]
    stake: StakePolicyState
    connection: ConnectionState = ConnectionState.DISCONNECTED
    started_at: float = field(default_factory=time.time)
    stopped_at: float | None = None
    stop_reason: str = ""
    suspended: list[str] = field(default_factory=list)  # oldest first

    @classmethod
    def create(cls, config: AppConfig) -> "SessionState":
        return cls(
            instruments={
                inst.symbol: InstrumentState(
                    config=inst,
                    history=ObservationHistory(inst.symbol, inst.history_size),
                )
                for inst in config.instruments
            },
            stake=StakePolicyState.initial(config.stake, config.risk),
        )

    def instrument(self, symbol: str) -> InstrumentState:
        return self.instruments[symbol]

    @property
    def open_positions(self) -> int:
        """Positions proposed or open, across all instruments."""
        return sum(
            1 for inst in self.instruments.values()
            if inst.position is not None and inst.position.is_live
        )

    @property
    def is_running(self) -> bool:
        return self.stopped_at is None

    def suspend(self, symbol: str, limit: int) -> str | None:
        """
        Suspend an instrument after a loss.

        At most `limit` instruments stay suspended, and never all of them;
        the longest suspended one is reactivated to make room. Returns the
        reactivated symbol, if any.
        """
        limit = min(limit, len(self.instruments) - 1)
        if limit <= 0 or symbol in self.suspended:
            return None

        self.suspended.append(symbol)
        self.instrument(symbol).suspended = True
        if len(self.suspended) <= limit:
            return None

        released = self.suspended.pop(0)
        self.instrument(released).suspended = False
        return released

    def clear_suspensions(self) -> None:
        for symbol in self.suspended:
            self.instrument(symbol).suspended = False
        self.suspended.clear()
