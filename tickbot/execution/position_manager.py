"""
Position lifecycle per instrument.

Features:
- State machine IDLE -> PROPOSED -> OPEN -> SETTLED -> IDLE
- Synchronous check-and-set on `begin`, so at most one live position per
  instrument exists even with several trade attempts in flight
- Multi-entry positions (grid layers); the stake policy is applied once,
  with the summed profit, when the last entry settles
- Abort path back to IDLE that leaves the stake policy untouched
- Unacknowledged buys keep the position PROPOSED until reconciled
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

from tickbot.core.state import SessionState
from tickbot.infrastructure.config import StakeConfig
from tickbot.infrastructure.logging import get_logger
from tickbot.risk.gatekeeper import RiskLimitExceeded, check_session_limits
from tickbot.risk.stake_policy import StakePolicyState, apply_outcome
from tickbot.strategy.signals import Signal

logger = get_logger(__name__)


class PositionState(Enum):
    """Position lifecycle states."""

    IDLE = "idle"            # no position on the instrument
    PROPOSED = "proposed"    # signal accepted, buy in flight
    OPEN = "open"            # contract(s) bought, awaiting settlement
    SETTLED = "settled"      # all entries settled, cooldown pending


class InvalidTransition(Exception):
    """A lifecycle call made from the wrong state."""

    def __init__(self, instrument: str, current: PositionState, action: str):
        super().__init__(f"{instrument}: cannot {action} from {current.value}")
        self.instrument = instrument
        self.current = current
        self.action = action


@dataclass
class Entry:
    """One contract within a position."""

    stake: float
    contract_id: str | None = None
    profit: float | None = None
    settled: bool = False
    unconfirmed: bool = False  # buy sent, acknowledgement lost


@dataclass
class Position:
    instrument: str
    predicted_outcome: int
    entries: list[Entry]
    signal: Signal | None = None
    state: PositionState = PositionState.PROPOSED
    opened_at: float = field(default_factory=time.time)
    settled_at: float | None = None

    @property
    def stake(self) -> float:
        return sum(e.stake for e in self.entries)

    @property
    def is_live(self) -> bool:
        return self.state in (PositionState.PROPOSED, PositionState.OPEN)

    @property
    def contract_ids(self) -> list[str]:
        return [e.contract_id for e in self.entries if e.contract_id]

    @property
    def awaiting_confirmation(self) -> bool:
        return self.state == PositionState.PROPOSED and any(e.unconfirmed for e in self.entries)

    @property
    def all_settled(self) -> bool:
        return bool(self.entries) and all(e.settled for e in self.entries)

    @property
    def profit(self) -> float:
        return sum(e.profit or 0.0 for e in self.entries)


@dataclass(frozen=True)
class SettlementReport:
    """Outcome of a fully settled position and the stake state it produced."""

    instrument: str
    position: Position
    profit: float
    won: bool
    stake_state: StakePolicyState
    limit: RiskLimitExceeded | None = None

    @property
    def next_stake(self) -> float:
        return self.stake_state.current_stake


class PositionManager:
    """
    Drives positions through their lifecycle on top of `SessionState`.

    Usage:
        manager = PositionManager(session_state, config.stake)
        position = manager.begin("R_50", signal, stakes=[0.35])
        manager.mark_open("R_50", ["1234"])
        report = manager.record_entry_settlement("1234", profit=0.03)
        ...
        manager.release("R_50")
    """

    def __init__(
        self,
        state: SessionState,
        stake_config: StakeConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.session = state
        self.stake_config = stake_config
        self._clock = clock
        self._contracts: dict[str, str] = {}  # contract_id -> instrument

    def state(self, instrument: str) -> PositionState:
        position = self.session.instrument(instrument).position
        return PositionState.IDLE if position is None else position.state

    def position(self, instrument: str) -> Position | None:
        return self.session.instrument(instrument).position

    def instrument_for_contract(self, contract_id: str) -> str | None:
        return self._contracts.get(str(contract_id))

    def live_positions(self) -> list[Position]:
        return [
            inst.position for inst in self.session.instruments.values()
            if inst.position is not None and inst.position.is_live
        ]

    def begin(self, instrument: str, signal: Signal | None, stakes: Iterable[float]) -> Position:
        """IDLE -> PROPOSED. No await between the check and the set."""
        inst = self.session.instrument(instrument)
        current = self.state(instrument)
        if current != PositionState.IDLE:
            raise InvalidTransition(instrument, current, "begin")

        entries = [Entry(stake=s) for s in stakes]
        if not entries:
            raise ValueError("a position needs at least one entry")

        position = Position(
            instrument=instrument,
            predicted_outcome=signal.predicted_outcome if signal else -1,
            entries=entries,
            signal=signal,
            opened_at=self._clock(),
        )
        inst.position = position
        if signal is not None:
            inst.last_prediction = signal.predicted_outcome

        logger.debug(
            "Position proposed",
            symbol=instrument,
            predicted_outcome=position.predicted_outcome,
            stake=position.stake,
            entries=len(entries),
        )
        return position

    def mark_open(self, instrument: str, contract_ids: list[str]) -> Position:
        """
        PROPOSED -> OPEN.

        `contract_ids` are matched to entries in order; entries left without a
        contract (a later grid layer that failed to buy) are dropped.
        """
        current = self.state(instrument)
        if current != PositionState.PROPOSED:
            raise InvalidTransition(instrument, current, "mark_open")
        if not contract_ids:
            raise ValueError("mark_open needs at least one contract id; use abort()")

        position = self.session.instrument(instrument).position
        for entry, contract_id in zip(position.entries, contract_ids):
            entry.contract_id = str(contract_id)
            self._contracts[entry.contract_id] = instrument
        position.entries = [e for e in position.entries if e.contract_id]
        position.state = PositionState.OPEN
        return position

    def hold_unconfirmed(self, instrument: str, contract_ids: list[str]) -> Position:
        """
        Keep a PROPOSED position whose last buy went unacknowledged.

        Acknowledged contracts are attached to the leading entries, the next
        entry is flagged unconfirmed and entries never sent are dropped. The
        position stays PROPOSED until the reconciler resolves it.
        """
        current = self.state(instrument)
        if current != PositionState.PROPOSED:
            raise InvalidTransition(instrument, current, "hold_unconfirmed")

        position = self.session.instrument(instrument).position
        if len(contract_ids) >= len(position.entries):
            raise ValueError("every entry was acknowledged; use mark_open()")

        for entry, contract_id in zip(position.entries, contract_ids):
            entry.contract_id = str(contract_id)
            self._contracts[entry.contract_id] = instrument
        position.entries[len(contract_ids)].unconfirmed = True
        position.entries = position.entries[:len(contract_ids) + 1]

        logger.warning(
            "Position awaiting confirmation",
            symbol=instrument,
            acknowledged=len(contract_ids),
        )
        return position

    def claim_contract(self, instrument: str, contract_id: str) -> bool:
        """Attach a remotely found contract to the first unconfirmed entry."""
        position = self.session.instrument(instrument).position
        if position is None or not position.awaiting_confirmation:
            return False

        entry = next(e for e in position.entries if e.unconfirmed)
        entry.contract_id = str(contract_id)
        entry.unconfirmed = False
        self._contracts[entry.contract_id] = instrument
        logger.info("Unconfirmed buy matched", symbol=instrument, contract_id=entry.contract_id)
        return True

    def resolve_unconfirmed(self, instrument: str) -> Position | None:
        """
        PROPOSED -> OPEN when any entry holds a contract, else PROPOSED -> IDLE.

        Entries still unconfirmed were never executed and are dropped.
        Returns the opened position, or None when it was aborted.
        """
        current = self.state(instrument)
        if current != PositionState.PROPOSED:
            raise InvalidTransition(instrument, current, "resolve_unconfirmed")

        position = self.session.instrument(instrument).position
        position.entries = [e for e in position.entries if e.contract_id]
        if not position.entries:
            self.abort(instrument, "unconfirmed buy not found remotely")
            return None

        position.state = PositionState.OPEN
        logger.info("Position confirmed", symbol=instrument, contracts=position.contract_ids)
        return position

    def abort(self, instrument: str, reason: str) -> Position:
        """PROPOSED -> IDLE; the stake policy is not touched."""
        inst = self.session.instrument(instrument)
        current = self.state(instrument)
        if current != PositionState.PROPOSED:
            raise InvalidTransition(instrument, current, "abort")

        position = inst.position
        inst.position = None
        logger.info("Position aborted", symbol=instrument, reason=reason)
        return position

    def record_entry_settlement(self, contract_id: str, profit: float) -> SettlementReport | None:
        """
        Settle one entry. Returns a report once every entry of the position
        is settled; None while entries remain or for unknown/duplicate ids.
        """
        contract_id = str(contract_id)
        instrument = self._contracts.get(contract_id)
        if instrument is None:
            logger.warning("Settlement for unknown contract", contract_id=contract_id)
            return None

        inst = self.session.instrument(instrument)
        position = inst.position
        if position is None or position.state != PositionState.OPEN:
            logger.debug("Settlement ignored", contract_id=contract_id, symbol=instrument)
            return None

        entry = next(e for e in position.entries if e.contract_id == contract_id)
        if entry.settled:
            return None
        entry.profit = float(profit)
        entry.settled = True

        if not position.all_settled:
            return None

        for settled in position.entries:
            self._contracts.pop(settled.contract_id, None)

        now = self._clock()
        position.state = PositionState.SETTLED
        position.settled_at = now
        inst.last_settlement_at = now

        total = position.profit
        self.session.stake = apply_outcome(self.session.stake, total, self.stake_config)

        return SettlementReport(
            instrument=instrument,
            position=position,
            profit=total,
            won=total > 0,
            stake_state=self.session.stake,
            limit=check_session_limits(self.session.stake),
        )

    def release(self, instrument: str) -> None:
        """SETTLED -> IDLE once the cooldown has elapsed."""
        inst = self.session.instrument(instrument)
        current = self.state(instrument)
        if current != PositionState.SETTLED:
            raise InvalidTransition(instrument, current, "release")
        inst.position = None
        logger.debug("Cooldown elapsed", symbol=instrument)

    def reset_session(self, stake_state: StakePolicyState) -> None:
        self.session.stake = stake_state
