"""Tests for the position lifecycle."""

import pytest

from tickbot.core.state import SessionState
from tickbot.execution.position_manager import (
    InvalidTransition,
    PositionManager,
    PositionState,
)
from tickbot.infrastructure.config import AppConfig, InstrumentConfig, RiskConfig, StakeConfig
from tickbot.risk.gatekeeper import GuardReason
from tickbot.strategy.signals import Signal, SignalMethod


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def config():
    return AppConfig(
        instruments=[
            InstrumentConfig(symbol="R_50", decimals=4),
            InstrumentConfig(symbol="R_100", decimals=2),
        ],
        stake=StakeConfig(initial_stake=1.0, min_stake=0.35, max_stake=100.0),
        risk=RiskConfig(max_consecutive_losses=2, daily_loss_limit=50.0, take_profit_target=10.0),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(config, clock):
    return PositionManager(SessionState.create(config), config.stake, clock=clock)


def make_signal(outcome: int = 4, instrument: str = "R_50") -> Signal:
    return Signal(
        instrument=instrument,
        predicted_outcome=outcome,
        confidence=0.9,
        method=SignalMethod.HYBRID,
        sample_size=30,
    )


class TestLifecycle:
    """Tests for state transitions."""

    def test_full_cycle(self, manager, clock):
        assert manager.state("R_50") is PositionState.IDLE

        manager.begin("R_50", make_signal(4), stakes=[1.0])
        assert manager.state("R_50") is PositionState.PROPOSED
        assert manager.session.instrument("R_50").last_prediction == 4
        assert manager.session.open_positions == 1

        manager.mark_open("R_50", [5001])
        assert manager.state("R_50") is PositionState.OPEN
        assert manager.instrument_for_contract("5001") == "R_50"

        clock.now = 1010.0
        report = manager.record_entry_settlement("5001", profit=0.09)
        assert report.won
        assert report.profit == pytest.approx(0.09)
        assert report.next_stake == 1.0
        assert manager.state("R_50") is PositionState.SETTLED
        assert manager.session.instrument("R_50").last_settlement_at == 1010.0
        assert manager.session.open_positions == 0

        manager.release("R_50")
        assert manager.state("R_50") is PositionState.IDLE
        assert manager.instrument_for_contract("5001") is None

    def test_second_begin_is_refused(self, manager):
        manager.begin("R_50", make_signal(), stakes=[1.0])

        with pytest.raises(InvalidTransition) as exc_info:
            manager.begin("R_50", make_signal(), stakes=[1.0])

        assert exc_info.value.current is PositionState.PROPOSED
        # other instruments are independent
        manager.begin("R_100", make_signal(instrument="R_100"), stakes=[1.0])
        assert len(manager.live_positions()) == 2

    @pytest.mark.parametrize("action", ["mark_open", "abort", "release"])
    def test_actions_from_idle_are_invalid(self, manager, action):
        with pytest.raises(InvalidTransition):
            if action == "mark_open":
                manager.mark_open("R_50", ["1"])
            elif action == "abort":
                manager.abort("R_50", "test")
            else:
                manager.release("R_50")

    def test_release_before_settlement_is_invalid(self, manager):
        manager.begin("R_50", make_signal(), stakes=[1.0])
        manager.mark_open("R_50", ["5001"])
        with pytest.raises(InvalidTransition):
            manager.release("R_50")

    def test_abort_leaves_stake_untouched(self, manager):
        before = manager.session.stake
        manager.begin("R_50", make_signal(), stakes=[1.0])

        manager.abort("R_50", "buy refused")

        assert manager.state("R_50") is PositionState.IDLE
        assert manager.session.stake is before

    def test_mark_open_requires_contracts(self, manager):
        manager.begin("R_50", make_signal(), stakes=[1.0])
        with pytest.raises(ValueError):
            manager.mark_open("R_50", [])


class TestSettlement:
    """Tests for settlement accounting."""

    def test_loss_escalates_stake(self, manager):
        manager.begin("R_50", make_signal(), stakes=[1.0])
        manager.mark_open("R_50", ["5001"])

        report = manager.record_entry_settlement("5001", profit=-1.0)

        assert not report.won
        assert report.next_stake == 2.0
        assert report.limit is None
        assert manager.session.stake.consecutive_losses == 1

    def test_grid_settles_once_with_summed_profit(self, manager):
        manager.begin("R_50", make_signal(), stakes=[1.0, 0.5, 0.35])
        manager.mark_open("R_50", ["1", "2", "3"])

        assert manager.record_entry_settlement("1", profit=0.09) is None
        assert manager.record_entry_settlement("2", profit=-0.5) is None
        report = manager.record_entry_settlement("3", profit=0.03)

        assert report.profit == pytest.approx(-0.38)
        assert not report.won
        assert manager.session.stake.total_trades == 1

    def test_partial_grid_drops_unbought_entries(self, manager):
        manager.begin("R_50", make_signal(), stakes=[1.0, 0.5, 0.35])

        position = manager.mark_open("R_50", ["1"])

        assert len(position.entries) == 1
        assert position.stake == 1.0

    def test_duplicate_and_unknown_settlements_are_ignored(self, manager):
        manager.begin("R_50", make_signal(), stakes=[1.0, 0.5])
        manager.mark_open("R_50", ["1", "2"])

        assert manager.record_entry_settlement("1", profit=0.05) is None
        assert manager.record_entry_settlement("1", profit=0.05) is None
        assert manager.record_entry_settlement("999", profit=5.0) is None
        assert manager.position("R_50").profit == pytest.approx(0.05)

    def test_report_carries_halting_limit(self, manager):
        for contract_id in ("1", "2"):
            manager.begin("R_50", make_signal(), stakes=[manager.session.stake.current_stake])
            manager.mark_open("R_50", [contract_id])
            report = manager.record_entry_settlement(contract_id, profit=-1.0)
            manager.release("R_50")

        assert report.limit.reason is GuardReason.MAX_CONSECUTIVE_LOSSES
        assert report.limit.halts_session

    def test_take_profit_reported_as_success(self, manager):
        manager.begin("R_50", make_signal(), stakes=[1.0])
        manager.mark_open("R_50", ["1"])

        report = manager.record_entry_settlement("1", profit=12.0)

        assert report.limit.reason is GuardReason.TAKE_PROFIT
        assert report.limit.is_success


class TestUnconfirmedBuys:
    """Tests for buys whose acknowledgement was lost."""

    def test_hold_keeps_position_proposed(self, manager):
        manager.begin("R_50", make_signal(), stakes=[1.0, 0.5, 0.35])

        position = manager.hold_unconfirmed("R_50", ["7001"])

        assert manager.state("R_50") is PositionState.PROPOSED
        assert position.awaiting_confirmation
        assert [e.contract_id for e in position.entries] == ["7001", None]
        assert position.entries[1].unconfirmed
        assert manager.instrument_for_contract("7001") == "R_50"
        assert manager.session.open_positions == 1

    def test_claimed_contract_opens_position(self, manager):
        manager.begin("R_50", make_signal(), stakes=[1.0])
        manager.hold_unconfirmed("R_50", [])

        assert manager.claim_contract("R_50", 7002)
        assert not manager.claim_contract("R_50", 7003)

        position = manager.resolve_unconfirmed("R_50")
        assert position.state is PositionState.OPEN
        assert position.contract_ids == ["7002"]
        assert manager.record_entry_settlement("7002", profit=-1.0).won is False

    def test_unmatched_buy_aborts_without_touching_stake(self, manager):
        manager.begin("R_50", make_signal(), stakes=[1.0])
        manager.hold_unconfirmed("R_50", [])

        assert manager.resolve_unconfirmed("R_50") is None
        assert manager.state("R_50") is PositionState.IDLE
        assert manager.session.stake.total_trades == 0

    def test_unmatched_later_layer_is_dropped(self, manager):
        manager.begin("R_50", make_signal(), stakes=[1.0, 0.5])
        manager.hold_unconfirmed("R_50", ["7004"])

        position = manager.resolve_unconfirmed("R_50")

        assert position.state is PositionState.OPEN
        assert position.contract_ids == ["7004"]
        assert position.stake == 1.0

    def test_hold_requires_proposed(self, manager):
        with pytest.raises(InvalidTransition):
            manager.hold_unconfirmed("R_50", [])


class TestSuspension:
    """Tests for loss-triggered instrument suspension."""

    def test_oldest_suspension_is_lifted(self):
        config = AppConfig(instruments=[
            InstrumentConfig(symbol=s, decimals=2) for s in ("R_10", "R_25", "R_50", "R_75")
        ])
        state = SessionState.create(config)

        assert state.suspend("R_10", limit=2) is None
        assert state.suspend("R_25", limit=2) is None
        assert state.suspend("R_50", limit=2) == "R_10"

        assert state.suspended == ["R_25", "R_50"]
        assert not state.instrument("R_10").suspended
        assert state.instrument("R_50").suspended

    def test_one_instrument_always_stays_active(self, manager):
        state = manager.session

        assert state.suspend("R_50", limit=3) is None
        assert state.suspend("R_100", limit=3) == "R_50"
        assert state.suspended == ["R_100"]

    def test_single_instrument_is_never_suspended(self):
        state = SessionState.create(AppConfig())

        assert state.suspend("R_50", limit=3) is None
        assert state.suspended == []
        assert not state.instrument("R_50").suspended

    def test_zero_limit_disables(self, manager):
        assert manager.session.suspend("R_50", limit=0) is None
        assert manager.session.suspended == []

    def test_clear_suspensions(self, manager):
        manager.session.suspend("R_50", limit=1)
        manager.session.clear_suspensions()

        assert manager.session.suspended == []
        assert not manager.session.instrument("R_50").suspended
