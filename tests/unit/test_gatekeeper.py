"""Tests for the risk guards."""

from dataclasses import replace

import pytest

from tickbot.infrastructure.config import RiskConfig, StakeConfig
from tickbot.risk.gatekeeper import (
    GuardReason,
    RiskGate,
    check_concurrency,
    check_consecutive_losses,
    check_cooldown,
    check_session_limits,
    check_stake_cap,
    check_stop_loss,
    check_take_profit,
    evaluate_guards,
)
from tickbot.risk.stake_policy import StakePolicyState


@pytest.fixture
def stake_config():
    return StakeConfig(initial_stake=1.0, min_stake=0.35, max_stake=100.0)


@pytest.fixture
def risk_config():
    return RiskConfig(
        max_consecutive_losses=3,
        daily_loss_limit=50.0,
        take_profit_target=100.0,
        max_concurrent_positions=1,
        cooldown_seconds=2.0,
    )


@pytest.fixture
def fresh_state(stake_config, risk_config):
    return StakePolicyState.initial(stake_config, risk_config)


def with_state(state, **changes):
    return replace(state, **changes)


class TestSessionGuards:
    """Tests for the guards that end a session."""

    def test_consecutive_losses(self, fresh_state):
        assert check_consecutive_losses(with_state(fresh_state, consecutive_losses=2)) is None

        limit = check_consecutive_losses(with_state(fresh_state, consecutive_losses=3))
        assert limit.reason is GuardReason.MAX_CONSECUTIVE_LOSSES
        assert limit.halts_session
        assert not limit.is_success

    def test_stop_loss_is_inclusive(self, fresh_state):
        assert check_stop_loss(with_state(fresh_state, cumulative_pnl=-49.99)) is None

        limit = check_stop_loss(with_state(fresh_state, cumulative_pnl=-50.0))
        assert limit.reason is GuardReason.STOP_LOSS
        assert limit.halts_session

    def test_take_profit_is_a_success(self, fresh_state):
        assert check_take_profit(with_state(fresh_state, cumulative_pnl=99.0)) is None

        limit = check_take_profit(with_state(fresh_state, cumulative_pnl=100.0))
        assert limit.reason is GuardReason.TAKE_PROFIT
        assert limit.is_success
        assert limit.halts_session

    def test_session_limits_prefer_take_profit(self, fresh_state):
        state = with_state(fresh_state, cumulative_pnl=120.0, consecutive_losses=3)
        assert check_session_limits(state).reason is GuardReason.TAKE_PROFIT


class TestAttemptGuards:
    """Tests for the guards that only delay an attempt."""

    def test_concurrency(self, risk_config):
        assert check_concurrency(0, risk_config) is None

        limit = check_concurrency(1, risk_config)
        assert limit.reason is GuardReason.CONCURRENCY_LIMIT
        assert not limit.halts_session

    def test_cooldown(self, risk_config):
        assert check_cooldown(None, 100.0, risk_config) is None
        assert check_cooldown(98.0, 100.0, risk_config) is None

        limit = check_cooldown(99.0, 100.0, risk_config)
        assert limit.reason is GuardReason.COOLDOWN
        assert not limit.halts_session

    def test_stake_cap_sums_grid_entries(self, risk_config):
        config = StakeConfig(
            policy="grid", initial_stake=4.0, min_stake=1.0, max_stake=15.0,
            grid_factor=0.5, grid_layers=3,
        )
        state = StakePolicyState.initial(config, risk_config)
        assert check_stake_cap(state, config) is None

        # 10 + 5 + 2.5 = 17.5
        limit = check_stake_cap(with_state(state, current_stake=10.0), config)
        assert limit.reason is GuardReason.STAKE_CAP
        assert not limit.halts_session


class TestEvaluateGuards:
    """Tests for combined guard evaluation."""

    def test_all_clear(self, fresh_state, stake_config, risk_config):
        assert evaluate_guards(fresh_state, stake_config, risk_config, 0, None, 100.0) is None

    def test_session_guard_wins_over_attempt_guard(self, fresh_state, stake_config, risk_config):
        state = with_state(fresh_state, cumulative_pnl=-60.0)
        limit = evaluate_guards(state, stake_config, risk_config, 1, 99.5, 100.0)
        assert limit.reason is GuardReason.STOP_LOSS

    def test_risk_gate_result(self, fresh_state, stake_config, risk_config):
        gate = RiskGate(stake_config, risk_config)

        passed = gate.validate(fresh_state, open_positions=0, last_settlement_at=None, now=10.0)
        assert passed.passed
        assert passed.rejection_reason == ""

        blocked = gate.validate(
            fresh_state, open_positions=0, last_settlement_at=9.5, now=10.0, symbol="R_50"
        )
        assert not blocked.passed
        assert blocked.limit.reason is GuardReason.COOLDOWN
        assert "cooldown" in blocked.rejection_reason
