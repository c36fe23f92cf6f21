"""
RiskGate - independent guards evaluated before every trade attempt.

Guards:
- Consecutive losses below the maximum
- Session P&L above the daily stop loss
- Session P&L below the take-profit target (reaching it is a success stop)
- Open positions below the concurrency ceiling
- Cooldown elapsed since the instrument's last settlement
- Next position's stake within max_stake

A tripped guard is reported as a `RiskLimitExceeded` value, never raised.
"""

from dataclasses import dataclass
from enum import Enum

from tickbot.infrastructure.config import RiskConfig, StakeConfig
from tickbot.infrastructure.logging import get_logger
from tickbot.risk.stake_policy import StakePolicyState, entry_stakes

logger = get_logger(__name__)


class GuardReason(Enum):
    MAX_CONSECUTIVE_LOSSES = "max_consecutive_losses"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    CONCURRENCY_LIMIT = "concurrency_limit"
    COOLDOWN = "cooldown"
    STAKE_CAP = "stake_cap"


# Guards that end the trading session rather than delay one attempt
HALTING_REASONS = frozenset({
    GuardReason.MAX_CONSECUTIVE_LOSSES,
    GuardReason.STOP_LOSS,
    GuardReason.TAKE_PROFIT,
})


@dataclass(frozen=True)
class RiskLimitExceeded:
    """A tripped guard."""

    reason: GuardReason
    message: str

    @property
    def is_success(self) -> bool:
        return self.reason == GuardReason.TAKE_PROFIT

    @property
    def halts_session(self) -> bool:
        return self.reason in HALTING_REASONS


def check_consecutive_losses(state: StakePolicyState) -> RiskLimitExceeded | None:
    if state.consecutive_losses >= state.max_consecutive_losses:
        return RiskLimitExceeded(
            GuardReason.MAX_CONSECUTIVE_LOSSES,
            f"{state.consecutive_losses} consecutive losses "
            f"(max {state.max_consecutive_losses})",
        )
    return None


def check_stop_loss(state: StakePolicyState) -> RiskLimitExceeded | None:
    if state.cumulative_pnl <= -state.daily_loss_limit:
        return RiskLimitExceeded(
            GuardReason.STOP_LOSS,
            f"session loss {state.cumulative_pnl:.2f} reached limit "
            f"-{state.daily_loss_limit:.2f}",
        )
    return None


def check_take_profit(state: StakePolicyState) -> RiskLimitExceeded | None:
    if state.cumulative_pnl >= state.take_profit_target:
        return RiskLimitExceeded(
            GuardReason.TAKE_PROFIT,
            f"session profit {state.cumulative_pnl:.2f} reached target "
            f"{state.take_profit_target:.2f}",
        )
    return None


def check_concurrency(open_positions: int, config: RiskConfig) -> RiskLimitExceeded | None:
    if open_positions >= config.max_concurrent_positions:
        return RiskLimitExceeded(
            GuardReason.CONCURRENCY_LIMIT,
            f"{open_positions} open positions (max {config.max_concurrent_positions})",
        )
    return None


def check_cooldown(
    last_settlement_at: float | None,
    now: float,
    config: RiskConfig,
) -> RiskLimitExceeded | None:
    if last_settlement_at is None:
        return None
    elapsed = now - last_settlement_at
    if elapsed < config.cooldown_seconds:
        return RiskLimitExceeded(
            GuardReason.COOLDOWN,
            f"{elapsed:.2f}s since last settlement (cooldown {config.cooldown_seconds:.2f}s)",
        )
    return None


def check_stake_cap(state: StakePolicyState, config: StakeConfig) -> RiskLimitExceeded | None:
    total = sum(entry_stakes(state, config))
    if total > config.max_stake:
        return RiskLimitExceeded(
            GuardReason.STAKE_CAP,
            f"next position stakes {total:.2f} exceed max {config.max_stake:.2f}",
        )
    return None


def check_session_limits(state: StakePolicyState) -> RiskLimitExceeded | None:
    """Only the session-ending guards; used right after a settlement."""
    return (
        check_take_profit(state)
        or check_stop_loss(state)
        or check_consecutive_losses(state)
    )


def evaluate_guards(
    state: StakePolicyState,
    stake_config: StakeConfig,
    risk_config: RiskConfig,
    open_positions: int,
    last_settlement_at: float | None,
    now: float,
) -> RiskLimitExceeded | None:
    """First tripped guard, or None when a trade may be attempted."""
    return (
        check_session_limits(state)
        or check_stake_cap(state, stake_config)
        or check_concurrency(open_positions, risk_config)
        or check_cooldown(last_settlement_at, now, risk_config)
    )


@dataclass
class RiskGateResult:
    """Result of risk gate validation."""

    passed: bool
    limit: RiskLimitExceeded | None = None

    @property
    def rejection_reason(self) -> str:
        return self.limit.message if self.limit else ""


class RiskGate:
    """
    Guard evaluation bound to the session's configuration.

    Usage:
        gate = RiskGate(config.stake, config.risk)
        result = gate.validate(state, open_positions=1, last_settlement_at=t, now=now)
        if not result.passed and result.limit.halts_session:
            await session.stop(result.limit.message)
    """

    def __init__(self, stake_config: StakeConfig, risk_config: RiskConfig):
        self.stake_config = stake_config
        self.risk_config = risk_config

    def validate(
        self,
        state: StakePolicyState,
        open_positions: int,
        last_settlement_at: float | None,
        now: float,
        symbol: str = "",
    ) -> RiskGateResult:
        limit = evaluate_guards(
            state,
            self.stake_config,
            self.risk_config,
            open_positions,
            last_settlement_at,
            now,
        )
        if limit is None:
            return RiskGateResult(passed=True)

        logger.debug(
            "Guard blocked trade",
            symbol=symbol,
            reason=limit.reason.value,
            detail=limit.message,
        )
        return RiskGateResult(passed=False, limit=limit)
