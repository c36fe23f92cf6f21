"""
Adaptive staking policy.

Pure transitions over an immutable `StakePolicyState`:
- Martingale: a loss multiplies the stake (rounded half-up to the stake
  increment, capped at max_stake); a win resets it to the initial stake
- Grid: one position opens several entries at geometrically decreasing
  stakes; the stake does not escalate on loss

The state lives for one trading session and is replaced, never mutated.
"""

from dataclasses import dataclass, replace
from decimal import Decimal, ROUND_HALF_UP

from tickbot.infrastructure.config import RiskConfig, StakeConfig


def round_stake(amount: float, increment: float) -> float:
    """Round half-up to a multiple of `increment`."""
    step = Decimal(str(increment))
    units = (Decimal(str(amount)) / step).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return float(units * step)


def bound_stake(amount: float, config: StakeConfig) -> float:
    """Round, then clamp to [min_stake, max_stake]."""
    rounded = round_stake(amount, config.stake_increment)
    return min(max(rounded, config.min_stake), config.max_stake)


def grid_stakes(initial: float, factor: float, layers: int) -> list[float]:
    """Raw grid ladder: initial * factor**i for each layer."""
    if not 0 < factor < 1:
        raise ValueError("grid factor must be between 0 and 1 (exclusive)")
    if layers < 1:
        raise ValueError("grid needs at least one layer")
    return [initial * factor ** i for i in range(layers)]


@dataclass(frozen=True)
class StakePolicyState:
    """Session-scoped staking and outcome counters."""

    current_stake: float
    daily_loss_limit: float
    max_consecutive_losses: int
    take_profit_target: float
    consecutive_losses: int = 0
    cumulative_pnl: float = 0.0
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    max_loss_streak: int = 0

    @classmethod
    def initial(cls, stake: StakeConfig, risk: RiskConfig) -> "StakePolicyState":
        return cls(
            current_stake=bound_stake(stake.initial_stake, stake),
            daily_loss_limit=risk.daily_loss_limit,
            max_consecutive_losses=risk.max_consecutive_losses,
            take_profit_target=risk.take_profit_target,
        )

    @property
    def win_rate(self) -> float:
        return self.wins / self.total_trades if self.total_trades else 0.0


def entry_stakes(state: StakePolicyState, config: StakeConfig) -> list[float]:
    """Stakes for the entries of the next position."""
    if config.policy == "grid":
        return [
            bound_stake(s, config)
            for s in grid_stakes(state.current_stake, config.grid_factor, config.grid_layers)
        ]
    return [state.current_stake]


def apply_outcome(
    state: StakePolicyState,
    profit: float,
    config: StakeConfig,
) -> StakePolicyState:
    """
    Transition after one settled position.

    A position with positive profit is a win; anything else is a loss.
    """
    won = profit > 0
    consecutive = 0 if won else state.consecutive_losses + 1

    if won or config.policy == "grid":
        next_stake = bound_stake(config.initial_stake, config)
    else:
        next_stake = bound_stake(state.current_stake * config.multiplier, config)

    return replace(
        state,
        current_stake=next_stake,
        consecutive_losses=consecutive,
        cumulative_pnl=state.cumulative_pnl + profit,
        total_trades=state.total_trades + 1,
        wins=state.wins + (1 if won else 0),
        losses=state.losses + (0 if won else 1),
        max_loss_streak=max(state.max_loss_streak, consecutive),
    )
