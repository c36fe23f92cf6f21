"""
Session notifications.

Sends notifications for:
- Settled positions
- Risk limits that end the session
- Fatal transport or protocol errors
- Final session summary
- Periodic performance updates while the session runs

Delivery is best effort: a failed send is logged and never reaches the
trading path.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import aiohttp

from tickbot.infrastructure.logging import get_logger
from tickbot.risk.stake_policy import StakePolicyState

logger = get_logger(__name__)


class AlertLevel(Enum):
    """Alert severity levels."""
    INFO = "ℹ️"
    WARNING = "⚠️"
    CRITICAL = "🚨"
    SUCCESS = "✅"


@dataclass
class Alert:
    """Alert message."""
    level: AlertLevel
    title: str
    message: str

    def format(self) -> str:
        return f"{self.level.value} *{self.title}*\n\n{self.message}"


class Notifier(Protocol):
    """Outbound notification channel."""

    async def send(self, alert: Alert) -> bool:
        ...

    async def close(self) -> None:
        ...


def format_settlement(
    symbol: str,
    predicted_outcome: int,
    profit: float,
    stake: StakePolicyState,
) -> Alert:
    """Alert for one settled position."""
    won = profit > 0
    return Alert(
        level=AlertLevel.SUCCESS if won else AlertLevel.WARNING,
        title=f"{symbol} {'WON' if won else 'LOST'}",
        message=(
            f"Prediction: {predicted_outcome}\n"
            f"Profit: {profit:+.2f}\n"
            f"Session P&L: {stake.cumulative_pnl:+.2f}\n"
            f"Next stake: {stake.current_stake:.2f}\n"
            f"Losing streak: {stake.consecutive_losses}"
        ),
    )


def format_summary(
    reason: str,
    stake: StakePolicyState,
    duration_seconds: float,
    success: bool = False,
) -> Alert:
    """Final summary sent when the session stops."""
    if success:
        level = AlertLevel.SUCCESS
    elif stake.cumulative_pnl >= 0:
        level = AlertLevel.INFO
    else:
        level = AlertLevel.WARNING

    return Alert(
        level=level,
        title="Session Summary",
        message=f"Stopped: {reason}\n" + _performance(stake, duration_seconds),
    )


def format_progress(
    stake: StakePolicyState,
    duration_seconds: float,
    suspended: list[str] | None = None,
) -> Alert:
    """Periodic update while the session runs."""
    message = _performance(stake, duration_seconds)
    message += f"\nCurrent stake: {stake.current_stake:.2f}"
    if suspended:
        message += f"\nSuspended: {', '.join(suspended)}"
    return Alert(level=AlertLevel.INFO, title="Performance Update", message=message)


def _performance(stake: StakePolicyState, duration_seconds: float) -> str:
    minutes, seconds = divmod(int(duration_seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return (
        f"Duration: {hours:d}h {minutes:02d}m {seconds:02d}s\n"
        f"P&L: {stake.cumulative_pnl:+.2f}\n"
        f"Trades: {stake.total_trades} "
        f"({stake.wins} won / {stake.losses} lost)\n"
        f"Win Rate: {stake.win_rate:.0%}\n"
        f"Longest losing streak: {stake.max_loss_streak}"
    )


class TelegramNotifier:
    """
    Sends alerts to Telegram.

    Usage:
        notifier = TelegramNotifier(bot_token, chat_id)
        await notifier.send(format_summary("take profit", state, 3600, success=True))
    """

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        enabled: bool = True,
        timeout_seconds: float = 10.0,
    ):
        self.enabled = enabled and bool(bot_token and chat_id)
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def send(self, alert: Alert) -> bool:
        """
        Send an alert to Telegram.

        Returns:
            True if sent successfully
        """
        if not self.enabled:
            logger.debug("Telegram alerts disabled", title=alert.title)
            return False

        try:
            session = await self._get_session()
            url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"

            payload = {
                "chat_id": self._chat_id,
                "text": alert.format(),
                "parse_mode": "Markdown",
            }

            async with session.post(url, json=payload) as resp:
                if resp.status == 200:
                    logger.debug("Telegram alert sent", title=alert.title)
                    return True
                logger.warning("Telegram send failed", status=resp.status)
                return False

        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error("Telegram error", error=str(e))
            return False
