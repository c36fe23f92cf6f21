"""
Structured logging configuration.

Provides:
- JSON logging for production (easy to aggregate)
- Text logging for development (human readable)
- Clean one-line logging for watching a session in a terminal
- Context injection for tracing (symbol, contract id)
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

import structlog
from structlog import DropEvent
from structlog.types import EventDict, Processor


# EVENTS TO SILENCE IN CLEAN MODE
NOISE_EVENTS = [
    "Tick received",
    "Signal rejected",
    "Guard blocked trade",
    "Subscription push dropped",
    "Cooldown elapsed",
]


def filter_noise(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Filter out noise events."""
    if method_name == "debug":
        raise DropEvent

    event = event_dict.get("event", "")
    for noise in NOISE_EVENTS:
        if noise in event:
            raise DropEvent
    return event_dict


def add_timestamp(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add ISO timestamp to log entry."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def censor_secrets(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Remove sensitive data from logs."""
    sensitive_keys = {"authorize", "api_token", "token", "password", "secret"}

    def _censor(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {
                k: "[REDACTED]" if any(s in k.lower() for s in sensitive_keys) else _censor(v)
                for k, v in obj.items()
            }
        elif isinstance(obj, list):
            return [_censor(item) for item in obj]
        return obj

    return _censor(event_dict)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Configure structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json", "text", or "clean")
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_timestamp,
        censor_secrets,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors = shared_processors + [structlog.processors.JSONRenderer()]
    elif log_format == "clean":
        processors = shared_processors + [filter_noise, CleanConsoleRenderer()]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.getLevelName(log_level.upper()),
    )

    # Silence noisy network libraries
    for noisy_logger in ["websockets", "websockets.client", "aiohttp", "aiohttp.client"]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


class CleanConsoleRenderer:
    """
    Simplified console renderer for human readability.

    Transforms session events into emoji-coded one-liners.
    """

    EMOJIS = {
        "startup": "🚀",
        "shutdown": "🛑",
        "signal": "🎯",
        "opened": "💸",
        "won": "✅",
        "lost": "📉",
        "risk": "🛡️",
        "connection": "🌐",
        "error": "❌",
    }

    def __call__(
        self,
        logger: logging.Logger,
        method_name: str,
        event_dict: EventDict,
    ) -> str:
        level = event_dict.get("level", "info").upper()
        event = event_dict.get("event", "")
        symbol = event_dict.get("symbol", "")
        message = ""

        if "Signal accepted" in event:
            emoji = self.EMOJIS["signal"]
            conf = event_dict.get("confidence", 0)
            message = (
                f"{symbol} signal: predict {event_dict.get('predicted_outcome')} "
                f"({event_dict.get('method', '')}, confidence {float(conf):.0%})"
            )

        elif "Position opened" in event:
            emoji = self.EMOJIS["opened"]
            message = f"{symbol} position opened | stake ${event_dict.get('stake', '')}"

        elif "Position settled" in event:
            won = event_dict.get("won", False)
            emoji = self.EMOJIS["won"] if won else self.EMOJIS["lost"]
            profit = float(event_dict.get("profit", 0))
            message = (
                f"{symbol} {'WON' if won else 'LOST'} {profit:+.2f} | "
                f"next stake ${event_dict.get('next_stake', '')} | "
                f"session pnl {float(event_dict.get('cumulative_pnl', 0)):+.2f}"
            )

        elif "Risk limit" in event:
            emoji = self.EMOJIS["risk"]
            message = f"Risk limit: {event_dict.get('reason', '')} {event_dict.get('detail', '')}"

        elif "Session starting" in event:
            emoji = self.EMOJIS["startup"]
            message = "Session starting..."

        elif "Session stopped" in event:
            emoji = self.EMOJIS["shutdown"]
            message = f"Session stopped: {event_dict.get('reason', '')}"

        elif "connect" in event.lower():
            emoji = self.EMOJIS["connection"]
            message = event

        elif level in ("ERROR", "CRITICAL"):
            emoji = self.EMOJIS["error"]
            message = f"Error: {event_dict.get('error', event)}"

        else:
            emoji = "📝" if level == "INFO" else "⚠️"
            message = f"{event} {symbol}".strip()

        time_str = datetime.now().strftime("%H:%M:%S")
        return f"\033[90m[{time_str}]\033[0m {emoji} {message}"


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Bound logger instance
    """
    return structlog.get_logger(name)


class LogContext:
    """Context manager for adding temporary context to logs."""

    def __init__(self, **context: Any):
        self.context = context

    def __enter__(self) -> "LogContext":
        structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())


def bind_context(**context: Any) -> None:
    """Bind context variables for the current async context."""
    structlog.contextvars.bind_contextvars(**context)
