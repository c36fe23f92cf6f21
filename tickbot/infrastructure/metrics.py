"""
Prometheus metrics for observability.

Exposes metrics on /metrics endpoint for Prometheus scraping.

Metrics Categories:
- Market data: ticks per instrument
- Trading: signals, positions opened, settlements, session P&L
- Transport: reconnects, pending requests, message latency
"""

import time
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

from tickbot.infrastructure.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Market Data Metrics
# =============================================================================

TICKS_TOTAL = Counter(
    "tickbot_ticks_total",
    "Total ticks observed",
    ["symbol"],
)

# =============================================================================
# Trading Metrics
# =============================================================================

SIGNALS_TOTAL = Counter(
    "tickbot_signals_total",
    "Signal evaluations by verdict",
    ["symbol", "method", "accepted"],
)

GUARD_BLOCKS_TOTAL = Counter(
    "tickbot_guard_blocks_total",
    "Trade attempts blocked by a risk guard",
    ["symbol", "reason"],
)

POSITIONS_OPENED = Counter(
    "tickbot_positions_opened_total",
    "Positions opened",
    ["symbol"],
)

POSITIONS_ABORTED = Counter(
    "tickbot_positions_aborted_total",
    "Positions aborted before any contract was bought",
    ["symbol"],
)

SUSPENDED_INSTRUMENTS = Gauge(
    "tickbot_suspended_instruments",
    "Instruments suspended after a loss",
)

SETTLEMENTS_TOTAL = Counter(
    "tickbot_settlements_total",
    "Settled positions by outcome",
    ["symbol", "outcome"],
)

CUMULATIVE_PNL = Gauge(
    "tickbot_cumulative_pnl",
    "Session P&L in account currency",
)

CURRENT_STAKE = Gauge(
    "tickbot_current_stake",
    "Stake of the next position",
)

CONSECUTIVE_LOSSES = Gauge(
    "tickbot_consecutive_losses",
    "Current losing streak",
)

PROTOCOL_ERRORS = Counter(
    "tickbot_protocol_errors_total",
    "Error envelopes returned by the service",
    ["code"],
)

# =============================================================================
# Transport Metrics
# =============================================================================

RECONNECTS_TOTAL = Counter(
    "tickbot_reconnects_total",
    "Successful transport reconnects",
)

PENDING_REQUESTS = Gauge(
    "tickbot_pending_requests",
    "Requests awaiting a response",
)

REQUEST_LATENCY = Histogram(
    "tickbot_request_latency_seconds",
    "Round trip of correlated calls",
    ["msg_type"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

# =============================================================================
# System Metrics
# =============================================================================

BOT_INFO = Info(
    "tickbot",
    "Bot information",
)

UPTIME_SECONDS = Gauge(
    "tickbot_uptime_seconds",
    "Session uptime in seconds",
)


class MetricsCollector:
    """
    Collects and exposes Prometheus metrics.

    Usage:
        collector = MetricsCollector()
        collector.start_server(port=9090)

        collector.record_tick("R_50")
        collector.record_signal("R_50", "hybrid", accepted=True)
        collector.record_settlement("R_50", won=False, cumulative_pnl=-0.35)
    """

    def __init__(self):
        self._start_time = time.time()

    def start_server(self, port: int = 9090) -> None:
        """Start the Prometheus metrics HTTP server."""
        try:
            start_http_server(port)
            logger.info("Metrics server started", port=port)
        except OSError as e:
            logger.error("Failed to start metrics server", error=str(e))

    def record_tick(self, symbol: str) -> None:
        TICKS_TOTAL.labels(symbol=symbol).inc()
        UPTIME_SECONDS.set(time.time() - self._start_time)

    def record_signal(self, symbol: str, method: str, accepted: bool) -> None:
        """Record a signal evaluation."""
        SIGNALS_TOTAL.labels(
            symbol=symbol, method=method, accepted=str(accepted).lower()
        ).inc()

    def record_guard_block(self, symbol: str, reason: str) -> None:
        GUARD_BLOCKS_TOTAL.labels(symbol=symbol, reason=reason).inc()

    def record_position_opened(self, symbol: str) -> None:
        POSITIONS_OPENED.labels(symbol=symbol).inc()

    def record_position_aborted(self, symbol: str) -> None:
        POSITIONS_ABORTED.labels(symbol=symbol).inc()

    def set_suspended(self, count: int) -> None:
        SUSPENDED_INSTRUMENTS.set(count)

    def record_settlement(
        self,
        symbol: str,
        won: bool,
        cumulative_pnl: float,
        next_stake: float | None = None,
        consecutive_losses: int | None = None,
    ) -> None:
        """Record a settled position and the resulting session gauges."""
        SETTLEMENTS_TOTAL.labels(symbol=symbol, outcome="won" if won else "lost").inc()
        CUMULATIVE_PNL.set(cumulative_pnl)
        if next_stake is not None:
            CURRENT_STAKE.set(next_stake)
        if consecutive_losses is not None:
            CONSECUTIVE_LOSSES.set(consecutive_losses)

    def record_protocol_error(self, code: str) -> None:
        PROTOCOL_ERRORS.labels(code=code).inc()

    def record_reconnect(self) -> None:
        RECONNECTS_TOTAL.inc()

    def update_pending_requests(self, count: int) -> None:
        PENDING_REQUESTS.set(count)

    def record_latency(self, msg_type: str, latency_seconds: float) -> None:
        """Record a call round trip."""
        REQUEST_LATENCY.labels(msg_type=msg_type).observe(latency_seconds)

    def set_bot_info(self, version: str, environment: str) -> None:
        """Set bot info labels."""
        BOT_INFO.info({
            "version": version,
            "environment": environment,
        })


# Pre-instantiated collector
metrics = MetricsCollector()
