"""
Transport and protocol error taxonomy.

- ConnectionLost: transport-level, transient; pending calls are rejected and
  the transport reconnects with backoff
- RequestTimeout: a single call got no response in time
- FatalDisconnect: reconnect attempts exhausted, transport stopped
- ProtocolError: error envelope reported by the remote service
"""

from enum import Enum


class ErrorCategory(Enum):
    """How the orchestrator should react to a remote error."""

    FATAL = "fatal"                  # stop the session
    RATE_LIMITED = "rate_limited"    # delay, then retry the same request class
    MARKET_CLOSED = "market_closed"  # long delay, then retry
    UNKNOWN = "unknown"              # log and continue


FATAL_CODES = frozenset({
    "InvalidToken",
    "AuthorizationRequired",
    "InvalidAppID",
    "InsufficientBalance",
    "PermissionDenied",
})

RATE_LIMIT_CODES = frozenset({"RateLimit"})

MARKET_CLOSED_CODES = frozenset({
    "MarketIsClosed",
    "TradingIsDisabled",
    "MarketIsClosedTryVolatility",
})


def classify_error_code(code: str) -> ErrorCategory:
    """Map a remote error code to its handling category."""
    if code in FATAL_CODES:
        return ErrorCategory.FATAL
    if code in RATE_LIMIT_CODES:
        return ErrorCategory.RATE_LIMITED
    if code in MARKET_CLOSED_CODES:
        return ErrorCategory.MARKET_CLOSED
    return ErrorCategory.UNKNOWN


class TransportError(Exception):
    """Base class for session transport errors."""


class ConnectionLost(TransportError, ConnectionError):
    """The connection is down (or could not be established)."""


class RequestTimeout(TransportError, TimeoutError):
    """No response carrying the request id arrived before the deadline."""

    def __init__(self, req_id: int, timeout: float):
        super().__init__(f"Request {req_id} timed out after {timeout:.1f}s")
        self.req_id = req_id
        self.timeout = timeout


class FatalDisconnect(TransportError):
    """Reconnect attempts exhausted; the transport will not retry."""


class ProtocolError(TransportError):
    """Error envelope returned by the remote service."""

    def __init__(self, code: str, message: str, msg_type: str = ""):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.msg_type = msg_type

    @property
    def category(self) -> ErrorCategory:
        return classify_error_code(self.code)

    @property
    def is_fatal(self) -> bool:
        return self.category is ErrorCategory.FATAL
