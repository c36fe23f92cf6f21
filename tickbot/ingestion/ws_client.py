"""
Session transport over one persistent WebSocket connection.

Features:
- Correlated request/response: every call carries a fresh `req_id`, the
  response echoing it resolves the caller's future
- Push subscriptions multiplexed over the same channel, dispatched through
  an explicit registry keyed by subscription id
- Exponential backoff with jitter and a bounded number of reconnect attempts
- Re-authentication on reconnect; the owner replays its subscriptions from an
  `on_reconnect` callback (the transport knows nothing about instruments)
"""

import asyncio
import inspect
import json
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from tickbot.infrastructure.config import ExecutionConfig
from tickbot.infrastructure.logging import get_logger
from tickbot.ingestion.errors import (
    ConnectionLost,
    FatalDisconnect,
    ProtocolError,
    RequestTimeout,
    TransportError,
)

logger = get_logger(__name__)


class ConnectionState(Enum):
    """Transport connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass
class ReconnectPolicy:
    """Exponential backoff configuration."""
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    multiplier: float = 2.0
    jitter_pct: float = 0.20
    max_attempts: int = 5

    @classmethod
    def from_config(cls, config: ExecutionConfig) -> "ReconnectPolicy":
        return cls(
            initial_delay_ms=config.ws_reconnect_initial_ms,
            max_delay_ms=config.ws_reconnect_max_ms,
            multiplier=config.ws_reconnect_multiplier,
            jitter_pct=config.ws_reconnect_jitter,
            max_attempts=config.ws_max_reconnect_attempts,
        )

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds before the given attempt (1-based)."""
        base_delay = self.initial_delay_ms * (self.multiplier ** max(attempt - 1, 0))
        capped_delay = min(base_delay, self.max_delay_ms)
        jitter = capped_delay * self.jitter_pct * (random.random() * 2 - 1)
        return max(capped_delay + jitter, 0.0) / 1000.0


PushHandler = Callable[[dict[str, Any]], None]
Connector = Callable[[str], Awaitable[Any]]
ReconnectCallback = Callable[[], Awaitable[None]]
FatalCallback = Callable[[FatalDisconnect], Any]
ErrorCallback = Callable[[ProtocolError], None]


@dataclass
class PendingRequest:
    """An outbound call waiting for its correlated response."""
    req_id: int
    request: dict[str, Any]
    future: asyncio.Future
    issued_at: float = field(default_factory=time.time)
    subscription_handler: PushHandler | None = None


@dataclass
class Subscription:
    """A live push stream and the handler it dispatches to."""
    subscription_id: str
    request: dict[str, Any]
    handler: PushHandler
    created_at: float = field(default_factory=time.time)


async def _websocket_connector(url: str) -> Any:
    return await websockets.connect(
        url,
        ping_interval=20,
        ping_timeout=10,
        close_timeout=5,
    )


class SessionTransport:
    """
    One persistent connection exposing `call()` and `subscribe()`.

    Usage:
        transport = SessionTransport(url=config.api.endpoint, api_token=token)
        transport.on_reconnect(replay_subscriptions)
        await transport.connect()

        history = await transport.call({"ticks_history": "R_50", "count": 500})
        sub_id = await transport.subscribe({"ticks": "R_50"}, on_tick)
    """

    def __init__(
        self,
        url: str,
        api_token: str | None = None,
        reconnect_policy: ReconnectPolicy | None = None,
        connect_timeout: float = 10.0,
        request_timeout: float = 10.0,
        connector: Connector | None = None,
    ):
        self.url = url
        self.api_token = api_token
        self.reconnect_policy = reconnect_policy or ReconnectPolicy()
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self._connector = connector or _websocket_connector

        self._ws: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._running = False
        self._reconnecting = False
        self._next_req_id = 0
        self._pending: dict[int, PendingRequest] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._receive_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

        self._reconnect_callbacks: list[ReconnectCallback] = []
        self._fatal_callbacks: list[FatalCallback] = []
        self._error_callbacks: list[ErrorCallback] = []

        self.account: dict[str, Any] = {}
        self.messages_received = 0
        self.reconnect_count = 0
        self._last_message_time: float = 0

    # ========== Properties ==========

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == ConnectionState.READY

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def subscription_ids(self) -> list[str]:
        return list(self._subscriptions)

    @property
    def last_message_age_seconds(self) -> float:
        """Time since last message received."""
        if self._last_message_time == 0:
            return float("inf")
        return time.time() - self._last_message_time

    # ========== Callbacks ==========

    def on_reconnect(self, callback: ReconnectCallback) -> None:
        """Register a coroutine run after every successful reconnect."""
        self._reconnect_callbacks.append(callback)

    def on_fatal(self, callback: FatalCallback) -> None:
        """Register a callback run once reconnect attempts are exhausted."""
        self._fatal_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        """Register a callback for error envelopes not tied to a pending call."""
        self._error_callbacks.append(callback)

    # ========== Connection lifecycle ==========

    async def connect(self) -> None:
        """
        Establish the connection and authenticate.

        Raises:
            ConnectionLost: if no attempt succeeds within the reconnect policy
            ProtocolError: if authentication is refused
        """
        if self._running:
            logger.warning("Transport already running")
            return

        self._running = True
        # a socket dropping mid-handshake is retried here, not by _reconnect
        self._reconnecting = True
        attempt = 0
        try:
            while True:
                attempt += 1
                try:
                    await asyncio.wait_for(self._open(), timeout=self.connect_timeout)
                    return
                except ProtocolError:
                    self._running = False
                    self._state = ConnectionState.CLOSED
                    raise
                except (asyncio.TimeoutError, OSError, WebSocketException, TransportError) as e:
                    logger.warning(
                        "Transport connection failed",
                        url=self.url,
                        attempt=attempt,
                        error=str(e) or type(e).__name__,
                    )
                    await self._close_ws()
                    if attempt >= self.reconnect_policy.max_attempts:
                        self._running = False
                        self._state = ConnectionState.DISCONNECTED
                        raise ConnectionLost(
                            f"Failed to connect after {attempt} attempts"
                        ) from e
                    await asyncio.sleep(self.reconnect_policy.get_delay(attempt))
        finally:
            self._reconnecting = False

    async def _open(self) -> None:
        """Open the socket, start the receive loop and authenticate."""
        self._state = ConnectionState.CONNECTING
        logger.info("Connecting to transport", url=self.url)

        ws = await self._connector(self.url)
        self._ws = ws
        self._last_message_time = time.time()
        self._receive_task = asyncio.create_task(self._receive_loop(ws))

        if self.api_token:
            self._state = ConnectionState.AUTHENTICATING
            try:
                response = await self.call({"authorize": self.api_token})
            except TransportError:
                await self._close_ws()
                raise
            self.account = response.get("authorize") or {}
            logger.info(
                "Transport authenticated",
                account=self.account.get("loginid", ""),
                balance=self.account.get("balance"),
            )

        self._state = ConnectionState.READY
        logger.info("Transport connected", url=self.url)

    async def close(self) -> None:
        """Close the connection; no reconnect is attempted."""
        self._running = False
        self._state = ConnectionState.CLOSED

        task = self._reconnect_task
        # close() may be called from a reconnect or fatal callback
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._close_ws()
        self._fail_pending(ConnectionLost("Transport closed"))
        self._subscriptions.clear()
        logger.info("Transport closed")

    async def _close_ws(self) -> None:
        ws, self._ws = self._ws, None
        task, self._receive_task = self._receive_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Socket close failed", error=str(e))

    # ========== Receive path ==========

    async def _receive_loop(self, ws: Any) -> None:
        """Read messages until the socket closes, then hand over to reconnect."""
        reason = "stream ended"
        try:
            async for message in ws:
                self.messages_received += 1
                self._last_message_time = time.time()
                self._handle_message(message)
        except ConnectionClosed as e:
            reason = str(e)
            logger.warning("Transport connection closed", reason=reason)
        except Exception as e:
            reason = str(e)
            logger.error("Transport receive error", error=reason)

        self._handle_disconnect(ws, reason)

    def _handle_message(self, raw: str | bytes) -> None:
        """Route one inbound message: correlated response, push, or error."""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            logger.warning("Invalid JSON message", error=str(e))
            return

        if not isinstance(data, dict):
            logger.warning("Unexpected message shape", kind=type(data).__name__)
            return

        req_id = data.get("req_id")
        pending = self._pending.pop(req_id, None) if req_id is not None else None
        if pending is not None:
            self._resolve(pending, data)
            return

        sub_id = (data.get("subscription") or {}).get("id")
        if sub_id:
            subscription = self._subscriptions.get(sub_id)
            if subscription is None:
                logger.debug("Subscription push dropped", subscription_id=sub_id)
                return
            self._dispatch(subscription, data)
            return

        error = data.get("error")
        if error:
            exc = ProtocolError(
                code=str(error.get("code", "UNKNOWN")),
                message=str(error.get("message", "")),
                msg_type=str(data.get("msg_type", "")),
            )
            logger.warning(
                "Unsolicited error",
                code=exc.code,
                message=exc.message,
                req_id=req_id,
            )
            for callback in self._error_callbacks:
                try:
                    callback(exc)
                except Exception as e:
                    logger.error("Error callback failed", error=str(e))
            return

        if data.get("msg_type") != "ping":
            logger.debug(
                "Unsolicited message dropped",
                msg_type=data.get("msg_type"),
                req_id=req_id,
            )

    def _resolve(self, pending: PendingRequest, data: dict[str, Any]) -> None:
        error = data.get("error")
        if error:
            exc = ProtocolError(
                code=str(error.get("code", "UNKNOWN")),
                message=str(error.get("message", "")),
                msg_type=str(data.get("msg_type", "")),
            )
            if not pending.future.done():
                pending.future.set_exception(exc)
            return

        subscription = None
        if pending.subscription_handler is not None:
            sub_id = (data.get("subscription") or {}).get("id")
            if sub_id:
                # Registered before the caller resumes so no push can slip past
                subscription = Subscription(
                    subscription_id=sub_id,
                    request=pending.request,
                    handler=pending.subscription_handler,
                )
                self._subscriptions[sub_id] = subscription
            else:
                logger.warning(
                    "Subscribe response without subscription id",
                    msg_type=data.get("msg_type"),
                )

        if not pending.future.done():
            pending.future.set_result(data)

        if subscription is not None:
            self._dispatch(subscription, data)

    def _dispatch(self, subscription: Subscription, data: dict[str, Any]) -> None:
        try:
            subscription.handler(data)
        except Exception as e:
            logger.error(
                "Subscription handler error",
                subscription_id=subscription.subscription_id,
                msg_type=data.get("msg_type"),
                error=str(e),
            )

    def _fail_pending(self, exc: TransportError) -> None:
        pending, self._pending = self._pending, {}
        for request in pending.values():
            if not request.future.done():
                request.future.set_exception(exc)
        if pending:
            logger.warning("Rejected pending requests", count=len(pending), error=str(exc))

    def _handle_disconnect(self, ws: Any, reason: str) -> None:
        """Reject outstanding calls, drop subscriptions, schedule reconnect."""
        if ws is not self._ws:
            return  # stale socket, already replaced or closed

        self._ws = None
        self._receive_task = None
        self._fail_pending(ConnectionLost(f"Connection lost: {reason}"))
        self._subscriptions.clear()

        if not self._running or self._state == ConnectionState.CLOSED:
            return
        if self._reconnecting:
            # a reconnect attempt is in progress; its pending auth was rejected above
            return

        self._state = ConnectionState.RECONNECTING
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        """Reconnect with exponential backoff, then notify the owner."""
        self._reconnecting = True
        attempt = 0
        try:
            while self._running:
                attempt += 1
                if attempt > self.reconnect_policy.max_attempts:
                    await self._give_up(attempt - 1)
                    return

                delay = self.reconnect_policy.get_delay(attempt)
                logger.info(
                    "Reconnecting transport",
                    attempt=attempt,
                    max_attempts=self.reconnect_policy.max_attempts,
                    retry_delay_s=round(delay, 3),
                )
                await asyncio.sleep(delay)

                try:
                    await asyncio.wait_for(self._open(), timeout=self.connect_timeout)
                except ProtocolError as e:
                    if e.is_fatal:
                        logger.critical("Re-authentication refused", code=e.code)
                        await self._give_up(attempt, cause=e)
                        return
                    logger.warning("Reconnect attempt failed", attempt=attempt, error=str(e))
                    await self._close_ws()
                    continue
                except (asyncio.TimeoutError, OSError, WebSocketException, TransportError) as e:
                    logger.warning(
                        "Reconnect attempt failed",
                        attempt=attempt,
                        error=str(e) or type(e).__name__,
                    )
                    await self._close_ws()
                    continue

                self.reconnect_count += 1
                self._reconnecting = False
                for callback in self._reconnect_callbacks:
                    try:
                        await callback()
                    except Exception as e:
                        logger.error("Reconnect callback failed", error=str(e))
                return
        finally:
            self._reconnecting = False

    async def _give_up(self, attempts: int, cause: Exception | None = None) -> None:
        self._running = False
        self._state = ConnectionState.CLOSED
        error = FatalDisconnect(f"Reconnect failed after {attempts} attempts")
        if cause is not None:
            error.__cause__ = cause
        logger.critical("Transport gave up reconnecting", attempts=attempts)
        for callback in self._fatal_callbacks:
            try:
                result = callback(error)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Fatal callback failed", error=str(e))

    # ========== Public API ==========

    async def call(
        self,
        request: dict[str, Any],
        timeout: float | None = None,
        *,
        _subscription_handler: PushHandler | None = None,
    ) -> dict[str, Any]:
        """
        Send a request and wait for the response carrying its `req_id`.

        Raises:
            ConnectionLost: not connected, or the connection dropped while waiting
            RequestTimeout: no response within the timeout
            ProtocolError: the service answered with an error envelope
        """
        ws = self._ws
        if ws is None or self._state not in (
            ConnectionState.AUTHENTICATING,
            ConnectionState.READY,
        ):
            raise ConnectionLost(f"Transport not connected (state={self._state.value})")

        self._next_req_id += 1
        req_id = self._next_req_id
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = PendingRequest(
            req_id=req_id,
            request=request,
            future=future,
            subscription_handler=_subscription_handler,
        )

        try:
            await ws.send(json.dumps({**request, "req_id": req_id}))
        except (ConnectionClosed, OSError) as e:
            self._pending.pop(req_id, None)
            raise ConnectionLost(f"Send failed: {e}") from e

        timeout = self.request_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise RequestTimeout(req_id, timeout) from None
        finally:
            self._pending.pop(req_id, None)

    async def subscribe(
        self,
        request: dict[str, Any],
        handler: PushHandler,
        timeout: float | None = None,
    ) -> str:
        """
        Open a push stream; every message tagged with its id goes to `handler`.

        The initial response is dispatched to the handler too, since it
        carries the first tick or contract state.

        Returns:
            The subscription id assigned by the service
        """
        response = await self.call(
            {**request, "subscribe": 1},
            timeout=timeout,
            _subscription_handler=handler,
        )
        sub_id = (response.get("subscription") or {}).get("id")
        if not sub_id:
            raise ProtocolError(
                code="NoSubscription",
                message="Subscribe response carried no subscription id",
                msg_type=str(response.get("msg_type", "")),
            )
        logger.debug("Subscribed", subscription_id=sub_id, msg_type=response.get("msg_type"))
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        """Stop dispatching a stream and ask the service to forget it."""
        existed = self._subscriptions.pop(subscription_id, None) is not None
        if not self.is_ready:
            return existed
        try:
            await self.call({"forget": subscription_id})
        except TransportError as e:
            logger.debug("Forget failed", subscription_id=subscription_id, error=str(e))
        return existed

    def get_stats(self) -> dict[str, Any]:
        """Get connection statistics."""
        return {
            "state": self._state.value,
            "messages_received": self.messages_received,
            "pending_requests": len(self._pending),
            "subscriptions": len(self._subscriptions),
            "reconnects": self.reconnect_count,
            "ms_since_last_message": (
                round(self.last_message_age_seconds * 1000)
                if self._last_message_time else None
            ),
        }
