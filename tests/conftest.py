"""Shared fixtures: an in-memory websocket and a scripted tick service."""

import asyncio
import json
import time
from typing import Any, Callable

import pytest

from tickbot.ingestion.ws_client import ReconnectPolicy, SessionTransport

_CLOSED = object()


class FakeConnection:
    """In-memory websocket connection: replies come from the server's responder."""

    def __init__(self, responder: Callable[[dict], list[dict]]):
        self.responder = responder
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, raw: str) -> None:
        if self.closed:
            raise OSError("connection closed")
        request = json.loads(raw)
        self.sent.append(request)
        for message in self.responder(request):
            self.push(message)

    def push(self, message: dict | str) -> None:
        self._inbox.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self) -> None:
        """Simulate the remote end going away."""
        self._inbox.put_nowait(_CLOSED)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLOSED)

    def __aiter__(self) -> "FakeConnection":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSED:
            self.closed = True
            raise StopAsyncIteration
        return item


class FakeTickService:
    """
    Scripted Deriv-style service.

    Every request gets a default reply keyed on its call name; `on()` overrides
    a call with a function returning the reply body, a list of messages, or
    None for "never answer".
    """

    def __init__(self):
        self.connections: list[FakeConnection] = []
        self.fail_connects = 0
        self.history_prices: dict[str, list[float]] = {}
        self.overrides: dict[str, Callable[[dict], Any]] = {}
        self._next_subscription = 0
        self._next_contract = 1000

    @property
    def conn(self) -> FakeConnection:
        return self.connections[-1]

    def requests(self, name: str) -> list[dict]:
        return [r for c in self.connections for r in c.sent if name in r]

    def on(self, name: str, handler: Callable[[dict], Any]) -> None:
        self.overrides[name] = handler

    async def connect(self, url: str) -> FakeConnection:
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise OSError("connection refused")
        conn = FakeConnection(self.respond)
        self.connections.append(conn)
        return conn

    def new_subscription_id(self) -> str:
        self._next_subscription += 1
        return f"sub-{self._next_subscription}"

    def new_contract_id(self) -> int:
        self._next_contract += 1
        return self._next_contract

    def respond(self, request: dict) -> list[dict]:
        name = next(
            (k for k in list(self.overrides) + DEFAULT_CALLS if k in request and k != "req_id"),
            None,
        )
        if name in self.overrides:
            body = self.overrides[name](request)
        else:
            body = self._default(name, request)

        if body is None:
            return []
        messages = body if isinstance(body, list) else [body]
        return [{"req_id": request["req_id"], "echo_req": request, **m} for m in messages]

    def _default(self, name: str | None, request: dict) -> dict:
        if name == "authorize":
            return {"msg_type": "authorize", "authorize": {"loginid": "VRTC100", "balance": 1000}}
        if name == "ticks_history":
            prices = self.history_prices.get(request["ticks_history"], [])
            now = int(time.time())
            return {
                "msg_type": "history",
                "history": {
                    "prices": prices,
                    "times": [now - len(prices) + i for i in range(len(prices))],
                },
            }
        if name == "ticks":
            return {
                "msg_type": "tick",
                "tick": {"symbol": request["ticks"], "quote": 100.0, "epoch": int(time.time())},
                "subscription": {"id": self.new_subscription_id()},
            }
        if name == "proposal":
            return {
                "msg_type": "proposal",
                "proposal": {"id": f"prop-{request['req_id']}", "ask_price": request["amount"]},
            }
        if name == "buy":
            return {
                "msg_type": "buy",
                "buy": {"contract_id": self.new_contract_id(), "buy_price": request.get("price")},
            }
        if name == "proposal_open_contract":
            return {
                "msg_type": "proposal_open_contract",
                "proposal_open_contract": {"contract_id": request["contract_id"], "is_sold": 0},
                "subscription": {"id": self.new_subscription_id()},
            }
        if name == "forget":
            return {"msg_type": "forget", "forget": 1}
        if name == "portfolio":
            return {"msg_type": "portfolio", "portfolio": {"contracts": []}}
        if name == "profit_table":
            return {"msg_type": "profit_table", "profit_table": {"count": 0, "transactions": []}}
        return {
            "msg_type": "error",
            "error": {"code": "UnrecognisedRequest", "message": "Unrecognised request"},
        }


DEFAULT_CALLS = [
    "authorize",
    "ticks_history",
    "ticks",
    "proposal_open_contract",
    "proposal",
    "buy",
    "forget",
    "portfolio",
    "profit_table",
]


async def eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until `predicate()` holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture(name="eventually")
def eventually_fixture():
    return eventually


@pytest.fixture
def service():
    return FakeTickService()


@pytest.fixture
def fast_policy():
    return ReconnectPolicy(
        initial_delay_ms=1,
        max_delay_ms=5,
        multiplier=2.0,
        jitter_pct=0.0,
        max_attempts=3,
    )


@pytest.fixture
def make_transport(service, fast_policy):
    created: list[SessionTransport] = []

    def factory(api_token: str | None = "token-123", request_timeout: float = 1.0) -> SessionTransport:
        transport = SessionTransport(
            url="wss://example.test/websockets/v3?app_id=1",
            api_token=api_token,
            reconnect_policy=fast_policy,
            connect_timeout=1.0,
            request_timeout=request_timeout,
            connector=service.connect,
        )
        created.append(transport)
        return transport

    return factory
