"""Tests for the session transport."""

import asyncio

import pytest

from tickbot.ingestion.errors import (
    ConnectionLost,
    ErrorCategory,
    FatalDisconnect,
    ProtocolError,
    RequestTimeout,
)
from tickbot.ingestion.ws_client import ConnectionState, ReconnectPolicy


class TestReconnectPolicy:
    """Tests for backoff delays."""

    def test_delay_doubles_to_cap(self):
        policy = ReconnectPolicy(
            initial_delay_ms=1000, max_delay_ms=30000, multiplier=2.0, jitter_pct=0.0
        )
        assert policy.get_delay(1) == 1.0
        assert policy.get_delay(2) == 2.0
        assert policy.get_delay(3) == 4.0
        assert policy.get_delay(10) == 30.0

    def test_jitter_stays_within_bounds(self):
        policy = ReconnectPolicy(initial_delay_ms=1000, jitter_pct=0.2)
        for _ in range(50):
            assert 0.8 <= policy.get_delay(1) <= 1.2


class TestConnect:
    """Tests for connection setup and authentication."""

    @pytest.mark.asyncio
    async def test_connect_authenticates(self, service, make_transport):
        transport = make_transport()
        await transport.connect()

        assert transport.state == ConnectionState.READY
        assert service.conn.sent[0]["authorize"] == "token-123"
        assert service.conn.sent[0]["req_id"] == 1
        assert transport.account["loginid"] == "VRTC100"
        await transport.close()

    @pytest.mark.asyncio
    async def test_connect_without_token_skips_authorize(self, service, make_transport):
        transport = make_transport(api_token=None)
        await transport.connect()

        assert transport.is_ready
        assert service.conn.sent == []
        await transport.close()

    @pytest.mark.asyncio
    async def test_refused_token_raises_protocol_error(self, service, make_transport):
        service.on("authorize", lambda req: {
            "msg_type": "authorize",
            "error": {"code": "InvalidToken", "message": "The token is invalid."},
        })
        transport = make_transport()

        with pytest.raises(ProtocolError) as exc_info:
            await transport.connect()

        assert exc_info.value.code == "InvalidToken"
        assert exc_info.value.is_fatal
        assert transport.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_connect_gives_up_after_max_attempts(self, service, make_transport):
        service.fail_connects = 10
        transport = make_transport()

        with pytest.raises(ConnectionLost):
            await transport.connect()

        assert service.fail_connects == 7  # three attempts were made
        assert transport.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_call_before_connect_fails_fast(self, make_transport):
        transport = make_transport()
        with pytest.raises(ConnectionLost):
            await transport.call({"portfolio": 1})


class TestCall:
    """Tests for correlated request/response."""

    @pytest.mark.asyncio
    async def test_out_of_order_responses_resolve_their_own_callers(
        self, service, make_transport, eventually
    ):
        service.on("ticks_history", lambda req: None)
        transport = make_transport()
        await transport.connect()

        first_task = asyncio.create_task(transport.call({"ticks_history": "R_50", "count": 1}))
        second_task = asyncio.create_task(transport.call({"ticks_history": "R_100", "count": 1}))
        await eventually(lambda: len(service.requests("ticks_history")) == 2)

        first, second = service.requests("ticks_history")
        assert second["req_id"] > first["req_id"] > 1

        service.conn.push({"req_id": second["req_id"], "msg_type": "history", "history": {"prices": [2.0]}})
        service.conn.push({"req_id": first["req_id"], "msg_type": "history", "history": {"prices": [1.0]}})

        assert (await first_task)["history"]["prices"] == [1.0]
        assert (await second_task)["history"]["prices"] == [2.0]
        assert transport.pending_count == 0
        await transport.close()

    @pytest.mark.asyncio
    async def test_error_envelope_raises_protocol_error(self, service, make_transport):
        service.on("buy", lambda req: {
            "msg_type": "buy",
            "error": {"code": "RateLimit", "message": "You have reached the rate limit"},
        })
        transport = make_transport()
        await transport.connect()

        with pytest.raises(ProtocolError) as exc_info:
            await transport.call({"buy": "prop-1", "price": 1})

        assert exc_info.value.code == "RateLimit"
        assert exc_info.value.category is ErrorCategory.RATE_LIMITED
        assert exc_info.value.msg_type == "buy"
        await transport.close()

    @pytest.mark.asyncio
    async def test_timeout_drops_pending_entry(self, service, make_transport):
        service.on("portfolio", lambda req: None)
        transport = make_transport()
        await transport.connect()

        with pytest.raises(RequestTimeout) as exc_info:
            await transport.call({"portfolio": 1}, timeout=0.05)

        assert transport.pending_count == 0
        late_id = exc_info.value.req_id
        # a late answer is dropped without disturbing later calls
        service.conn.push({"req_id": late_id, "msg_type": "portfolio", "portfolio": {}})
        response = await transport.call({"forget": "sub-x"})
        assert response["forget"] == 1
        await transport.close()

    @pytest.mark.asyncio
    async def test_malformed_payloads_are_dropped(self, service, make_transport):
        transport = make_transport()
        await transport.connect()

        service.conn.push("not json {")
        service.conn.push("[1, 2, 3]")
        service.conn.push({"msg_type": "tick", "subscription": {"id": "unknown"}})

        response = await transport.call({"portfolio": 1})
        assert response["msg_type"] == "portfolio"
        assert transport.messages_received >= 5
        await transport.close()


class TestSubscriptions:
    """Tests for the subscription registry."""

    @pytest.mark.asyncio
    async def test_first_response_and_pushes_reach_handler(
        self, service, make_transport, eventually
    ):
        transport = make_transport()
        await transport.connect()
        received = []

        sub_id = await transport.subscribe({"ticks": "R_50"}, received.append)

        assert sub_id in transport.subscription_ids
        assert service.requests("ticks")[0]["subscribe"] == 1
        assert len(received) == 1  # first tick came with the response

        service.conn.push({
            "msg_type": "tick",
            "tick": {"symbol": "R_50", "quote": 101.25, "epoch": 1},
            "subscription": {"id": sub_id},
        })
        await eventually(lambda: len(received) == 2)
        assert received[1]["tick"]["quote"] == 101.25
        await transport.close()

    @pytest.mark.asyncio
    async def test_handler_exception_does_not_stop_receive_loop(self, service, make_transport):
        transport = make_transport()
        await transport.connect()

        def broken(msg):
            raise RuntimeError("boom")

        sub_id = await transport.subscribe({"ticks": "R_50"}, broken)
        service.conn.push({"msg_type": "tick", "tick": {}, "subscription": {"id": sub_id}})

        response = await transport.call({"portfolio": 1})
        assert response["msg_type"] == "portfolio"
        await transport.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_forgets_and_removes(self, service, make_transport, eventually):
        transport = make_transport()
        await transport.connect()
        received = []
        sub_id = await transport.subscribe({"ticks": "R_50"}, received.append)

        assert await transport.unsubscribe(sub_id) is True

        assert service.requests("forget")[0]["forget"] == sub_id
        assert transport.subscription_ids == []
        service.conn.push({"msg_type": "tick", "tick": {}, "subscription": {"id": sub_id}})
        await transport.call({"portfolio": 1})
        assert len(received) == 1
        await transport.close()

    @pytest.mark.asyncio
    async def test_unsolicited_error_reaches_error_callback(
        self, service, make_transport, eventually
    ):
        transport = make_transport()
        errors = []
        transport.on_error(errors.append)
        await transport.connect()

        service.conn.push({
            "msg_type": "tick",
            "error": {"code": "MarketIsClosed", "message": "This market is presently closed."},
        })

        await eventually(lambda: errors)
        assert errors[0].category is ErrorCategory.MARKET_CLOSED
        await transport.close()


class TestDisconnect:
    """Tests for disconnect handling and reconnect."""

    @pytest.mark.asyncio
    async def test_pending_call_rejected_and_session_restored(
        self, service, make_transport, eventually
    ):
        transport = make_transport()
        reconnected = asyncio.Event()

        async def on_reconnect():
            reconnected.set()

        transport.on_reconnect(on_reconnect)
        await transport.connect()
        received = []
        sub_id = await transport.subscribe({"ticks": "R_50"}, received.append)

        service.on("profit_table", lambda req: None)
        pending = asyncio.create_task(transport.call({"profit_table": 1}))
        await eventually(lambda: transport.pending_count == 1)

        first_conn = service.conn
        first_conn.drop()

        with pytest.raises(ConnectionLost):
            await pending
        assert transport.pending_count == 0
        assert transport.subscription_ids == []

        await asyncio.wait_for(reconnected.wait(), timeout=1.0)
        assert len(service.connections) == 2
        assert "authorize" in service.connections[1].sent[0]
        assert transport.is_ready
        assert transport.reconnect_count == 1

        # the old stream is gone until the owner re-subscribes
        service.conn.push({"msg_type": "tick", "tick": {}, "subscription": {"id": sub_id}})
        await transport.call({"portfolio": 1})
        assert len(received) == 1
        await transport.close()

    @pytest.mark.asyncio
    async def test_exhausted_reconnects_report_fatal(self, service, make_transport, eventually):
        transport = make_transport()
        fatal = []
        transport.on_fatal(fatal.append)
        await transport.connect()

        service.fail_connects = 10
        service.conn.drop()

        await eventually(lambda: fatal)
        assert isinstance(fatal[0], FatalDisconnect)
        assert transport.state == ConnectionState.CLOSED
        with pytest.raises(ConnectionLost):
            await transport.call({"portfolio": 1})

    @pytest.mark.asyncio
    async def test_close_rejects_pending_and_does_not_reconnect(
        self, service, make_transport, eventually
    ):
        transport = make_transport()
        await transport.connect()
        service.on("portfolio", lambda req: None)
        pending = asyncio.create_task(transport.call({"portfolio": 1}))
        await eventually(lambda: transport.pending_count == 1)

        await transport.close()

        with pytest.raises(ConnectionLost):
            await pending
        await asyncio.sleep(0.02)
        assert len(service.connections) == 1
        assert transport.state == ConnectionState.CLOSED
