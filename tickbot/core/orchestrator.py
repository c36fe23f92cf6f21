"""
Trading session orchestrator.

The only component with side effects. Wires transport pushes to the
position manager and the signal engine:

    tick push -> history -> guards -> engine -> proposal/buy -> contract watch
    contract push (is_sold) -> settlement -> stake policy -> cooldown -> IDLE

Features:
- Exactly one observation path (`on_tick`)
- Per-instrument check-and-set through the position manager
- Protocol error policy: fatal stops the session, rate limits and market
  closures block the instrument for a while, anything else is logged
- Session-ending guards stop the session once live positions have settled
- A loss suspends the instrument; the oldest suspension is lifted first
- Reconnect replays tick subscriptions and reconciles live positions,
  including buys whose acknowledgement was lost
- Notifications run as their own tasks and are flushed before the summary
"""

import asyncio
import functools
import time
from typing import Any, Callable, Coroutine

from tickbot.core.state import SessionState
from tickbot.execution.position_manager import (
    PositionManager,
    PositionState,
    SettlementReport,
)
from tickbot.execution.reconciler import Reconciler
from tickbot.infrastructure.alerts import (
    Alert,
    AlertLevel,
    Notifier,
    format_progress,
    format_settlement,
    format_summary,
)
from tickbot.infrastructure.config import AppConfig, InstrumentConfig
from tickbot.infrastructure.logging import LogContext, bind_context, get_logger
from tickbot.infrastructure.metrics import MetricsCollector, metrics as default_metrics
from tickbot.ingestion.errors import (
    ErrorCategory,
    FatalDisconnect,
    ProtocolError,
    TransportError,
)
from tickbot.ingestion.observations import Observation
from tickbot.ingestion.ws_client import SessionTransport
from tickbot.risk.gatekeeper import RiskGate, RiskLimitExceeded
from tickbot.risk.stake_policy import StakePolicyState, entry_stakes
from tickbot.strategy.engine import SignalEngine

logger = get_logger(__name__)


# Digit contracts that take the predicted outcome as their barrier
BARRIER_CONTRACTS = frozenset({"DIGITDIFF", "DIGITMATCH", "DIGITOVER", "DIGITUNDER"})

# Upper bound on delivering pending notifications at stop
NOTIFY_FLUSH_TIMEOUT = 5.0


def _wire_contract_id(contract_id: str) -> int | str:
    return int(contract_id) if contract_id.isdigit() else contract_id


class TradingSession:
    """
    One trading session over one transport.

    Usage:
        session = TradingSession(config, transport, notifier=notifier)
        await session.start()
        await session.wait_stopped()

    The external scheduler only calls `start()`, `stop()` and `reset_session()`.
    """

    def __init__(
        self,
        config: AppConfig,
        transport: SessionTransport,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
        engine: SignalEngine | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.config = config
        self.transport = transport
        self.notifier = notifier
        self._clock = clock

        self.state = SessionState.create(config)
        self.state.started_at = clock()
        self.engine = engine or SignalEngine(config.strategy)
        self.gate = RiskGate(config.stake, config.risk)
        self.positions = PositionManager(self.state, config.stake, clock)
        self.reconciler = Reconciler(transport, self.positions)
        self.metrics = metrics or default_metrics

        self.halt_limit: RiskLimitExceeded | None = None
        self._contract_subscriptions: set[str] = set()
        self._release_handles: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._notifications: set[asyncio.Task] = set()
        self._summary_handle: asyncio.TimerHandle | None = None
        self._reconcile_handle: asyncio.TimerHandle | None = None
        self._stopping = False
        self._stopped = asyncio.Event()

        transport.on_reconnect(self._on_reconnect)
        transport.on_fatal(self._on_fatal)
        transport.on_error(self._on_unsolicited_error)

    # ========== Lifecycle ==========

    @property
    def is_running(self) -> bool:
        return not self._stopping

    async def start(self) -> None:
        """Connect, load history and subscribe to ticks for every instrument."""
        self._stopping = False
        self._stopped.clear()
        self.halt_limit = None
        self.state.started_at = self._clock()
        self.state.stopped_at = None
        self.state.stop_reason = ""

        logger.info(
            "Session starting",
            instruments=list(self.state.instruments),
            method=self.config.strategy.method,
            stake_policy=self.config.stake.policy,
            environment=self.config.environment,
        )

        await self.transport.connect()
        self.state.connection = self.transport.state

        for inst in self.state.instruments.values():
            if self._stopping:
                break
            await self._load_instrument(inst.config)

        self._schedule_progress()

    async def _load_instrument(self, cfg: InstrumentConfig) -> None:
        symbol = cfg.symbol
        inst = self.state.instrument(symbol)
        try:
            response = await self.transport.call({
                "ticks_history": symbol,
                "count": cfg.history_size,
                "end": "latest",
                "style": "ticks",
            })
            history = response.get("history") or {}
            inst.history.clear()
            loaded = inst.history.load_history(
                history.get("prices") or [],
                history.get("times") or [],
                cfg.decimals,
            )
            logger.info("History loaded", symbol=symbol, ticks=loaded)

            await self._subscribe_ticks(symbol)
        except ProtocolError as e:
            self._handle_protocol_error(e, symbol)
        except TransportError as e:
            logger.error("Instrument setup failed", symbol=symbol, error=str(e))

    async def _subscribe_ticks(self, symbol: str) -> None:
        inst = self.state.instrument(symbol)
        inst.live_subscription_id = await self.transport.subscribe(
            {"ticks": symbol},
            functools.partial(self.on_tick, symbol),
        )
        logger.info("Subscribed to ticks", symbol=symbol, subscription_id=inst.live_subscription_id)

    async def stop(self, reason: str = "requested", success: bool = False) -> None:
        """Unsubscribe, close the transport and emit the final summary."""
        if self._stopping:
            await self._stopped.wait()
            return
        self._stopping = True

        for handle in self._release_handles.values():
            handle.cancel()
        self._release_handles.clear()
        for handle in (self._summary_handle, self._reconcile_handle):
            if handle is not None:
                handle.cancel()
        self._summary_handle = self._reconcile_handle = None

        # execution tasks only; queued notifications are flushed below
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()

        for inst in self.state.instruments.values():
            if inst.live_subscription_id:
                await self.transport.unsubscribe(inst.live_subscription_id)
                inst.live_subscription_id = None
        for sub_id in list(self._contract_subscriptions):
            await self.transport.unsubscribe(sub_id)
        self._contract_subscriptions.clear()

        transport_stats = self.transport.get_stats()
        await self.transport.close()
        self.state.connection = self.transport.state

        self.state.stopped_at = self._clock()
        self.state.stop_reason = reason
        summary = self.summary()
        logger.info("Session stopped", transport=transport_stats, **summary)

        await self._flush_notifications()
        await self._notify(format_summary(
            reason,
            self.state.stake,
            summary["duration_seconds"],
            success=success,
        ))
        if self.notifier is not None:
            await self.notifier.close()

        self._stopped.set()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def reset_session(self) -> None:
        """Fresh stake policy state, e.g. at the scheduled daily restart."""
        self.positions.reset_session(
            StakePolicyState.initial(self.config.stake, self.config.risk)
        )
        self.state.clear_suspensions()
        self.halt_limit = None
        logger.info("Session reset", stake=self.state.stake.current_stake)

    def summary(self) -> dict[str, Any]:
        stake = self.state.stake
        end = self.state.stopped_at or self._clock()
        return {
            "reason": self.state.stop_reason,
            "duration_seconds": round(end - self.state.started_at, 1),
            "trades": stake.total_trades,
            "wins": stake.wins,
            "losses": stake.losses,
            "win_rate": round(stake.win_rate, 3),
            "cumulative_pnl": round(stake.cumulative_pnl, 2),
            "max_loss_streak": stake.max_loss_streak,
            "current_stake": stake.current_stake,
        }

    # ========== Observation path ==========

    def on_tick(self, symbol: str, msg: dict[str, Any]) -> None:
        """Append the tick to the instrument history, then try to trade."""
        if self._stopping:
            return
        tick = msg.get("tick")
        if not tick:
            return
        inst = self.state.instruments.get(symbol)
        if inst is None:
            logger.warning("Tick for unknown instrument", symbol=symbol)
            return

        try:
            observation = Observation.from_quote(
                symbol, float(tick["quote"]), inst.config.decimals, tick.get("epoch")
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Malformed tick", symbol=symbol, error=str(e))
            return

        inst.history.append(observation)
        self.metrics.record_tick(symbol)
        self.metrics.update_pending_requests(self.transport.pending_count)
        logger.debug("Tick received", symbol=symbol, quote=observation.value, digit=observation.digit)

        self.maybe_trade(symbol)

    def maybe_trade(self, symbol: str) -> bool:
        """
        Guards, then the engine; on acceptance the position is proposed
        synchronously and the buy runs as a task. Returns True if proposed.
        """
        if self._stopping or self.halt_limit is not None:
            return False

        inst = self.state.instrument(symbol)
        if inst.position is not None:
            return False
        now = self._clock()
        if inst.suspended or inst.is_blocked(now) or not self.transport.is_ready:
            return False

        result = self.gate.validate(
            self.state.stake,
            open_positions=self.state.open_positions,
            last_settlement_at=inst.last_settlement_at,
            now=now,
            symbol=symbol,
        )
        if not result.passed:
            self.metrics.record_guard_block(symbol, result.limit.reason.value)
            if result.limit.halts_session:
                self._halt(result.limit)
            return False

        evaluation = self.engine.evaluate(symbol, inst.history.digits(), inst.last_prediction)
        self.metrics.record_signal(symbol, self.engine.method.value, evaluation.accepted)
        if not evaluation.accepted:
            logger.debug(
                "Signal rejected",
                symbol=symbol,
                reason=evaluation.reason,
                confidence=round(evaluation.confidence, 3),
            )
            return False

        signal = evaluation.signal
        logger.info(
            "Signal accepted",
            symbol=symbol,
            predicted_outcome=signal.predicted_outcome,
            method=signal.method.value,
            confidence=round(signal.confidence, 3),
            sample_size=signal.sample_size,
            unsafe=sorted(evaluation.unsafe_outcomes),
            rationale=signal.rationale,
        )

        stakes = entry_stakes(self.state.stake, self.config.stake)
        self.positions.begin(symbol, signal, stakes)
        self._spawn(self.open_position(symbol))
        return True

    # ========== Execution ==========

    def _contract_parameters(self, cfg: InstrumentConfig, stake: float, outcome: int) -> dict[str, Any]:
        params: dict[str, Any] = {
            "amount": stake,
            "basis": "stake",
            "contract_type": cfg.contract_type,
            "currency": cfg.currency,
            "duration": cfg.duration,
            "duration_unit": cfg.duration_unit,
            "symbol": cfg.symbol,
        }
        if cfg.contract_type in BARRIER_CONTRACTS:
            params["barrier"] = str(outcome)
        return params

    async def open_position(self, symbol: str) -> None:
        """Price and buy every entry of the proposed position, then watch the contracts."""
        inst = self.state.instrument(symbol)
        position = inst.position
        if position is None or position.state != PositionState.PROPOSED:
            return
        # task-local: open_position always runs as its own task
        bind_context(symbol=symbol, predicted_outcome=position.predicted_outcome)

        contract_ids: list[str] = []
        failure = ""
        buy_in_flight = False
        unconfirmed = False
        try:
            for entry in position.entries:
                params = self._contract_parameters(inst.config, entry.stake, position.predicted_outcome)
                started = time.monotonic()
                if self.config.execution.use_proposal:
                    response = await self.transport.call({"proposal": 1, **params})
                    proposal = response["proposal"]
                    buy = {"buy": proposal["id"], "price": proposal["ask_price"]}
                else:
                    buy = {"buy": 1, "price": entry.stake, "parameters": params}
                buy_in_flight = True
                response = await self.transport.call(buy)
                buy_in_flight = False
                self.metrics.record_latency("buy", time.monotonic() - started)
                contract_ids.append(str(response["buy"]["contract_id"]))
        except ProtocolError as e:
            failure = f"{e.code}: {e.message}"
            self._handle_protocol_error(e, symbol)
        except TransportError as e:
            failure = str(e)
            # the service may have executed a buy whose response never arrived
            unconfirmed = buy_in_flight
            logger.warning("Buy failed", symbol=symbol, error=failure, unconfirmed=unconfirmed)
        except (KeyError, TypeError) as e:
            failure = f"malformed response: {e}"
            logger.error("Buy response malformed", symbol=symbol, error=str(e))

        if inst.position is not position or position.state != PositionState.PROPOSED:
            return

        if unconfirmed:
            self.positions.hold_unconfirmed(symbol, contract_ids)
            if self.transport.is_ready:
                self._spawn(self._reconcile())
            return

        if not contract_ids:
            self.positions.abort(symbol, failure or "no contract bought")
            self.metrics.record_position_aborted(symbol)
            return

        if failure:
            logger.warning(
                "Position partially opened",
                symbol=symbol,
                bought=len(contract_ids),
                requested=len(position.entries),
            )
        self.positions.mark_open(symbol, contract_ids)
        self.metrics.record_position_opened(symbol)
        logger.info(
            "Position opened",
            symbol=symbol,
            predicted_outcome=position.predicted_outcome,
            stake=round(position.stake, 2),
            contracts=contract_ids,
            signal_age_ms=round(position.signal.age_seconds * 1000) if position.signal else None,
        )

        for contract_id in contract_ids:
            await self._watch_contract(contract_id)

    async def _watch_contract(self, contract_id: str) -> None:
        try:
            sub_id = await self.transport.subscribe(
                {"proposal_open_contract": 1, "contract_id": _wire_contract_id(contract_id)},
                self.on_contract_update,
            )
        except TransportError as e:
            # the reconciler picks the contract up after the next reconnect
            logger.warning("Contract watch failed", contract_id=contract_id, error=str(e))
            return
        if self.positions.instrument_for_contract(contract_id) is not None:
            self._contract_subscriptions.add(sub_id)

    def on_contract_update(self, msg: dict[str, Any]) -> None:
        """Settle the entry once the contract is sold."""
        contract = msg.get("proposal_open_contract") or {}
        if not contract.get("is_sold"):
            return

        sub_id = (msg.get("subscription") or {}).get("id")
        if sub_id:
            self._contract_subscriptions.discard(sub_id)
            self._spawn(self.transport.unsubscribe(sub_id))

        contract_id = str(contract.get("contract_id", ""))
        try:
            profit = float(contract.get("profit", 0))
        except (TypeError, ValueError):
            logger.error("Settlement without numeric profit", contract_id=contract_id)
            return

        report = self.positions.record_entry_settlement(contract_id, profit)
        if report is not None:
            self._on_settled(report)

    def _on_settled(self, report: SettlementReport) -> None:
        stake = report.stake_state
        symbol = report.instrument
        logger.info(
            "Position settled",
            symbol=symbol,
            won=report.won,
            profit=round(report.profit, 2),
            next_stake=stake.current_stake,
            cumulative_pnl=round(stake.cumulative_pnl, 2),
            consecutive_losses=stake.consecutive_losses,
        )
        self.metrics.record_settlement(
            symbol,
            won=report.won,
            cumulative_pnl=stake.cumulative_pnl,
            next_stake=stake.current_stake,
            consecutive_losses=stake.consecutive_losses,
        )

        if not report.won:
            self._suspend(symbol)

        loop = asyncio.get_running_loop()
        self._release_handles[symbol] = loop.call_later(
            self.config.risk.cooldown_seconds, self._release, symbol
        )

        self._spawn_notification(format_settlement(
            symbol, report.position.predicted_outcome, report.profit, stake
        ))

        limit = report.limit or self.halt_limit
        if limit is not None:
            self._halt(limit)

    def _release(self, symbol: str) -> None:
        self._release_handles.pop(symbol, None)
        if self.positions.state(symbol) == PositionState.SETTLED:
            self.positions.release(symbol)

    def _suspend(self, symbol: str) -> None:
        reactivated = self.state.suspend(symbol, self.config.risk.max_suspended_instruments)
        if not self.state.instrument(symbol).suspended:
            return
        logger.info(
            "Instrument suspended",
            symbol=symbol,
            reactivated=reactivated,
            suspended=list(self.state.suspended),
        )
        self.metrics.set_suspended(len(self.state.suspended))

    # ========== Errors and limits ==========

    def _halt(self, limit: RiskLimitExceeded) -> None:
        """No new positions; stop once nothing is live."""
        if self.halt_limit is None:
            self.halt_limit = limit
            logger.warning(
                "Risk limit",
                reason=limit.reason.value,
                detail=limit.message,
                success=limit.is_success,
            )
            self._spawn_notification(Alert(
                level=AlertLevel.SUCCESS if limit.is_success else AlertLevel.CRITICAL,
                title=f"Risk limit: {limit.reason.value}",
                message=limit.message,
            ))
        if self.state.open_positions == 0 and not self._stopping:
            self._spawn(self.stop(limit.message, success=limit.is_success))

    def _handle_protocol_error(self, error: ProtocolError, symbol: str | None = None) -> None:
        self.metrics.record_protocol_error(error.code)
        category = error.category
        now = self._clock()

        if category is ErrorCategory.FATAL:
            logger.critical("Fatal protocol error", code=error.code, message=error.message)
            if not self._stopping:
                self._spawn(self.stop(f"fatal error {error.code}"))
            return

        if category is ErrorCategory.RATE_LIMITED:
            delay = self.config.risk.rate_limit_delay_seconds
        elif category is ErrorCategory.MARKET_CLOSED:
            delay = self.config.risk.market_closed_delay_seconds
        else:
            logger.warning(
                "Protocol error",
                symbol=symbol,
                code=error.code,
                message=error.message,
                msg_type=error.msg_type,
            )
            return

        targets = [symbol] if symbol else list(self.state.instruments)
        for target in targets:
            self.state.instrument(target).block(now + delay)
        logger.warning(
            "Instrument blocked",
            symbols=targets,
            code=error.code,
            delay_seconds=delay,
        )

    def _on_unsolicited_error(self, error: ProtocolError) -> None:
        self._handle_protocol_error(error)

    async def _on_fatal(self, error: FatalDisconnect) -> None:
        self.state.connection = self.transport.state
        await self._notify(Alert(
            level=AlertLevel.CRITICAL,
            title="Connection lost",
            message=str(error),
        ))
        await self.stop(f"transport: {error}")

    async def _on_reconnect(self) -> None:
        """Replay tick subscriptions, then reconcile live positions."""
        self.metrics.record_reconnect()
        self.state.connection = self.transport.state
        self._contract_subscriptions.clear()
        if self._stopping:
            return

        with LogContext(reconnect=self.transport.reconnect_count):
            for inst in self.state.instruments.values():
                inst.live_subscription_id = None
                try:
                    await self._subscribe_ticks(inst.symbol)
                except ProtocolError as e:
                    self._handle_protocol_error(e, inst.symbol)
                except TransportError as e:
                    logger.error("Tick re-subscribe failed", symbol=inst.symbol, error=str(e))

            await self._reconcile()

    async def _reconcile(self) -> None:
        """Resolve live positions against the service and act on the result."""
        if self._reconcile_handle is not None:
            self._reconcile_handle.cancel()
            self._reconcile_handle = None

        result = await self.reconciler.run()
        for symbol in result.aborted:
            self.metrics.record_position_aborted(symbol)
        for symbol in result.confirmed:
            self.metrics.record_position_opened(symbol)
        for contract_id in result.still_open:
            await self._watch_contract(contract_id)
        for report in result.settled:
            self._on_settled(report)

        if result.awaiting_confirmation and not self._stopping:
            delay = self.config.risk.rate_limit_delay_seconds
            logger.warning(
                "Unconfirmed buys remain; retrying reconciliation",
                symbols=result.awaiting_confirmation,
                delay_seconds=delay,
            )
            self._reconcile_handle = asyncio.get_running_loop().call_later(
                delay, self._retry_reconcile
            )
        elif result.aborted and self.halt_limit is not None and not self._stopping:
            # an aborted position may have been the last live one
            self._halt(self.halt_limit)

    def _retry_reconcile(self) -> None:
        self._reconcile_handle = None
        if not self._stopping and self.transport.is_ready:
            self._spawn(self._reconcile())

    # ========== Periodic summary ==========

    def _schedule_progress(self) -> None:
        interval = self.config.observability.summary_interval_seconds
        if self._summary_handle is not None:
            self._summary_handle.cancel()
            self._summary_handle = None
        if interval <= 0 or self._stopping:
            return
        self._summary_handle = asyncio.get_running_loop().call_later(
            interval, self._send_progress
        )

    def _send_progress(self) -> None:
        self._summary_handle = None
        if self._stopping:
            return
        summary = self.summary()
        logger.info("Session progress", suspended=list(self.state.suspended), **summary)
        self._spawn_notification(format_progress(
            self.state.stake,
            summary["duration_seconds"],
            suspended=list(self.state.suspended),
        ))
        self._schedule_progress()

    # ========== Helpers ==========

    async def _notify(self, alert: Alert) -> None:
        if self.notifier is None:
            return
        await self.notifier.send(alert)

    def _spawn_notification(self, alert: Alert) -> None:
        if self.notifier is None:
            return
        task = asyncio.create_task(self._notify(alert))
        self._notifications.add(task)
        task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task) -> None:
        self._notifications.discard(task)
        self._task_done(task)

    async def _flush_notifications(self) -> None:
        """Wait for queued notifications; stragglers past the timeout are cancelled."""
        pending = [t for t in self._notifications if not t.done()]
        if not pending:
            return
        _, late = await asyncio.wait(pending, timeout=NOTIFY_FLUSH_TIMEOUT)
        for task in late:
            task.cancel()
        if late:
            logger.warning("Notifications dropped at stop", count=len(late))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Session task failed", error=str(exc), kind=type(exc).__name__)
