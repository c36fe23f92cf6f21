"""
Reconciliation of live positions after a reconnect.

A dropped connection loses every contract subscription, and a settlement
push may have been missed while the link was down. On reconnect the
reconciler compares local positions with the service:
- Buys sent without an acknowledgement are matched to portfolio or profit
  table contracts by underlying and purchase time; unmatched ones abort
- Entries still in the portfolio are reported for re-subscription
- Entries already sold are settled from the profit table
- Contracts in the portfolio that no local position knows about are flagged
"""

from dataclasses import dataclass, field
from typing import Any
import time

from tickbot.execution.position_manager import (
    Position,
    PositionManager,
    PositionState,
    SettlementReport,
)
from tickbot.infrastructure.logging import get_logger
from tickbot.ingestion.errors import TransportError
from tickbot.ingestion.ws_client import SessionTransport

logger = get_logger(__name__)


@dataclass
class ReconciliationResult:
    """Result of a reconciliation run."""

    timestamp: float = field(default_factory=time.time)

    positions_checked: int = 0
    entries_checked: int = 0
    still_open: list[str] = field(default_factory=list)    # contract ids to re-watch
    settled: list[SettlementReport] = field(default_factory=list)
    entries_settled: int = 0
    confirmed: list[str] = field(default_factory=list)     # instruments opened from unconfirmed buys
    aborted: list[str] = field(default_factory=list)       # unconfirmed buys never executed
    awaiting_confirmation: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)    # neither open nor sold
    orphaned_contracts: list[str] = field(default_factory=list)

    errors: list[str] = field(default_factory=list)

    @property
    def has_discrepancies(self) -> bool:
        """Check if any discrepancies were found."""
        return bool(
            self.entries_settled
            or self.confirmed
            or self.aborted
            or self.unresolved
            or self.orphaned_contracts
        )

    @property
    def success(self) -> bool:
        """Check if reconciliation completed without errors."""
        return len(self.errors) == 0


class Reconciler:
    """
    Resolves positions left PROPOSED or OPEN across a disconnect.

    Usage:
        reconciler = Reconciler(transport, position_manager)
        result = await reconciler.run()
        for contract_id in result.still_open:
            await watch(contract_id)
        for report in result.settled:
            handle_settlement(report)
    """

    def __init__(
        self,
        transport: SessionTransport,
        position_manager: PositionManager,
        profit_table_limit: int = 50,
        purchase_time_slack: float = 5.0,
    ):
        self.transport = transport
        self.position_manager = position_manager
        self.profit_table_limit = profit_table_limit
        # tolerated skew between the local clock and the service's purchase_time
        self.purchase_time_slack = purchase_time_slack
        self._last_result: ReconciliationResult | None = None

    async def run(self) -> ReconciliationResult:
        """
        Run a single reconciliation pass.

        Returns:
            ReconciliationResult with details of what was found/fixed.
        """
        result = ReconciliationResult()
        positions = self.position_manager.live_positions()
        result.positions_checked = len(positions)

        try:
            open_contracts = await self._fetch_portfolio()
        except TransportError as e:
            result.errors.append(f"Failed to fetch portfolio: {e}")
            result.awaiting_confirmation = [
                p.instrument for p in positions if p.awaiting_confirmation
            ]
            logger.error("Reconciliation failed", step="portfolio", error=str(e))
            self._last_result = result
            return result

        known = {
            e.contract_id
            for p in positions
            for e in p.entries
            if e.contract_id
        }
        unclaimed = {cid: c for cid, c in open_contracts.items() if cid not in known}

        unconfirmed = [p for p in positions if p.awaiting_confirmation]
        self._claim(unconfirmed, unclaimed, "underlying")

        sold: dict[str, dict[str, Any]] | None = None
        if any(p.awaiting_confirmation for p in unconfirmed):
            sold = await self._fetch_profit_table(result)
            if sold is not None:
                self._claim(
                    unconfirmed,
                    {cid: t for cid, t in sold.items() if cid not in known},
                    "underlying_symbol",
                )

        for position in unconfirmed:
            self._resolve(position, result, table_checked=sold is not None)

        result.orphaned_contracts = sorted(
            cid for cid in unclaimed
            if self.position_manager.instrument_for_contract(cid) is None
        )
        for contract_id in result.orphaned_contracts:
            logger.warning(
                "Orphaned contract - open remotely but unknown locally",
                contract_id=contract_id,
                symbol=open_contracts[contract_id].get("underlying", ""),
            )

        pending = []
        for position in self.position_manager.live_positions():
            if position.state != PositionState.OPEN:
                continue  # buy still in flight; its own task resolves it
            for entry in position.entries:
                if entry.settled:
                    continue
                result.entries_checked += 1
                if entry.contract_id in open_contracts:
                    result.still_open.append(entry.contract_id)
                else:
                    pending.append(entry.contract_id)

        if pending:
            if sold is None:
                sold = await self._fetch_profit_table(result)
            self._settle_sold(pending, sold, result)

        self._last_result = result

        if result.has_discrepancies:
            logger.warning(
                "Reconciliation found discrepancies",
                settled=result.entries_settled,
                confirmed=result.confirmed,
                aborted=result.aborted,
                unresolved=len(result.unresolved),
                orphaned=len(result.orphaned_contracts),
            )
        else:
            logger.info(
                "Reconciliation complete",
                positions=result.positions_checked,
                still_open=len(result.still_open),
            )
        return result

    def _claim(
        self,
        positions: list[Position],
        candidates: dict[str, dict[str, Any]],
        symbol_field: str,
    ) -> None:
        """Match remote contracts to unconfirmed entries, earliest purchase first."""
        ordered = sorted(
            candidates.items(),
            key=lambda item: float(item[1].get("purchase_time") or 0),
        )
        for position in positions:
            for contract_id, contract in ordered:
                if not position.awaiting_confirmation:
                    break
                if self.position_manager.instrument_for_contract(contract_id) is not None:
                    continue
                if contract.get(symbol_field) != position.instrument:
                    continue
                purchased = contract.get("purchase_time")
                if purchased is not None and float(purchased) < position.opened_at - self.purchase_time_slack:
                    continue
                self.position_manager.claim_contract(position.instrument, contract_id)

    def _resolve(self, position: Position, result: ReconciliationResult, table_checked: bool) -> None:
        if position.awaiting_confirmation and not table_checked:
            # sold contracts cannot be ruled out; try again later
            result.awaiting_confirmation.append(position.instrument)
            return

        opened = self.position_manager.resolve_unconfirmed(position.instrument)
        if opened is None:
            result.aborted.append(position.instrument)
        else:
            result.confirmed.append(position.instrument)

    async def _fetch_portfolio(self) -> dict[str, dict[str, Any]]:
        response = await self.transport.call({"portfolio": 1})
        contracts = (response.get("portfolio") or {}).get("contracts") or []
        return {str(c["contract_id"]): c for c in contracts if "contract_id" in c}

    async def _fetch_profit_table(
        self,
        result: ReconciliationResult,
    ) -> dict[str, dict[str, Any]] | None:
        try:
            response = await self.transport.call({
                "profit_table": 1,
                "description": 1,
                "limit": self.profit_table_limit,
                "sort": "DESC",
            })
        except TransportError as e:
            result.errors.append(f"Failed to fetch profit table: {e}")
            logger.error("Reconciliation failed", step="profit_table", error=str(e))
            return None

        transactions = (response.get("profit_table") or {}).get("transactions") or []
        return {str(t["contract_id"]): t for t in transactions if "contract_id" in t}

    def _settle_sold(
        self,
        contract_ids: list[str],
        sold: dict[str, dict[str, Any]] | None,
        result: ReconciliationResult,
    ) -> None:
        if sold is None:
            # still watched, so a late settlement push can resolve them
            result.unresolved.extend(contract_ids)
            result.still_open.extend(contract_ids)
            return

        for contract_id in contract_ids:
            transaction = sold.get(contract_id)
            if transaction is None:
                result.unresolved.append(contract_id)
                result.still_open.append(contract_id)
                logger.warning("Contract not found remotely", contract_id=contract_id)
                continue

            profit = float(transaction.get("sell_price", 0)) - float(transaction.get("buy_price", 0))
            result.entries_settled += 1
            logger.info(
                "Settled missed contract from profit table",
                contract_id=contract_id,
                profit=round(profit, 2),
            )
            report = self.position_manager.record_entry_settlement(contract_id, profit)
            if report is not None:
                result.settled.append(report)

    @property
    def last_result(self) -> ReconciliationResult | None:
        """Get result of last reconciliation run."""
        return self._last_result
