"""Reconciliation engine: stored positions overlaid with live exchange state.

Each cycle fetches ticker, plan orders and the exchange position for every
open symbol, derives a LivePosition per stored row, aggregates portfolio
risk, and repairs drifted entry prices in the store in the background.

Per-symbol gateway failures are contained: a failed call only blanks the
fields it would have supplied, and the position falls back to stored
values. Passes are serialized per symbol; a trigger for a symbol that is
already being reconciled is skipped and the cached view is kept.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Protocol
from uuid import uuid4

import structlog

from tradedesk.exceptions import GatewayUnavailable, PositionStoreError
from tradedesk.portfolio.classifier import classify, order_prices
from tradedesk.portfolio.metrics import (
    ENTRY_DRIFT_THRESHOLD,
    NEAR_LIQUIDATION_THRESHOLD,
    aggregate_risk,
    entry_drift_exceeds,
    is_near_liquidation,
    liquidation_distance,
    local_unrealized_pnl,
    position_margin,
    roi_pct,
    tp1_progress_pct,
)
from tradedesk.schemas.enums import GatewayCall, PnlSource, PositionStatus
from tradedesk.schemas.exchange import (
    AccountSnapshot,
    ExchangePositionSnapshot,
    ExchangeSnapshot,
    GatewayFailure,
    GatewayResult,
    RawOrder,
    TickerSnapshot,
)
from tradedesk.schemas.live import LivePosition, ReconciliationReport
from tradedesk.schemas.position import Position
from tradedesk.utils.logging import log_context
from tradedesk.utils.numbers import to_price

logger = structlog.get_logger()


class ExchangeGateway(Protocol):
    """Read/write surface the engine and close workflow need from the exchange."""

    async def get_ticker(self, symbol: str) -> GatewayResult[TickerSnapshot]: ...

    async def get_plan_orders(self, symbol: str) -> GatewayResult[list[RawOrder]]: ...

    async def get_position(self, symbol: str) -> GatewayResult[Optional[ExchangePositionSnapshot]]: ...

    async def get_account(self) -> GatewayResult[AccountSnapshot]: ...

    async def place_order(self, symbol: str, size: float, side: str) -> GatewayResult[dict[str, Any]]: ...

    async def flash_close_position(self, symbol: str, hold_side: str) -> GatewayResult[dict[str, Any]]: ...

    async def cancel_plan_order(self, symbol: str, order_id: str) -> GatewayResult[dict[str, Any]]: ...


class PositionStore(Protocol):
    """Persistence surface shared by the in-memory and PostgREST stores."""

    async def list_positions(self, status: Optional[PositionStatus] = None) -> list[Position]: ...

    async def get_position(self, position_id: str) -> Optional[Position]: ...

    async def update_position(self, position_id: str, fields: dict[str, Any]) -> Position: ...

    async def rpc(self, name: str, params: Optional[dict[str, Any]] = None) -> Any: ...


def derive_live_position(
    position: Position,
    snapshot: ExchangeSnapshot,
    *,
    near_liquidation_threshold: float = NEAR_LIQUIDATION_THRESHOLD,
    entry_drift_threshold: float = ENTRY_DRIFT_THRESHOLD,
    reconciled_at: Optional[datetime] = None,
) -> LivePosition:
    """Overlay one exchange snapshot onto a stored position.

    Args:
        position: The stored row.
        snapshot: This cycle's exchange data for the position's symbol.
        near_liquidation_threshold: Fractional distance below which the
            position is flagged as near liquidation.
        entry_drift_threshold: Absolute difference between stored and
            exchange entry price above which a correction is due.
        reconciled_at: Timestamp for the view. Defaults to now (UTC).

    Returns:
        LivePosition. ``entry_price_corrected`` is True when the stored
        entry price should be rewritten with the exchange value.
    """
    ticker = snapshot.ticker
    exchange = snapshot.position
    side = position.side

    stored_entry = (
        position.stored_entry_price if isinstance(position, LivePosition) else position.entry_price
    )
    exchange_entry = exchange.open_price_avg if exchange else None
    entry = exchange_entry or stored_entry

    last_price = ticker.last_price if ticker else None
    current = last_price or to_price(position.current_price) or entry

    exchange_pnl = exchange.unrealized_pnl if exchange else None
    if exchange_pnl is not None:
        pnl, pnl_source = exchange_pnl, PnlSource.EXCHANGE
    else:
        pnl = local_unrealized_pnl(side, entry, current, position.quantity)
        pnl_source = PnlSource.LOCAL

    classified = classify(snapshot.orders, position.symbol, side)
    stored_tps = position.stored_tp_prices()
    real_sl = classified.first_sl_price or to_price(position.sl_price)
    real_tps = classified.tp_prices or order_prices(stored_tps, side)

    margin = position_margin(position.quantity, entry, position.leverage)
    liq_price = exchange.liquidation_price if exchange else None
    distance = liquidation_distance(current, liq_price)

    data = position.model_dump()
    data.update(
        entry_price=entry,
        current_price=current,
        unrealized_pnl=pnl,
        mark_price=(ticker.mark_price if ticker else None) or current,
        stored_entry_price=stored_entry,
        entry_price_corrected=entry_drift_exceeds(stored_entry, exchange_entry, entry_drift_threshold),
        pnl_source=pnl_source,
        liquidation_price=liq_price,
        break_even_price=exchange.break_even_price if exchange else None,
        margin_used=exchange.margin if exchange else None,
        funding_rate=ticker.funding_rate if ticker else None,
        achieved_profits=(exchange.achieved_profits if exchange else None) or 0.0,
        real_sl_price=real_sl,
        real_tp_prices=real_tps,
        has_sl_order=classified.has_sl,
        has_tp_orders=classified.has_tp,
        sl_missing=not classified.has_sl,
        tp_missing=not classified.has_tp and bool(stored_tps),
        notional=position.quantity * current,
        position_margin=margin,
        roi_pct=roi_pct(pnl, margin),
        liquidation_distance=distance,
        near_liquidation=is_near_liquidation(distance, near_liquidation_threshold),
        tp1_progress_pct=tp1_progress_pct(side, entry, current, real_tps[0] if real_tps else None),
        gateway_errors=[call.value for call in snapshot.failed_calls],
        reconciled_at=reconciled_at or datetime.now(timezone.utc),
    )
    return LivePosition(**data)


@dataclass
class _SymbolOutcome:
    """What one per-symbol pass produced."""

    symbol: str
    views: list[LivePosition] = field(default_factory=list)
    failed_calls: list[GatewayCall] = field(default_factory=list)
    discarded: list[str] = field(default_factory=list)
    skipped: bool = False


class ReconciliationEngine:
    """Builds LivePositions and the portfolio risk view.

    Holds the cycle-local cache of views, the set of symbols currently being
    reconciled, the ids of positions closed during this process's lifetime
    and the outstanding background entry-price corrections.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        store: PositionStore,
        *,
        near_liquidation_threshold: float = NEAR_LIQUIDATION_THRESHOLD,
        entry_drift_threshold: float = ENTRY_DRIFT_THRESHOLD,
        max_concurrent_symbols: int = 4,
    ) -> None:
        if max_concurrent_symbols < 1:
            raise ValueError("max_concurrent_symbols must be at least 1")

        self._gateway = gateway
        self._store = store
        self._near_liquidation_threshold = near_liquidation_threshold
        self._entry_drift_threshold = entry_drift_threshold
        self._max_concurrent_symbols = max_concurrent_symbols

        self._views: dict[str, LivePosition] = {}
        self._in_flight: set[str] = set()
        self._closed_ids: set[str] = set()
        self._corrections: set[asyncio.Task] = set()
        self._correcting_ids: set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def reconcile_position(self, position: Position) -> Optional[LivePosition]:
        """Reconcile a single position.

        Returns None when the position is not open, the symbol is already
        being reconciled, or the position was closed while its pass ran.
        """
        if not position.is_open or position.id in self._closed_ids:
            return None

        outcome = await self._reconcile_symbol(position.symbol, [position])
        return outcome.views[0] if outcome.views else None

    async def reconcile_all(
        self,
        positions: Optional[Iterable[Position]] = None,
    ) -> ReconciliationReport:
        """Run one full reconciliation cycle.

        Args:
            positions: Positions to reconcile. Loaded from the store
                (status open) when omitted.

        Returns:
            ReconciliationReport with fresh views, cached views for skipped
            symbols, aggregate risk and per-symbol gateway errors.

        Raises:
            PositionStoreError: If open positions cannot be loaded.
        """
        cycle_id = uuid4().hex[:12]
        with log_context(cycle_id=cycle_id):
            return await self._run_cycle(cycle_id, positions)

    def mark_closed(self, position_id: str) -> None:
        """Record that a position is closed; any in-flight pass for it is discarded."""
        self._closed_ids.add(position_id)

    def invalidate(self, position_id: str) -> None:
        """Drop the cached view for a position."""
        self._views.pop(position_id, None)

    def is_closed(self, position_id: str) -> bool:
        return position_id in self._closed_ids

    def cached_view(self, position_id: str) -> Optional[LivePosition]:
        return self._views.get(position_id)

    def open_view(self) -> list[LivePosition]:
        """Cached views of positions not known to be closed."""
        return [
            view for pid, view in self._views.items()
            if pid not in self._closed_ids and view.is_open
        ]

    def in_flight(self, symbol: str) -> bool:
        return symbol.upper() in self._in_flight

    @property
    def pending_corrections(self) -> int:
        return len(self._corrections)

    async def drain_corrections(self) -> None:
        """Wait for all outstanding entry-price corrections to finish."""
        while self._corrections:
            await asyncio.gather(*list(self._corrections), return_exceptions=True)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _run_cycle(
        self,
        cycle_id: str,
        positions: Optional[Iterable[Position]],
    ) -> ReconciliationReport:
        started_at = datetime.now(timezone.utc)
        from_store = positions is None
        if from_store:
            positions = await self._store.list_positions(status=PositionStatus.OPEN)

        open_positions = [
            p for p in positions if p.is_open and p.id not in self._closed_ids
        ]
        if from_store:
            open_ids = {p.id for p in open_positions}
            for stale_id in [pid for pid in self._views if pid not in open_ids]:
                self.invalidate(stale_id)
            # forget closes the store has caught up with
            self._closed_ids.intersection_update(p.id for p in positions)

        by_symbol: dict[str, list[Position]] = {}
        for position in open_positions:
            by_symbol.setdefault(position.symbol.upper(), []).append(position)

        logger.info(
            "reconciliation_cycle_started",
            positions=len(open_positions),
            symbols=len(by_symbol),
        )

        semaphore = asyncio.Semaphore(self._max_concurrent_symbols)

        async def bounded(symbol: str, group: list[Position]) -> _SymbolOutcome:
            async with semaphore:
                return await self._reconcile_symbol(symbol, group)

        account_result, *outcomes = await asyncio.gather(
            self._fetch_account(),
            *(bounded(symbol, group) for symbol, group in by_symbol.items()),
        )

        fresh: dict[str, LivePosition] = {}
        errors: dict[str, list[str]] = {}
        skipped: list[str] = []
        discarded: list[str] = []
        for outcome in outcomes:
            for view in outcome.views:
                fresh[view.id] = view
            if outcome.failed_calls:
                errors[outcome.symbol] = [call.value for call in outcome.failed_calls]
            if outcome.skipped:
                skipped.append(outcome.symbol)
            discarded.extend(outcome.discarded)

        views: list[LivePosition] = []
        for position in open_positions:
            view = fresh.get(position.id)
            if view is None and position.symbol.upper() in skipped:
                view = self._views.get(position.id)
            if view is not None:
                views.append(view)

        account: Optional[AccountSnapshot] = None
        account_error: Optional[str] = None
        if account_result.ok:
            account = account_result.data
        else:
            account_error = str(account_result.error)
            errors.setdefault("account", []).append(GatewayCall.ACCOUNT.value)

        report = ReconciliationReport(
            cycle_id=cycle_id,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            positions=views,
            risk=aggregate_risk(views, account, account_error),
            errors=errors,
            skipped=skipped,
            discarded=discarded,
        )
        logger.info("reconciliation_cycle_finished", **report.summary())
        return report

    async def _fetch_account(self) -> GatewayResult[AccountSnapshot]:
        result = await self._settle(GatewayCall.ACCOUNT, None, self._gateway.get_account())
        if not result.ok:
            logger.warning("account_fetch_failed", error=str(result.error))
        return result

    # ------------------------------------------------------------------
    # Per-symbol pass
    # ------------------------------------------------------------------

    async def _reconcile_symbol(
        self,
        symbol: str,
        positions: list[Position],
    ) -> _SymbolOutcome:
        key = symbol.upper()
        if key in self._in_flight:
            logger.debug("reconcile_skipped_in_flight", symbol=symbol)
            return _SymbolOutcome(symbol=symbol, skipped=True)

        self._in_flight.add(key)
        try:
            snapshot = await self.fetch_snapshot(symbol)
        finally:
            self._in_flight.discard(key)

        outcome = _SymbolOutcome(symbol=symbol, failed_calls=list(snapshot.failed_calls))
        reconciled_at = datetime.now(timezone.utc)

        for position in positions:
            if position.id in self._closed_ids:
                logger.info(
                    "reconcile_result_discarded",
                    position_id=position.id,
                    symbol=symbol,
                )
                outcome.discarded.append(position.id)
                continue

            view = derive_live_position(
                position,
                snapshot,
                near_liquidation_threshold=self._near_liquidation_threshold,
                entry_drift_threshold=self._entry_drift_threshold,
                reconciled_at=reconciled_at,
            )
            if view.entry_price_corrected:
                self._schedule_entry_correction(position.id, symbol, view.stored_entry_price, view.entry_price)

            self._views[position.id] = view
            outcome.views.append(view)

        return outcome

    async def fetch_snapshot(self, symbol: str) -> ExchangeSnapshot:
        """Fetch ticker, plan orders and exchange position concurrently."""
        ticker_result, orders_result, position_result = await asyncio.gather(
            self._settle(GatewayCall.TICKER, symbol, self._gateway.get_ticker(symbol)),
            self._settle(GatewayCall.PLAN_ORDERS, symbol, self._gateway.get_plan_orders(symbol)),
            self._settle(GatewayCall.POSITION, symbol, self._gateway.get_position(symbol)),
        )

        failed: list[GatewayCall] = []
        for call, result in (
            (GatewayCall.TICKER, ticker_result),
            (GatewayCall.PLAN_ORDERS, orders_result),
            (GatewayCall.POSITION, position_result),
        ):
            if not result.ok:
                failed.append(call)
                logger.warning(
                    "gateway_call_failed",
                    symbol=symbol,
                    call=call.value,
                    error=str(result.error),
                )

        return ExchangeSnapshot(
            symbol=symbol,
            ticker=ticker_result.data if ticker_result.ok else None,
            position=position_result.data if position_result.ok else None,
            orders=orders_result.data if orders_result.ok else [],
            failed_calls=failed,
        )

    @staticmethod
    async def _settle(call: GatewayCall, symbol: Optional[str], coro) -> GatewayResult:
        """Await a gateway call; an unexpected exception becomes a failure."""
        try:
            return await coro
        except GatewayUnavailable as e:
            return GatewayFailure(error=e)
        except Exception as e:
            return GatewayFailure(
                error=GatewayUnavailable(
                    message=f"{call.value} raised {type(e).__name__}: {e}",
                    symbol=symbol,
                    call=call.value,
                )
            )

    # ------------------------------------------------------------------
    # Entry-price repair
    # ------------------------------------------------------------------

    def _schedule_entry_correction(
        self,
        position_id: str,
        symbol: str,
        stored_entry: float,
        exchange_entry: float,
    ) -> None:
        if position_id in self._correcting_ids:
            return

        self._correcting_ids.add(position_id)
        task = asyncio.create_task(
            self._correct_entry_price(position_id, symbol, stored_entry, exchange_entry)
        )
        self._corrections.add(task)
        task.add_done_callback(self._corrections.discard)

    async def _correct_entry_price(
        self,
        position_id: str,
        symbol: str,
        stored_entry: float,
        exchange_entry: float,
    ) -> bool:
        try:
            current = await self._store.get_position(position_id)
            if current is None or not current.is_open or position_id in self._closed_ids:
                logger.info(
                    "entry_correction_skipped",
                    position_id=position_id,
                    symbol=symbol,
                    reason="position no longer open",
                )
                return False

            await self._store.update_position(position_id, {"entry_price": exchange_entry})
            logger.info(
                "entry_price_corrected",
                position_id=position_id,
                symbol=symbol,
                stored_entry=stored_entry,
                exchange_entry=exchange_entry,
            )
            return True
        except PositionStoreError as e:
            logger.error(
                "entry_correction_failed",
                position_id=position_id,
                symbol=symbol,
                exchange_entry=exchange_entry,
                error=str(e),
            )
            return False
        finally:
            self._correcting_ids.discard(position_id)
