"""Manual close of an open position: exchange first, then the store.

Close States:
    REQUESTED -> EXCHANGE_CLOSE_SENT -> DB_UPDATED
    REQUESTED -> EXCHANGE_CLOSE_SENT -> DB_UPDATE_FAILED -> DB_UPDATED (operator retry)
    REQUESTED -> EXCHANGE_CLOSE_FAILED

Each transition is appended to the attempt's log. A failed exchange
close leaves the store untouched and is safe to retry. A store write
that fails after the exchange close raises InconsistentCloseState and is
never retried automatically: re-running the whole close could send a
second close order.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import structlog

from tradedesk.exceptions import (
    ExchangeCloseFailed,
    GatewayUnavailable,
    InconsistentCloseState,
    InvalidStateError,
    PositionStoreError,
)
from tradedesk.portfolio.metrics import local_unrealized_pnl
from tradedesk.portfolio.reconciler import ExchangeGateway, PositionStore, ReconciliationEngine
from tradedesk.schemas.enums import CloseState
from tradedesk.schemas.live import CloseResult, LivePosition
from tradedesk.schemas.position import Position, close_fields
from tradedesk.utils.logging import log_context
from tradedesk.utils.numbers import to_price

logger = structlog.get_logger()

DEFAULT_CLOSE_REASON = "Manual close from dashboard"

TERMINAL_STATES = {
    CloseState.EXCHANGE_CLOSE_FAILED,
    CloseState.DB_UPDATED,
}

VALID_TRANSITIONS = {
    CloseState.REQUESTED: {
        CloseState.EXCHANGE_CLOSE_SENT,
        CloseState.EXCHANGE_CLOSE_FAILED,
    },
    CloseState.EXCHANGE_CLOSE_SENT: {
        CloseState.DB_UPDATED,
        CloseState.DB_UPDATE_FAILED,
    },
    CloseState.DB_UPDATE_FAILED: {
        CloseState.DB_UPDATED,
    },
}


@dataclass
class CloseAttempt:
    """One close request tracked through its lifecycle."""

    position_id: str
    symbol: str
    reason: str = DEFAULT_CLOSE_REASON
    state: CloseState = CloseState.REQUESTED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    used_flash_close: bool = False
    exchange_response: Any = None
    pending_update: dict[str, Any] = field(default_factory=dict)

    # Transition log (append-only)
    transitions: list[dict] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition_to(self, new_state: CloseState, reason: str = "") -> None:
        """Execute a state transition with validation and logging."""
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(
                f"Invalid transition: {self.state.value} -> {new_state.value}"
            )

        self.transitions.append({
            "from_state": self.state.value,
            "to_state": new_state.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "reason": reason,
        })

        old_state = self.state
        self.state = new_state

        logger.info(
            "Close transitioned",
            position_id=self.position_id,
            symbol=self.symbol,
            from_state=old_state.value,
            to_state=new_state.value,
            reason=reason,
        )


class CloseWorkflow:
    """Closes positions on the exchange and records the result in the store.

    Args:
        gateway: Exchange gateway used for the close order.
        store: Position store receiving the close fields.
        engine: Reconciliation engine to notify, and to read the last
            cached view from. Optional.
        flash_close_fallback: Try the exchange flash-close endpoint when
            the market close order fails.
        cancel_protective_orders: Cancel the stored SL/TP trigger orders
            after a successful close. Failures are logged only.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        store: PositionStore,
        engine: Optional[ReconciliationEngine] = None,
        *,
        flash_close_fallback: bool = True,
        cancel_protective_orders: bool = True,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._engine = engine
        self._flash_close_fallback = flash_close_fallback
        self._cancel_protective_orders = cancel_protective_orders

        self._attempts: dict[str, CloseAttempt] = {}
        self._running: set[str] = set()
        self._closed_ids: set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def close_position(
        self,
        position: Position,
        reason: str = DEFAULT_CLOSE_REASON,
    ) -> CloseResult:
        """Close ``position`` at market and mark it closed in the store.

        Raises:
            InvalidStateError: Not open, already closed, or a close is running.
            PositionStoreError: The row could not be re-read before closing.
            ExchangeCloseFailed: Every exchange close attempt failed.
            InconsistentCloseState: Exchange closed but the store write failed.
        """
        pid = position.id
        if not position.is_open:
            raise InvalidStateError(
                f"Position {pid} is {position.status.value}",
                position_id=pid,
                symbol=position.symbol,
                status=position.status.value,
            )
        if pid in self._closed_ids or (self._engine and self._engine.is_closed(pid)):
            raise InvalidStateError(
                f"Position {pid} is already closed",
                position_id=pid,
                symbol=position.symbol,
                status="closed",
            )
        if pid in self._running:
            raise InvalidStateError(
                f"Close already in progress for position {pid}",
                position_id=pid,
                symbol=position.symbol,
                status="closing",
            )

        self._running.add(pid)
        try:
            with log_context(close_id=uuid4().hex[:12]):
                return await self._close(position, reason)
        finally:
            self._running.discard(pid)

    async def retry_store_update(self, error: InconsistentCloseState) -> CloseResult:
        """Re-apply the pending store update of a half-finished close.

        Operator action only. The exchange is not contacted again.

        Raises:
            InvalidStateError: Nothing to retry for this position, or the
                row is no longer open (closed elsewhere in the meantime).
            PositionStoreError: The row could not be re-read, or the store
                write failed again.
        """
        pid = error.position_id
        if not pid or not error.pending_update:
            raise InvalidStateError(
                "No pending store update to retry",
                position_id=pid,
                symbol=error.symbol,
            )

        attempt = self._attempts.get(pid)
        if attempt is None:
            attempt = CloseAttempt(
                position_id=pid,
                symbol=error.symbol or "",
                reason=error.pending_update.get("close_reason", DEFAULT_CLOSE_REASON),
                state=CloseState.DB_UPDATE_FAILED,
                exchange_response=error.exchange_response,
                pending_update=dict(error.pending_update),
            )
            self._attempts[pid] = attempt
        elif attempt.state != CloseState.DB_UPDATE_FAILED:
            raise InvalidStateError(
                f"Close for position {pid} is {attempt.state.value}, not awaiting a store retry",
                position_id=pid,
                symbol=attempt.symbol,
                status=attempt.state.value,
            )

        current = await self._store.get_position(pid)
        if current is None or not current.is_open:
            status = current.status.value if current else "missing"
            raise InvalidStateError(
                f"Position {pid} is {status} in the store; pending close not applied",
                position_id=pid,
                symbol=attempt.symbol,
                status=status,
            )

        row = await self._store.update_position(pid, attempt.pending_update)
        attempt.transition_to(CloseState.DB_UPDATED, reason="operator retry")
        self._mark_closed(pid)

        cancelled = await self._cancel_orders(row)
        return self._result(attempt, cancelled)

    def is_own_close(self, position_id: str) -> bool:
        """True when this workflow closed, or is closing, the position."""
        return position_id in self._closed_ids or position_id in self._running

    def get_attempt(self, position_id: str) -> CloseAttempt | None:
        return self._attempts.get(position_id)

    def prune_closed(self) -> None:
        """Forget finished closes the engine no longer tracks as closed.

        A later close of such a position is still rejected by the store
        re-read before any exchange call.
        """
        if self._engine is None:
            return
        for pid in [p for p in self._closed_ids if not self._engine.is_closed(p)]:
            self._closed_ids.discard(pid)
            self._attempts.pop(pid, None)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _close(self, position: Position, reason: str) -> CloseResult:
        pid = position.id
        row = await self._store.get_position(pid)
        if row is None or not row.is_open:
            status = row.status.value if row else "missing"
            raise InvalidStateError(
                f"Position {pid} is {status} in the store",
                position_id=pid,
                symbol=position.symbol,
                status=status,
            )

        attempt = CloseAttempt(position_id=pid, symbol=row.symbol, reason=reason)
        self._attempts[pid] = attempt
        logger.info(
            "close_requested",
            position_id=pid,
            symbol=row.symbol,
            side=row.side.value,
            quantity=row.quantity,
            reason=reason,
        )

        close_price, realized_pnl = self._last_known_values(position, row)

        # Step 1: exchange
        await self._send_exchange_close(row, attempt)

        # Step 2: store
        update = close_fields(
            reason=reason,
            close_price=close_price,
            realized_pnl=realized_pnl,
            closed_at=datetime.now(timezone.utc),
        )
        attempt.pending_update = update
        try:
            row = await self._store.update_position(pid, update)
        except PositionStoreError as e:
            attempt.transition_to(CloseState.DB_UPDATE_FAILED, reason=str(e))
            logger.critical(
                "close_store_update_failed",
                position_id=pid,
                symbol=row.symbol,
                pending_update=update,
                error=str(e),
            )
            raise InconsistentCloseState(
                f"Exchange closed {row.symbol} but the store update failed: {e}",
                position_id=pid,
                symbol=row.symbol,
                pending_update=update,
                exchange_response=attempt.exchange_response,
            ) from e

        attempt.transition_to(CloseState.DB_UPDATED)

        # Step 3: drop from the live view
        self._mark_closed(pid)

        cancelled = await self._cancel_orders(row)
        result = self._result(attempt, cancelled)
        logger.info(
            "position_closed",
            position_id=pid,
            symbol=result.symbol,
            close_price=result.close_price,
            realized_pnl=result.realized_pnl,
            used_flash_close=result.used_flash_close,
        )
        return result

    async def _send_exchange_close(self, row: Position, attempt: CloseAttempt) -> None:
        """Market close order, with optional flash-close fallback."""
        causes: list[str] = []

        result = await self._safe_call(
            self._gateway.place_order(row.symbol, row.quantity, row.side.close_side),
            row.symbol,
        )
        if result is not None and result.ok:
            attempt.exchange_response = result.data
            attempt.transition_to(CloseState.EXCHANGE_CLOSE_SENT, reason="place_order")
            return

        causes.append(self._describe_failure(result))
        logger.warning(
            "close_order_failed",
            position_id=row.id,
            symbol=row.symbol,
            error=causes[-1],
        )

        if self._flash_close_fallback:
            flash = await self._safe_call(
                self._gateway.flash_close_position(row.symbol, row.side.hold_side),
                row.symbol,
            )
            if flash is not None and flash.ok:
                attempt.exchange_response = flash.data
                attempt.used_flash_close = True
                attempt.transition_to(CloseState.EXCHANGE_CLOSE_SENT, reason="flash_close_position")
                return

            causes.append(self._describe_failure(flash))
            logger.warning(
                "flash_close_failed",
                position_id=row.id,
                symbol=row.symbol,
                error=causes[-1],
            )

        attempt.transition_to(CloseState.EXCHANGE_CLOSE_FAILED, reason="; ".join(causes))
        raise ExchangeCloseFailed(
            f"Exchange close failed for {row.symbol}: {'; '.join(causes)}",
            position_id=row.id,
            symbol=row.symbol,
            causes=causes,
        )

    async def _cancel_orders(self, row: Position) -> list[str]:
        """Best-effort cancellation of the stored SL/TP trigger orders."""
        if not self._cancel_protective_orders:
            return []

        cancelled: list[str] = []
        for order_id in row.protective_order_ids():
            result = await self._safe_call(
                self._gateway.cancel_plan_order(row.symbol, order_id),
                row.symbol,
            )
            if result is not None and result.ok:
                cancelled.append(order_id)
            else:
                logger.warning(
                    "protective_order_cancel_failed",
                    position_id=row.id,
                    symbol=row.symbol,
                    order_id=order_id,
                    error=self._describe_failure(result),
                )
        return cancelled

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _last_known_values(self, position: Position, row: Position) -> tuple[float, float]:
        """Close price and realized P&L from the freshest data available."""
        view = position if isinstance(position, LivePosition) else None
        if view is None and self._engine is not None:
            view = self._engine.cached_view(position.id)
        if view is not None:
            current = to_price(view.current_price) or view.entry_price
            pnl = view.unrealized_pnl if view.unrealized_pnl is not None else local_unrealized_pnl(
                view.side, view.entry_price, current, view.quantity
            )
            return current, pnl

        current = to_price(row.current_price) or row.entry_price
        if row.unrealized_pnl is not None:
            return current, row.unrealized_pnl
        return current, local_unrealized_pnl(row.side, row.entry_price, current, row.quantity)

    def _mark_closed(self, position_id: str) -> None:
        self._closed_ids.add(position_id)
        if self._engine is not None:
            self._engine.mark_closed(position_id)
            self._engine.invalidate(position_id)

    @staticmethod
    async def _safe_call(coro, symbol: str):
        try:
            return await coro
        except GatewayUnavailable as e:
            logger.warning("gateway_call_raised", symbol=symbol, call=e.call, error=str(e))
            return None
        except Exception as e:
            logger.warning(
                "gateway_call_raised",
                symbol=symbol,
                error=f"{type(e).__name__}: {e}",
            )
            return None

    @staticmethod
    def _describe_failure(result) -> str:
        if result is None:
            return "gateway call raised"
        if result.ok:
            return "ok"
        return str(result.error)

    def _result(self, attempt: CloseAttempt, cancelled: list[str]) -> CloseResult:
        update = attempt.pending_update
        return CloseResult(
            position_id=attempt.position_id,
            symbol=attempt.symbol,
            realized_pnl=update["realized_pnl"],
            close_price=update["close_price"],
            close_reason=update["close_reason"],
            closed_at=datetime.fromisoformat(update["closed_at"]),
            state=attempt.state,
            used_flash_close=attempt.used_flash_close,
            cancelled_order_ids=cancelled,
            transitions=list(attempt.transitions),
        )
