"""Reconciliation service: drives the engine from a timer and the change feed.

Two triggers converge on the engine: a fixed-interval polling loop and
row-change notifications from the store's realtime feed. The engine
serializes passes per symbol, so overlapping triggers are safe.
"""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Optional

import structlog
from pydantic import ValidationError

from tradedesk.exceptions import PositionStoreError
from tradedesk.portfolio.reconciler import ReconciliationEngine
from tradedesk.schemas.enums import ChangeEventType
from tradedesk.schemas.events import ChangeEvent
from tradedesk.schemas.live import LivePosition, ReconciliationReport
from tradedesk.schemas.position import Position

logger = structlog.get_logger()

Listener = Callable[[Any], Any]


class ReconciliationService:
    """Runs reconciliation cycles and reacts to position changes.

    Flow:
    1. run_cycle(): one full pass, published to on_report listeners
    2. run_forever(): run_cycle() every ``interval_seconds`` until stopped
    3. handle_change_event(): apply one realtime row change

    Listener exceptions are logged and never reach the loop.
    """

    DEFAULT_INTERVAL_SECONDS = 3.0

    def __init__(
        self,
        engine: ReconciliationEngine,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        close_workflow: Any = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self._engine = engine
        self._interval = interval_seconds
        self._close_workflow = close_workflow

        self._report_listeners: list[Listener] = []
        self._external_close_listeners: list[Listener] = []
        self._last_report: Optional[ReconciliationReport] = None
        self._cycles = 0

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_report(self, listener: Listener) -> None:
        """Call ``listener(report)`` after every cycle. May be async."""
        self._report_listeners.append(listener)

    def on_external_close(self, listener: Listener) -> None:
        """Call ``listener(event)`` when a position is closed outside this process."""
        self._external_close_listeners.append(listener)

    @property
    def last_report(self) -> Optional[ReconciliationReport]:
        return self._last_report

    @property
    def cycles(self) -> int:
        return self._cycles

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def run_cycle(self) -> ReconciliationReport:
        """Run one reconciliation cycle and publish the report.

        Raises:
            PositionStoreError: If open positions cannot be loaded.
        """
        report = await self._engine.reconcile_all()
        if self._close_workflow is not None:
            self._close_workflow.prune_closed()
        self._last_report = report
        self._cycles += 1
        await self._publish(self._report_listeners, report, "report")
        return report

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Run cycles at a fixed interval until ``stop_event`` is set.

        A cycle whose store read fails is logged and skipped; the loop
        continues with the next tick.
        """
        logger.info("reconciliation_loop_started", interval_seconds=self._interval)

        while not stop_event.is_set():
            try:
                await self.run_cycle()
            except PositionStoreError as e:
                logger.error("reconciliation_cycle_failed", error=str(e))

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

        await self._engine.drain_corrections()
        logger.info("reconciliation_loop_stopped", cycles=self._cycles)

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    async def handle_change_event(self, payload: dict[str, Any] | ChangeEvent) -> Optional[LivePosition]:
        """Apply one realtime change to the engine.

        Returns:
            The refreshed LivePosition when an open row was re-reconciled,
            otherwise None.
        """
        try:
            event = payload if isinstance(payload, ChangeEvent) else ChangeEvent.model_validate(payload)
        except ValidationError as e:
            logger.error("invalid_change_event", error=str(e))
            return None

        position_id = event.position_id
        if position_id is None:
            logger.warning("change_event_without_id", event_type=event.event_type.value)
            return None

        if event.event_type == ChangeEventType.DELETE:
            self._engine.invalidate(position_id)
            logger.info("position_deleted", position_id=position_id, symbol=event.symbol)
            return None

        if event.is_close:
            self._engine.mark_closed(position_id)
            self._engine.invalidate(position_id)
            if self._close_workflow is not None and self._close_workflow.is_own_close(position_id):
                logger.info("close_confirmed", position_id=position_id, symbol=event.symbol)
            else:
                logger.warning(
                    "external_close_detected",
                    position_id=position_id,
                    symbol=event.symbol,
                    close_reason=event.new.get("close_reason"),
                )
                await self._publish(self._external_close_listeners, event, "external_close")
            return None

        if not event.is_open_row:
            self._engine.invalidate(position_id)
            return None

        try:
            position = Position.model_validate(event.new)
        except ValidationError as e:
            logger.error("invalid_position_row", position_id=position_id, error=str(e))
            return None

        return await self._engine.reconcile_position(position)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _publish(listeners: list[Listener], item: Any, kind: str) -> None:
        for listener in list(listeners):
            try:
                result = listener(item)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("listener_failed", kind=kind, error=str(e))
