"""Runtime factory: wires gateway, store, engine and services.

Clients auto-discover credentials from environment variables when the
settings leave them empty:
  TRADEDESK_GATEWAY_URL, TRADEDESK_GATEWAY_KEY, SUPABASE_URL, SUPABASE_SERVICE_KEY

Without Supabase credentials the runtime falls back to an in-memory
position store whose change feed is wired straight into the
reconciliation service.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from tradedesk.analytics.stats import StatsService
from tradedesk.config.settings import TradeDeskSettings, get_settings
from tradedesk.infra.bitget_gateway import BitgetGateway
from tradedesk.infra.supabase_store import SupabasePositionStore
from tradedesk.portfolio.reconciler import ReconciliationEngine
from tradedesk.services.close_workflow import CloseWorkflow
from tradedesk.services.reconciliation_service import ReconciliationService
from tradedesk.storage.position_store import InMemoryPositionStore
from tradedesk.utils.logging import configure_logging, get_logger


@dataclass
class Runtime:
    """Everything a process needs to reconcile and close positions."""

    settings: TradeDeskSettings
    gateway: Any
    store: Any
    engine: ReconciliationEngine
    close_workflow: CloseWorkflow
    stats: StatsService
    service: ReconciliationService

    async def aclose(self) -> None:
        """Wait for background corrections, then close HTTP clients."""
        await self.engine.drain_corrections()
        for client in (self.gateway, self.store):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


def build_gateway(settings: TradeDeskSettings) -> BitgetGateway:
    return BitgetGateway(
        base_url=settings.gateway_url or None,
        api_key=settings.gateway_key or None,
        timeout=settings.gateway_timeout,
    )


def build_store(settings: TradeDeskSettings) -> SupabasePositionStore | InMemoryPositionStore:
    if settings.has_supabase():
        return SupabasePositionStore(
            url=settings.supabase_url,
            service_key=settings.supabase_service_key,
        )
    get_logger("factory").warning("supabase_not_configured", fallback="in_memory_store")
    return InMemoryPositionStore()


def build_runtime(
    settings: Optional[TradeDeskSettings] = None,
    *,
    gateway: Any = None,
    store: Any = None,
    configure_logs: bool = True,
) -> Runtime:
    """Build a fully wired Runtime.

    Args:
        settings: Settings to use. Loaded from the environment when None.
        gateway: Pre-built exchange gateway (tests, alternative venues).
        store: Pre-built position store.
        configure_logs: Install the structlog processor chain using the
            settings' log level and output format.

    Raises:
        ValueError: If no gateway is given and no gateway credentials are
            configured.
    """
    settings = settings or get_settings()
    if configure_logs:
        configure_logging(json_output=settings.log_json, level=settings.log_level)

    gateway = gateway if gateway is not None else build_gateway(settings)
    store = store if store is not None else build_store(settings)

    engine = ReconciliationEngine(
        gateway,
        store,
        near_liquidation_threshold=settings.near_liquidation_threshold,
        entry_drift_threshold=settings.entry_drift_threshold,
        max_concurrent_symbols=settings.max_concurrent_symbols,
    )
    close_workflow = CloseWorkflow(
        gateway,
        store,
        engine,
        flash_close_fallback=settings.close_flash_fallback,
        cancel_protective_orders=settings.cancel_protective_orders,
    )
    service = ReconciliationService(
        engine,
        interval_seconds=settings.poll_interval_seconds,
        close_workflow=close_workflow,
    )

    if isinstance(store, InMemoryPositionStore):
        store.subscribe(service.handle_change_event)

    get_logger("factory").info(
        "runtime_built",
        gateway=type(gateway).__name__,
        store=type(store).__name__,
        poll_interval_seconds=settings.poll_interval_seconds,
        max_concurrent_symbols=settings.max_concurrent_symbols,
    )

    return Runtime(
        settings=settings,
        gateway=gateway,
        store=store,
        engine=engine,
        close_workflow=close_workflow,
        stats=StatsService(store),
        service=service,
    )
