"""End-to-end integration test for the reconciliation and close flow.

Validates:
  1. Polling cycles: store -> gateway -> LivePositions + PortfolioRisk
  2. Entry-price repair reaches the store and stops once fixed
  3. Gateway failures degrade one symbol without failing the cycle
  4. Change feed: external closes are published, own closes are not
  5. Close workflow closes at the last known price and feeds statistics

Uses the in-memory store and a scripted gateway (no network access).
"""

import pytest

from tradedesk.config.settings import TradeDeskSettings
from tradedesk.factory import build_runtime
from tradedesk.schemas.enums import GatewayCall, PnlSource, PositionStatus
from tradedesk.schemas.position import close_fields
from tradedesk.storage.position_store import InMemoryPositionStore

from tests.fixtures.sample_positions import (
    SAMPLE_TIMESTAMP,
    FakeGateway,
    failure,
    make_order,
    make_position,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def flow_gateway() -> FakeGateway:
    gateway = FakeGateway()
    gateway.set_ticker("BTCUSDT", last=104.0)
    gateway.set_position("BTCUSDT", open_price_avg=100.5, liquidation_price=91.0)
    gateway.set_orders("BTCUSDT", [make_order()])
    gateway.set_ticker("ETHUSDT", last=1950.0)
    return gateway


@pytest.fixture
def flow_store(short_position) -> InMemoryPositionStore:
    return InMemoryPositionStore([make_position(), short_position])


@pytest.fixture
def runtime(flow_gateway, flow_store):
    return build_runtime(
        TradeDeskSettings(),
        gateway=flow_gateway,
        store=flow_store,
        configure_logs=False,
    )


# ---------------------------------------------------------------------------
# Full flow
# ---------------------------------------------------------------------------


class TestFullFlow:
    """Several cycles over a long BTC and a short ETH position."""

    @pytest.mark.asyncio
    async def test_cycles_repair_close_and_stats(self, runtime, flow_gateway, flow_store):
        external_closes = []
        runtime.service.on_external_close(external_closes.append)

        # Cycle 1: BTC entry drifted on the exchange
        report = await runtime.service.run_cycle()
        views = {v.id: v for v in report.positions}

        assert set(views) == {"pos-1", "pos-2"}
        btc = views["pos-1"]
        assert btc.entry_price == 100.5
        assert btc.entry_price_corrected is True
        assert btc.pnl_source == PnlSource.LOCAL
        assert btc.unrealized_pnl == pytest.approx(0.035)
        assert btc.has_sl_order is True
        assert btc.near_liquidation is False
        assert views["pos-2"].unrealized_pnl == pytest.approx(5.0)
        assert report.errors == {}
        assert report.risk.position_count == 2
        assert report.risk.equity == 1000.0

        await runtime.engine.drain_corrections()
        assert (await flow_store.get_position("pos-1")).entry_price == 100.5

        # Cycle 2: stored entry now matches; ETH ticker is down
        flow_gateway.tickers["ETHUSDT"] = failure(GatewayCall.TICKER, "ETHUSDT")
        report = await runtime.service.run_cycle()
        views = {v.id: v for v in report.positions}

        assert views["pos-1"].entry_price_corrected is False
        assert views["pos-1"].stored_entry_price == 100.5
        assert report.errors == {"ETHUSDT": ["ticker"]}
        assert views["pos-2"].current_price == 2000.0
        assert views["pos-2"].gateway_errors == ["ticker"]

        # BTC closed elsewhere (server-side monitor hit the SL)
        await flow_store.update_position("pos-1", close_fields(
            reason="SL hit", close_price=95.0, realized_pnl=-0.05, closed_at=SAMPLE_TIMESTAMP,
        ))
        assert len(external_closes) == 1
        assert external_closes[0].position_id == "pos-1"
        assert runtime.engine.cached_view("pos-1") is None

        # Cycle 3: only ETH remains, ticker back
        flow_gateway.set_ticker("ETHUSDT", last=1950.0)
        report = await runtime.service.run_cycle()
        assert [v.id for v in report.positions] == ["pos-2"]

        # Close ETH from the dashboard
        result = await runtime.close_workflow.close_position(report.positions[0])

        assert result.close_price == 1950.0
        assert result.realized_pnl == pytest.approx(5.0)
        assert ("place_order", "ETHUSDT", 0.1, "close_short") in flow_gateway.calls
        assert len(external_closes) == 1
        assert (await flow_store.get_position("pos-2")).status == PositionStatus.CLOSED

        # Cycle 4: nothing open
        report = await runtime.service.run_cycle()
        assert report.positions == []
        assert report.risk.position_count == 0
        assert runtime.service.cycles == 4

        stats = await runtime.stats.load()
        assert stats.total_trades == 2
        assert stats.win_rate == 50.0
        assert stats.best_close_reason != "N/A"

        await runtime.aclose()

    @pytest.mark.asyncio
    async def test_store_row_inserted_after_start(self, runtime, flow_gateway, flow_store):
        """A row inserted through the store is reconciled immediately."""
        flow_gateway.set_ticker("SOLUSDT", last=150.0)

        await flow_store.insert_position(make_position(
            id="pos-3",
            symbol="SOLUSDT",
            entry_price=140.0,
            quantity=1.0,
            sl_price=130.0,
            tp1_price=160.0,
            tp2_price=None,
            tp3_price=None,
        ))

        view = runtime.engine.cached_view("pos-3")
        assert view is not None
        assert view.unrealized_pnl == pytest.approx(10.0)
        assert view.has_sl_order is False
        assert view.sl_missing is True

        await runtime.aclose()
