"""Tests for per-position and portfolio risk arithmetic."""

import pytest

from tradedesk.portfolio.metrics import (
    aggregate_risk,
    entry_drift_exceeds,
    is_near_liquidation,
    liquidation_distance,
    local_unrealized_pnl,
    position_margin,
    roi_pct,
    tp1_progress_pct,
)
from tradedesk.schemas.enums import PositionSide
from tradedesk.schemas.exchange import AccountSnapshot
from tradedesk.schemas.live import LivePosition

from tests.fixtures.sample_positions import make_position


def _live(**overrides) -> LivePosition:
    data = make_position().model_dump()
    data.update(overrides)
    return LivePosition(**data)


class TestLocalPnl:
    """Local unrealized P&L approximation."""

    @pytest.mark.parametrize("side", [PositionSide.BUY, PositionSide.SELL])
    @pytest.mark.parametrize("price,qty", [(100.0, 0.01), (0.0123, 5000.0), (64250.5, 0.002)])
    def test_zero_when_current_equals_entry(self, side, price, qty):
        assert local_unrealized_pnl(side, price, price, qty) == 0

    def test_buy_gains_when_price_rises(self):
        assert local_unrealized_pnl(PositionSide.BUY, 100.0, 110.0, 2.0) == pytest.approx(20.0)

    def test_sell_gains_when_price_falls(self):
        assert local_unrealized_pnl(PositionSide.SELL, 100.0, 90.0, 2.0) == pytest.approx(20.0)


class TestMarginAndRoi:
    """Margin and ROI guards."""

    def test_position_margin(self):
        assert position_margin(0.01, 100.0, 10) == pytest.approx(0.1)

    def test_zero_leverage_contributes_nothing(self):
        assert position_margin(1.0, 100.0, 0) == 0.0

    def test_roi(self):
        assert roi_pct(0.05, 0.1) == pytest.approx(50.0)

    def test_roi_zero_margin(self):
        assert roi_pct(5.0, 0.0) == 0.0


class TestLiquidation:
    """Liquidation distance and near-liquidation flag."""

    def test_near_liquidation_scenario(self):
        distance = liquidation_distance(108.0, 100.0)
        assert distance == pytest.approx(0.074, abs=1e-3)
        assert is_near_liquidation(distance) is True

    def test_far_from_liquidation(self):
        distance = liquidation_distance(100.0, 80.0)
        assert distance == pytest.approx(0.2)
        assert is_near_liquidation(distance) is False

    def test_unknown_liquidation_price(self):
        assert liquidation_distance(100.0, None) is None
        assert is_near_liquidation(None) is False

    def test_custom_threshold(self):
        assert is_near_liquidation(0.15, threshold=0.2) is True


class TestTp1Progress:
    """Progress towards the first target, clamped to [0, 100]."""

    def test_buy_halfway(self):
        assert tp1_progress_pct(PositionSide.BUY, 100.0, 102.5, 105.0) == pytest.approx(50.0)

    def test_sell_halfway(self):
        assert tp1_progress_pct(PositionSide.SELL, 2000.0, 1950.0, 1900.0) == pytest.approx(50.0)

    def test_clamped_above(self):
        assert tp1_progress_pct(PositionSide.BUY, 100.0, 120.0, 105.0) == 100.0

    def test_clamped_below(self):
        assert tp1_progress_pct(PositionSide.BUY, 100.0, 90.0, 105.0) == 0.0

    def test_target_on_wrong_side(self):
        assert tp1_progress_pct(PositionSide.BUY, 100.0, 101.0, 95.0) == 0.0
        assert tp1_progress_pct(PositionSide.SELL, 100.0, 99.0, 105.0) == 0.0

    def test_no_target(self):
        assert tp1_progress_pct(PositionSide.BUY, 100.0, 101.0, None) == 0.0


class TestEntryDrift:
    """Entry-price drift detection."""

    def test_large_drift(self):
        assert entry_drift_exceeds(100.0, 100.5) is True

    def test_small_drift(self):
        assert entry_drift_exceeds(100.0, 100.00005) is False

    def test_no_exchange_value(self):
        assert entry_drift_exceeds(100.0, None) is False


class TestAggregateRisk:
    """Portfolio-level aggregation."""

    def test_sums_margin_and_pnl(self):
        positions = [
            _live(id="a", unrealized_pnl=1.5, has_sl_order=True),
            _live(id="b", entry_price=200.0, quantity=1.0, leverage=20, unrealized_pnl=-0.5),
        ]
        account = AccountSnapshot(equity=100.0, available=80.0)

        risk = aggregate_risk(positions, account)

        assert risk.used_margin == pytest.approx(0.1 + 10.0)
        assert risk.total_unrealized_pnl == pytest.approx(1.0)
        assert risk.used_margin_pct == pytest.approx(10.1)
        assert risk.unrealized_pnl_pct == pytest.approx(1.0)
        assert risk.position_count == 2
        assert risk.unprotected_count == 1

    def test_zero_equity_gives_zero_percentages(self):
        risk = aggregate_risk([_live(unrealized_pnl=3.0)], AccountSnapshot(equity=0.0))
        assert risk.used_margin_pct == 0.0
        assert risk.unrealized_pnl_pct == 0.0
        assert risk.total_unrealized_pnl == 3.0

    def test_missing_account(self):
        risk = aggregate_risk([_live()], None, account_error="account down")
        assert risk.equity == 0.0
        assert risk.account_error == "account down"

    def test_counts_near_liquidation(self):
        risk = aggregate_risk([_live(near_liquidation=True), _live(id="b")])
        assert risk.near_liquidation_count == 1

    def test_empty(self):
        risk = aggregate_risk([])
        assert risk.position_count == 0
        assert risk.used_margin == 0.0
