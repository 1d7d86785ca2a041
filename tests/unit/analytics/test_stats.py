"""Tests for grouped trading statistics."""

import pytest

from tradedesk.analytics.stats import (
    StatsService,
    best_group,
    build_trading_stats,
    group_closed_positions,
    group_rows,
    margin_bucket,
    summarize_groups,
    worst_group,
)
from tradedesk.schemas.stats import GroupStat
from tradedesk.storage.position_store import InMemoryPositionStore

from tests.fixtures.sample_positions import make_closed_position, make_position


def _closed_book() -> list:
    """Two 10x trades (one win, one loss) and one 20x win with 5 USDT margin."""
    return [
        make_closed_position("c1", 1.0, alert_id="a1"),
        make_closed_position("c2", -0.5, close_reason="SL hit", alert_id="a2"),
        make_closed_position("c3", 2.0, quantity=1.0, leverage=20),
        make_closed_position("c4", None),
        make_position(id="o1"),
    ]


class TestWeightedSummary:
    """Overall win rate is weighted by trade count."""

    def test_weighted_not_averaged(self):
        groups = [
            GroupStat(key="a", count=9, win_rate=0.0, total_pnl=-9.0),
            GroupStat(key="b", count=1, win_rate=100.0, total_pnl=3.0),
        ]

        summary = summarize_groups(groups)

        assert summary.win_rate == 10.0
        assert summary.total_trades == 10
        assert summary.total_pnl == -6.0
        assert summary.avg_pnl == -0.6

    def test_empty(self):
        summary = summarize_groups([])
        assert summary.total_trades == 0
        assert summary.win_rate == 0.0
        assert summary.best is None

    def test_rounding(self):
        groups = [
            GroupStat(key="a", count=3, win_rate=33.3333, total_pnl=1.0),
            GroupStat(key="b", count=3, win_rate=66.6667, total_pnl=1.0),
        ]
        summary = summarize_groups(groups)
        assert summary.win_rate == 50.0


class TestBestWorst:
    """Best/worst selection; the first group wins ties."""

    def test_ties_keep_first(self):
        groups = [
            GroupStat(key="first", count=2, win_rate=50.0),
            GroupStat(key="second", count=4, win_rate=50.0),
        ]
        assert best_group(groups).key == "first"
        assert worst_group(groups).key == "first"

    def test_best_and_worst(self):
        groups = [
            GroupStat(key="mid", win_rate=50.0),
            GroupStat(key="top", win_rate=80.0),
            GroupStat(key="low", win_rate=20.0),
        ]
        assert best_group(groups).key == "top"
        assert worst_group(groups).key == "low"

    def test_empty(self):
        assert best_group([]) is None
        assert worst_group([]) is None


class TestTradingStats:
    """Dashboard statistics assembly."""

    def test_defaults_when_empty(self):
        stats = build_trading_stats([], [], [])
        assert stats.total_trades == 0
        assert stats.best_margin_bucket == "N/A"
        assert stats.worst_margin_bucket == "N/A"
        assert stats.best_tier == "N/A"
        assert stats.best_leverage == 0.0
        assert stats.best_rr_bucket == "N/A"
        assert stats.best_close_reason == "N/A"

    def test_overall_comes_from_margin_dataset(self):
        margin = [
            GroupStat(key="<1 USDT", count=9, win_rate=0.0),
            GroupStat(key="1-2 USDT", count=1, win_rate=100.0),
        ]
        tier = [GroupStat(key="A", count=50, win_rate=90.0)]
        leverage = [GroupStat(key="10", count=3, win_rate=40.0), GroupStat(key="25", win_rate=60.0)]

        stats = build_trading_stats(margin, tier, leverage)

        assert stats.total_trades == 10
        assert stats.win_rate == 10.0
        assert stats.best_margin_bucket == "1-2 USDT"
        assert stats.worst_margin_bucket == "<1 USDT"
        assert stats.best_tier == "A"
        assert stats.best_leverage == 25.0
        assert stats.best_leverage_win_rate == 60.0


class TestGrouping:
    """Local grouping of closed positions."""

    def test_margin_bucket_boundaries(self):
        assert margin_bucket(make_position()) == "<1 USDT"
        assert margin_bucket(make_position(quantity=0.1)) == "1-2 USDT"
        assert margin_bucket(make_position(quantity=0.2)) == "2-5 USDT"
        assert margin_bucket(make_position(quantity=0.5)) == ">5 USDT"

    def test_by_leverage(self):
        groups = group_closed_positions(_closed_book(), "leverage")

        assert [g.key for g in groups] == ["20", "10"]
        ten = groups[1]
        assert ten.count == 2
        assert ten.win_rate == 50.0
        assert ten.total_pnl == 0.5
        assert ten.avg_pnl == 0.25

    def test_by_margin_bucket(self):
        groups = group_closed_positions(_closed_book(), "margin_bucket")
        assert {g.key: g.count for g in groups} == {">5 USDT": 1, "<1 USDT": 2}

    def test_by_close_reason(self):
        groups = group_closed_positions(_closed_book(), "close_reason")
        assert [(g.key, g.win_rate) for g in groups] == [("TP1 hit", 100.0), ("SL hit", 0.0)]

    def test_by_tier_defaults_to_unknown(self):
        groups = group_closed_positions(_closed_book(), "tier", tiers={"a1": "A"})
        assert {g.key: g.count for g in groups} == {"A": 1, "Unknown": 2}

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown group key"):
            group_closed_positions([], "symbol")

    def test_group_rows_leverage_keys(self):
        rows = group_rows(
            [GroupStat(key="10", count=1), GroupStat(key="12.5", count=1)],
            "leverage",
        )
        assert [row["leverage"] for row in rows] == [10, 12.5]

    def test_group_stat_from_row(self):
        stat = GroupStat.from_row(
            {"leverage": 10, "count": "4", "win_rate": "75.0", "avg_pnl": None, "total_pnl": "3.2"},
            "leverage",
        )
        assert stat.key == "10"
        assert stat.count == 4
        assert stat.win_rate == 75.0
        assert stat.avg_pnl == 0.0

    def test_group_stat_missing_key(self):
        assert GroupStat.from_row({"count": 1}, "tier").key == "Unknown"


class TestStatsService:
    """Loading datasets through the store's RPCs."""

    @pytest.mark.asyncio
    async def test_load_from_in_memory_store(self):
        store = InMemoryPositionStore(_closed_book(), tiers={"a1": "A", "a2": "B"})
        service = StatsService(store)

        stats = await service.load()

        assert stats.total_trades == 3
        assert stats.win_rate == 66.7
        assert stats.total_pnl == 2.5
        assert stats.best_margin_bucket == ">5 USDT"
        assert stats.worst_margin_bucket == "<1 USDT"
        assert stats.best_tier == "A"
        assert stats.best_leverage == 20.0
        assert stats.best_close_reason == "TP1 hit"
        assert stats.worst_close_reason == "SL hit"

    @pytest.mark.asyncio
    async def test_load_without_close_reasons(self):
        store = InMemoryPositionStore(_closed_book())
        stats = await StatsService(store).load(include_close_reasons=False)
        assert stats.close_reason_stats == []
        assert stats.best_close_reason == "N/A"

    @pytest.mark.asyncio
    async def test_load_group(self):
        store = InMemoryPositionStore(_closed_book())
        groups = await StatsService(store).load_group("get_leverage_stats")
        assert [g.key for g in groups] == ["20", "10"]

    @pytest.mark.asyncio
    async def test_unknown_rpc(self):
        with pytest.raises(ValueError):
            await StatsService(InMemoryPositionStore()).load_group("get_symbol_stats")
