"""Grouped win-rate / P&L statistics over closed trades.

Overall figures are derived from one grouped dataset (by default the
margin buckets). The win rate is weighted by each group's trade count,
not averaged across groups: a 0% group of 9 trades and a 100% group of
1 trade give 10%, not 50%.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Sequence

import structlog

from tradedesk.portfolio.metrics import position_margin
from tradedesk.schemas.enums import PositionStatus
from tradedesk.schemas.position import Position
from tradedesk.schemas.stats import GroupStat, GroupSummary, TradingStats
from tradedesk.utils.numbers import safe_div, to_float

logger = structlog.get_logger()

MARGIN_BUCKETS = (
    (1.0, "<1 USDT"),
    (2.0, "1-2 USDT"),
    (5.0, "2-5 USDT"),
)
TOP_MARGIN_BUCKET = ">5 USDT"

GROUP_KEYS = ("margin_bucket", "leverage", "close_reason", "tier")

# RPC name -> key column in its result rows
STATS_RPCS = {
    "get_margin_bucket_stats": "margin_bucket",
    "get_tier_stats": "tier",
    "get_leverage_stats": "leverage",
}


# ---------------------------------------------------------------------------
# Reductions over a grouped dataset
# ---------------------------------------------------------------------------

def best_group(groups: Sequence[GroupStat]) -> Optional[GroupStat]:
    """Highest win rate; the first group wins ties."""
    best: Optional[GroupStat] = None
    for group in groups:
        if best is None or group.win_rate > best.win_rate:
            best = group
    return best


def worst_group(groups: Sequence[GroupStat]) -> Optional[GroupStat]:
    """Lowest win rate; the first group wins ties."""
    worst: Optional[GroupStat] = None
    for group in groups:
        if worst is None or group.win_rate < worst.win_rate:
            worst = group
    return worst


def summarize_groups(groups: Sequence[GroupStat]) -> GroupSummary:
    """Overall trades, P&L and count-weighted win rate across groups."""
    total_trades = sum(g.count for g in groups)
    total_pnl = sum(g.total_pnl for g in groups)
    total_wins = sum(g.win_rate / 100 * g.count for g in groups)

    return GroupSummary(
        total_trades=total_trades,
        total_pnl=round(total_pnl, 2),
        avg_pnl=round(safe_div(total_pnl, total_trades), 2),
        win_rate=round(safe_div(total_wins, total_trades) * 100, 1),
        best=best_group(groups),
        worst=worst_group(groups),
    )


# ---------------------------------------------------------------------------
# Local grouping of closed positions
# ---------------------------------------------------------------------------

def margin_bucket(position: Position) -> str:
    margin = position_margin(position.quantity, position.entry_price, position.leverage)
    for upper, label in MARGIN_BUCKETS:
        if margin < upper:
            return label
    return TOP_MARGIN_BUCKET


def _leverage_label(leverage: float) -> str:
    return str(int(leverage)) if float(leverage).is_integer() else str(leverage)


def group_closed_positions(
    positions: Iterable[Position],
    key: str,
    tiers: Optional[Mapping[str, str]] = None,
) -> list[GroupStat]:
    """Group closed positions with a realized P&L, ordered by win rate (desc).

    Args:
        positions: Any positions; open ones and those without a realized
            P&L are ignored.
        key: One of ``margin_bucket``, ``leverage``, ``close_reason``, ``tier``.
        tiers: alert_id -> tier, used when ``key == "tier"``. Positions whose
            alert has no tier are grouped as "Unknown".

    Returns:
        One GroupStat per group; a win is ``realized_pnl > 0``.
    """
    if key not in GROUP_KEYS:
        raise ValueError(f"Unknown group key: {key}. Must be one of {GROUP_KEYS}")

    tiers = tiers or {}
    pnl_by_group: dict[str, list[float]] = {}

    for position in positions:
        if position.status != PositionStatus.CLOSED or position.realized_pnl is None:
            continue

        if key == "margin_bucket":
            label = margin_bucket(position)
        elif key == "leverage":
            label = _leverage_label(position.leverage)
        elif key == "close_reason":
            label = position.close_reason or "Unknown"
        else:
            label = tiers.get(position.alert_id or "") or "Unknown"

        pnl_by_group.setdefault(label, []).append(position.realized_pnl)

    groups = []
    for label, pnls in pnl_by_group.items():
        wins = sum(1 for pnl in pnls if pnl > 0)
        total = sum(pnls)
        groups.append(
            GroupStat(
                key=label,
                count=len(pnls),
                win_rate=round(wins / len(pnls) * 100, 1),
                avg_pnl=round(total / len(pnls), 2),
                total_pnl=round(total, 2),
            )
        )

    groups.sort(key=lambda g: g.win_rate, reverse=True)
    return groups


def group_rows(groups: Iterable[GroupStat], key_field: str) -> list[dict[str, Any]]:
    """Render GroupStats in the RPC row shape (``{<key_field>, count, ...}``)."""
    rows = []
    for group in groups:
        key: Any = group.key
        if key_field == "leverage":
            value = to_float(group.key)
            key = int(value) if value is not None and value.is_integer() else value
        rows.append({
            key_field: key,
            "count": group.count,
            "win_rate": group.win_rate,
            "avg_pnl": group.avg_pnl,
            "total_pnl": group.total_pnl,
        })
    return rows


# ---------------------------------------------------------------------------
# Dashboard statistics
# ---------------------------------------------------------------------------

def build_trading_stats(
    margin: Sequence[GroupStat],
    tier: Sequence[GroupStat],
    leverage: Sequence[GroupStat],
    rr: Optional[Sequence[GroupStat]] = None,
    close_reason: Optional[Sequence[GroupStat]] = None,
) -> TradingStats:
    """Overall figures from the margin dataset plus best/worst selections."""
    rr = list(rr or [])
    close_reason = list(close_reason or [])

    summary = summarize_groups(margin)
    best_margin = summary.best
    worst_margin = summary.worst
    best_tier = best_group(tier)
    best_leverage = best_group(leverage)
    best_rr = best_group(rr)
    best_reason = best_group(close_reason)
    worst_reason = worst_group(close_reason)

    return TradingStats(
        total_trades=summary.total_trades,
        win_rate=summary.win_rate,
        avg_pnl=summary.avg_pnl,
        total_pnl=summary.total_pnl,
        best_margin_bucket=best_margin.key if best_margin else "N/A",
        best_margin_win_rate=best_margin.win_rate if best_margin else 0.0,
        best_margin_avg_pnl=best_margin.avg_pnl if best_margin else 0.0,
        worst_margin_bucket=worst_margin.key if worst_margin else "N/A",
        worst_margin_win_rate=worst_margin.win_rate if worst_margin else 0.0,
        best_tier=best_tier.key if best_tier else "N/A",
        best_tier_win_rate=best_tier.win_rate if best_tier else 0.0,
        best_tier_total_pnl=best_tier.total_pnl if best_tier else 0.0,
        best_leverage=(to_float(best_leverage.key) or 0.0) if best_leverage else 0.0,
        best_leverage_win_rate=best_leverage.win_rate if best_leverage else 0.0,
        best_rr_bucket=best_rr.key if best_rr else "N/A",
        best_rr_win_rate=best_rr.win_rate if best_rr else 0.0,
        best_close_reason=best_reason.key if best_reason else "N/A",
        worst_close_reason=worst_reason.key if worst_reason else "N/A",
        margin_bucket_stats=list(margin),
        tier_stats=list(tier),
        leverage_stats=list(leverage),
        rr_stats=rr,
        close_reason_stats=close_reason,
    )


class StatsService:
    """Loads the grouped datasets from the store and builds TradingStats."""

    def __init__(self, store: Any) -> None:
        self._store = store

    async def load_group(self, rpc_name: str) -> list[GroupStat]:
        """Call one statistics RPC and parse its rows."""
        if rpc_name not in STATS_RPCS:
            raise ValueError(f"Unknown statistics RPC: {rpc_name}")
        rows = await self._store.rpc(rpc_name) or []
        return [GroupStat.from_row(row, STATS_RPCS[rpc_name]) for row in rows]

    async def load(self, include_close_reasons: bool = True) -> TradingStats:
        """Fetch margin/tier/leverage datasets and build dashboard statistics.

        Raises:
            PositionStoreError: If any dataset cannot be loaded.
        """
        margin = await self.load_group("get_margin_bucket_stats")
        tier = await self.load_group("get_tier_stats")
        leverage = await self.load_group("get_leverage_stats")

        close_reason: list[GroupStat] = []
        if include_close_reasons:
            closed = await self._store.list_positions(status=PositionStatus.CLOSED)
            close_reason = group_closed_positions(closed, "close_reason")

        stats = build_trading_stats(margin, tier, leverage, close_reason=close_reason)
        logger.info(
            "trading_stats_loaded",
            total_trades=stats.total_trades,
            win_rate=stats.win_rate,
            total_pnl=stats.total_pnl,
        )
        return stats
