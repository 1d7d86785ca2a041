"""Trading statistics over closed positions."""
from .stats import (
    StatsService,
    best_group,
    build_trading_stats,
    group_closed_positions,
    summarize_groups,
    worst_group,
)

__all__ = [
    "StatsService",
    "best_group",
    "build_trading_stats",
    "group_closed_positions",
    "summarize_groups",
    "worst_group",
]
