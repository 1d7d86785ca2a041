"""Grouped trading-statistics schemas.

Input rows come from the store's statistics RPCs (one row per margin
bucket, tier, leverage, risk:reward bucket or close reason) or are
built locally from closed positions.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tradedesk.utils.numbers import to_float


class GroupStat(BaseModel):
    """Win rate and P&L for one group of closed trades."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., description="Group label, e.g. '1-2 USDT' or '10'")
    count: int = Field(default=0, ge=0)
    win_rate: float = Field(default=0.0, ge=0.0, le=100.0, description="Percent")
    avg_pnl: float = 0.0
    total_pnl: float = 0.0

    @field_validator("win_rate", "avg_pnl", "total_pnl", mode="before")
    @classmethod
    def _numeric(cls, v: Any) -> float:
        return to_float(v) or 0.0

    @field_validator("count", mode="before")
    @classmethod
    def _count(cls, v: Any) -> int:
        return int(to_float(v) or 0)

    @classmethod
    def from_row(cls, row: dict[str, Any], key_field: str) -> "GroupStat":
        """Build from an RPC row such as ``{"margin_bucket": "<1 USDT", "count": 4, ...}``."""
        key = row.get(key_field)
        return cls(
            key="Unknown" if key is None else str(key),
            count=row.get("count", 0),
            win_rate=row.get("win_rate", 0),
            avg_pnl=row.get("avg_pnl", 0),
            total_pnl=row.get("total_pnl", 0),
        )


class GroupSummary(BaseModel):
    """Overall figures across a grouped dataset."""

    model_config = ConfigDict(frozen=True)

    total_trades: int = 0
    total_pnl: float = 0.0
    avg_pnl: float = 0.0
    win_rate: float = 0.0
    best: Optional[GroupStat] = None
    worst: Optional[GroupStat] = None


class TradingStats(BaseModel):
    """Dashboard statistics derived from the grouped datasets."""

    model_config = ConfigDict(frozen=True)

    total_trades: int = 0
    win_rate: float = 0.0
    avg_pnl: float = 0.0
    total_pnl: float = 0.0

    best_margin_bucket: str = "N/A"
    best_margin_win_rate: float = 0.0
    best_margin_avg_pnl: float = 0.0
    worst_margin_bucket: str = "N/A"
    worst_margin_win_rate: float = 0.0

    best_tier: str = "N/A"
    best_tier_win_rate: float = 0.0
    best_tier_total_pnl: float = 0.0

    best_leverage: float = 0.0
    best_leverage_win_rate: float = 0.0

    best_rr_bucket: str = "N/A"
    best_rr_win_rate: float = 0.0

    best_close_reason: str = "N/A"
    worst_close_reason: str = "N/A"

    margin_bucket_stats: list[GroupStat] = Field(default_factory=list)
    tier_stats: list[GroupStat] = Field(default_factory=list)
    leverage_stats: list[GroupStat] = Field(default_factory=list)
    rr_stats: list[GroupStat] = Field(default_factory=list)
    close_reason_stats: list[GroupStat] = Field(default_factory=list)
