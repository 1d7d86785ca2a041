"""Derived, cycle-local views: LivePosition, PortfolioRisk, reports.

A LivePosition is recomputed every reconciliation cycle and never
persisted as-is. Numeric fields used for arithmetic always carry a
value; fields only the exchange can supply are None when unknown.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tradedesk.schemas.enums import CloseState, PnlSource
from tradedesk.schemas.position import Position


class LivePosition(Position):
    """A Position overlaid with live exchange state for one cycle."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    # Live prices
    mark_price: float = 0.0
    stored_entry_price: float = 0.0
    entry_price_corrected: bool = False
    pnl_source: PnlSource = PnlSource.LOCAL

    # Exchange-only values (None = unknown)
    liquidation_price: Optional[float] = None
    break_even_price: Optional[float] = None
    margin_used: Optional[float] = None
    funding_rate: Optional[float] = None
    achieved_profits: float = 0.0

    # Protection
    real_sl_price: Optional[float] = None
    real_tp_prices: list[float] = Field(default_factory=list)
    has_sl_order: bool = False
    has_tp_orders: bool = False
    sl_missing: bool = True
    tp_missing: bool = False

    # Derived risk
    notional: float = 0.0
    position_margin: float = 0.0
    roi_pct: float = 0.0
    liquidation_distance: Optional[float] = None
    near_liquidation: bool = False
    tp1_progress_pct: float = 0.0

    # Provenance
    gateway_errors: list[str] = Field(default_factory=list)
    reconciled_at: Optional[datetime] = None

    @property
    def is_protected(self) -> bool:
        return self.has_sl_order

    @property
    def exchange_data_complete(self) -> bool:
        return not self.gateway_errors


class PortfolioRisk(BaseModel):
    """Aggregate risk metrics across all open positions."""

    model_config = ConfigDict(frozen=True)

    equity: float = 0.0
    available: float = 0.0
    used_margin: float = 0.0
    used_margin_pct: float = 0.0
    total_unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    position_count: int = Field(default=0, ge=0)
    near_liquidation_count: int = Field(default=0, ge=0)
    unprotected_count: int = Field(default=0, ge=0)
    account_error: Optional[str] = None


class ReconciliationReport(BaseModel):
    """Output of one reconciliation cycle."""

    model_config = ConfigDict(frozen=True)

    cycle_id: str
    started_at: datetime
    finished_at: datetime
    positions: list[LivePosition] = Field(default_factory=list)
    risk: PortfolioRisk = Field(default_factory=PortfolioRisk)
    errors: dict[str, list[str]] = Field(
        default_factory=dict,
        description="symbol -> names of gateway calls that failed",
    )
    skipped: list[str] = Field(
        default_factory=list,
        description="Symbols skipped because a previous pass was still in flight",
    )
    discarded: list[str] = Field(
        default_factory=list,
        description="Position ids closed while their pass was in flight",
    )

    @field_validator("started_at", "finished_at")
    @classmethod
    def must_have_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("Timestamp must include timezone information")
        return v

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def summary(self) -> dict[str, Any]:
        """Compact dict for logging."""
        return {
            "cycle_id": self.cycle_id,
            "positions": len(self.positions),
            "errors": sum(len(calls) for calls in self.errors.values()),
            "skipped": len(self.skipped),
            "discarded": len(self.discarded),
            "duration_seconds": round(self.duration_seconds, 3),
            "total_unrealized_pnl": round(self.risk.total_unrealized_pnl, 2),
        }


class CloseResult(BaseModel):
    """Outcome of a successful close."""

    model_config = ConfigDict(frozen=True)

    position_id: str
    symbol: str
    realized_pnl: float
    close_price: float
    close_reason: str
    closed_at: datetime
    state: CloseState
    used_flash_close: bool = False
    cancelled_order_ids: list[str] = Field(default_factory=list)
    transitions: list[dict[str, Any]] = Field(default_factory=list)
