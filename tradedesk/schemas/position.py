"""Persisted position record.

Mirrors one row of the ``positions`` table. Rows are created when an
alert is executed, mutated by the reconciliation engine (entry-price
repair) and the close workflow, and never deleted: a finished trade
moves to the terminal ``closed`` status instead.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tradedesk.schemas.enums import PositionSide, PositionStatus
from tradedesk.utils.numbers import to_float

CLOSE_FIELDS = ("close_price", "realized_pnl", "closed_at")


class TakeProfitLevel(BaseModel):
    """One stored take-profit level."""

    model_config = ConfigDict(frozen=True)

    level: int = Field(..., ge=1, le=3)
    price: float
    quantity: Optional[float] = None
    filled: bool = False
    order_id: Optional[str] = None


class Position(BaseModel):
    """A persisted record of an open or closed leveraged trade."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    # Identity
    id: str = Field(..., description="Row identifier")
    symbol: str = Field(..., min_length=1)
    side: PositionSide
    user_id: Optional[str] = None
    alert_id: Optional[str] = None

    # Economics
    entry_price: float = Field(..., ge=0.0)
    quantity: float = Field(..., ge=0.0)
    leverage: float = Field(default=1.0, ge=0.0)
    sl_price: Optional[float] = None
    tp1_price: Optional[float] = None
    tp1_quantity: Optional[float] = None
    tp1_filled: bool = False
    tp2_price: Optional[float] = None
    tp2_quantity: Optional[float] = None
    tp2_filled: bool = False
    tp3_price: Optional[float] = None
    tp3_quantity: Optional[float] = None
    tp3_filled: bool = False

    # Last values written by the server-side monitor
    current_price: Optional[float] = None
    unrealized_pnl: Optional[float] = None

    # Exchange linkage
    bitget_order_id: Optional[str] = None
    sl_order_id: Optional[str] = None
    tp1_order_id: Optional[str] = None
    tp2_order_id: Optional[str] = None
    tp3_order_id: Optional[str] = None

    # Lifecycle
    status: PositionStatus = PositionStatus.OPEN
    close_reason: Optional[str] = None
    close_price: Optional[float] = None
    realized_pnl: Optional[float] = None
    closed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_error: Optional[str] = None
    check_errors: int = 0

    @field_validator(
        "sl_price", "tp1_price", "tp2_price", "tp3_price",
        "tp1_quantity", "tp2_quantity", "tp3_quantity",
        "current_price", "unrealized_pnl", "close_price", "realized_pnl",
        mode="before",
    )
    @classmethod
    def _coerce_optional_number(cls, v: Any) -> Optional[float]:
        return to_float(v)

    @field_validator("tp1_filled", "tp2_filled", "tp3_filled", mode="before")
    @classmethod
    def _null_is_false(cls, v: Any) -> bool:
        return bool(v)

    @field_validator("check_errors", mode="before")
    @classmethod
    def _null_is_zero(cls, v: Any) -> int:
        return int(v or 0)

    @model_validator(mode="after")
    def _open_rows_have_no_close_fields(self) -> "Position":
        if self.status == PositionStatus.OPEN:
            present = [name for name in CLOSE_FIELDS if getattr(self, name) is not None]
            if present:
                raise ValueError(
                    f"Open position {self.id} carries close fields: {', '.join(present)}"
                )
        return self

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def take_profit_levels(self) -> list[TakeProfitLevel]:
        """Stored TP levels that have a price, in level order."""
        levels = []
        for n in (1, 2, 3):
            price = getattr(self, f"tp{n}_price")
            if not price:
                continue
            levels.append(
                TakeProfitLevel(
                    level=n,
                    price=price,
                    quantity=getattr(self, f"tp{n}_quantity"),
                    filled=getattr(self, f"tp{n}_filled"),
                    order_id=getattr(self, f"tp{n}_order_id"),
                )
            )
        return levels

    def stored_tp_prices(self) -> list[float]:
        """Non-empty stored TP prices in tp1..tp3 order."""
        return [level.price for level in self.take_profit_levels()]

    def protective_order_ids(self) -> list[str]:
        """Exchange ids of the stored SL/TP trigger orders."""
        ids = [self.sl_order_id, self.tp1_order_id, self.tp2_order_id, self.tp3_order_id]
        return [order_id for order_id in ids if order_id]


def close_fields(
    *,
    reason: str,
    close_price: float,
    realized_pnl: float,
    closed_at: datetime,
) -> dict[str, Any]:
    """Partial-update payload that moves a row into the closed state."""
    return {
        "status": PositionStatus.CLOSED.value,
        "close_reason": reason,
        "close_price": close_price,
        "realized_pnl": realized_pnl,
        "closed_at": closed_at.isoformat(),
    }
