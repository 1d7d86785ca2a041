"""Exchange-side snapshots and tagged gateway results.

ExchangeSnapshot objects are ephemeral: one per symbol per
reconciliation cycle, discarded once the LivePosition is derived.
Gateway calls never hand back raw JSON blobs; every call returns a
GatewayOk or a GatewayFailure so the caller has to branch on ``ok``.
"""

from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tradedesk.exceptions import GatewayUnavailable
from tradedesk.schemas.enums import GatewayCall
from tradedesk.utils.numbers import to_float, to_price

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Tagged results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GatewayOk(Generic[T]):
    """Successful gateway call."""

    data: T
    ok: bool = field(default=True, init=False)

    def unwrap(self) -> T:
        return self.data


@dataclass(frozen=True)
class GatewayFailure:
    """Failed gateway call. ``error`` says which call failed and why."""

    error: GatewayUnavailable
    ok: bool = field(default=False, init=False)

    def unwrap(self) -> Any:
        raise self.error


GatewayResult = Union[GatewayOk[T], GatewayFailure]


def _first(data: Any) -> dict[str, Any] | None:
    """First element of a list payload, or the payload itself if it is a dict."""
    if isinstance(data, list):
        return data[0] if data and isinstance(data[0], dict) else None
    if isinstance(data, dict):
        return data
    return None


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

class TickerSnapshot(BaseModel):
    """Latest market prices for a symbol."""

    model_config = ConfigDict(frozen=True)

    last_price: Optional[float] = None
    mark_price: Optional[float] = None
    funding_rate: Optional[float] = None

    @classmethod
    def from_payload(cls, data: Any) -> "TickerSnapshot":
        row = _first(data) or {}
        return cls(
            last_price=to_price(row.get("lastPr")),
            mark_price=to_price(row.get("markPrice")),
            funding_rate=to_float(row.get("fundingRate")),
        )


class ExchangePositionSnapshot(BaseModel):
    """The exchange's own view of the open position for a symbol."""

    model_config = ConfigDict(frozen=True)

    open_price_avg: Optional[float] = None
    liquidation_price: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    margin: Optional[float] = None
    achieved_profits: Optional[float] = None
    break_even_price: Optional[float] = None
    total: Optional[float] = None

    @classmethod
    def from_payload(cls, data: Any) -> Optional["ExchangePositionSnapshot"]:
        """Parse ``get_position`` data. None when the exchange holds no position."""
        row = _first(data)
        if row is None:
            return None
        return cls(
            open_price_avg=to_price(row.get("openPriceAvg")),
            liquidation_price=to_price(row.get("liquidationPrice")),
            unrealized_pnl=to_float(row.get("unrealizedPL")),
            margin=to_float(row.get("margin")),
            achieved_profits=to_float(row.get("achievedProfits")),
            break_even_price=to_price(row.get("breakEvenPrice")),
            total=to_float(row.get("total")),
        )


class AccountSnapshot(BaseModel):
    """Futures account balances."""

    model_config = ConfigDict(frozen=True)

    equity: float = 0.0
    available: float = 0.0

    @classmethod
    def from_payload(cls, data: Any) -> "AccountSnapshot":
        row = _first(data) or {}
        available = to_float(row.get("available")) or 0.0
        equity = to_float(row.get("accountEquity")) or available
        return cls(equity=equity, available=available)


class RawOrder(BaseModel):
    """A pending trigger (plan) order as reported by the exchange.

    Unknown exchange fields are kept so callers can log or display them.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    symbol: str = ""
    plan_type: str = Field(default="", alias="planType")
    plan_status: str = Field(default="", alias="planStatus")
    order_id: Optional[str] = Field(default=None, alias="orderId")
    trigger_price: Optional[float] = Field(default=None, alias="triggerPrice")
    stop_loss_trigger_price: Optional[float] = Field(default=None, alias="stopLossTriggerPrice")
    stop_surplus_trigger_price: Optional[float] = Field(default=None, alias="stopSurplusTriggerPrice")

    @field_validator(
        "trigger_price", "stop_loss_trigger_price", "stop_surplus_trigger_price",
        mode="before",
    )
    @classmethod
    def _parse_price(cls, v: Any) -> Optional[float]:
        return to_price(v)

    @field_validator("symbol", "plan_type", "plan_status", mode="before")
    @classmethod
    def _none_is_blank(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("order_id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> Optional[str]:
        return None if v in (None, "") else str(v)

    @classmethod
    def list_from_payload(cls, data: Any) -> list["RawOrder"]:
        """Parse ``get_plan_orders`` data (``{entrustedList: [...]}``)."""
        if isinstance(data, dict):
            rows = data.get("entrustedList") or []
        elif isinstance(data, list):
            rows = data
        else:
            rows = []
        return [cls.model_validate(row) for row in rows if isinstance(row, dict)]


class ExchangeSnapshot(BaseModel):
    """Everything the exchange told us about one symbol in one cycle."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    ticker: Optional[TickerSnapshot] = None
    position: Optional[ExchangePositionSnapshot] = None
    orders: list[RawOrder] = Field(default_factory=list)
    failed_calls: list[GatewayCall] = Field(default_factory=list)

    @property
    def orders_known(self) -> bool:
        """False when the plan-order call failed this cycle."""
        return GatewayCall.PLAN_ORDERS not in self.failed_calls

    @property
    def complete(self) -> bool:
        return not self.failed_calls
