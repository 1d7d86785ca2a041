"""Sample position rows, plan orders and a scriptable exchange gateway.

FakeGateway replaces the HTTP gateway in engine, close-workflow and
integration tests so they run without any network access.
"""

from datetime import datetime, timezone
from typing import Any

from tradedesk.exceptions import GatewayUnavailable
from tradedesk.schemas.enums import GatewayCall
from tradedesk.schemas.exchange import (
    AccountSnapshot,
    ExchangePositionSnapshot,
    GatewayFailure,
    GatewayOk,
    RawOrder,
    TickerSnapshot,
)
from tradedesk.schemas.position import Position

SAMPLE_TIMESTAMP = datetime(2026, 2, 9, 14, 30, 0, tzinfo=timezone.utc)


def make_position(**overrides: Any) -> Position:
    """Open BTCUSDT long: 0.01 @ 100.0, 10x, SL 95, TPs 105/110/115."""
    row: dict[str, Any] = {
        "id": "pos-1",
        "symbol": "BTCUSDT",
        "side": "BUY",
        "entry_price": 100.0,
        "quantity": 0.01,
        "leverage": 10,
        "sl_price": 95.0,
        "tp1_price": 105.0,
        "tp2_price": 110.0,
        "tp3_price": 115.0,
        "sl_order_id": "sl-1",
        "tp1_order_id": "tp-1",
        "status": "open",
        "created_at": SAMPLE_TIMESTAMP.isoformat(),
    }
    row.update(overrides)
    return Position.model_validate(row)


def make_closed_position(position_id: str, realized_pnl: float | None, **overrides: Any) -> Position:
    """Closed row with a realized P&L."""
    fields: dict[str, Any] = {
        "id": position_id,
        "status": "closed",
        "close_reason": "TP1 hit",
        "close_price": 105.0,
        "realized_pnl": realized_pnl,
        "closed_at": SAMPLE_TIMESTAMP.isoformat(),
    }
    fields.update(overrides)
    return make_position(**fields)


def make_order(**overrides: Any) -> RawOrder:
    """Live pos_loss order for BTCUSDT at 95."""
    row: dict[str, Any] = {
        "symbol": "BTCUSDT",
        "planType": "pos_loss",
        "planStatus": "live",
        "orderId": "o-1",
        "triggerPrice": "95",
    }
    row.update(overrides)
    return RawOrder.model_validate(row)


def failure(call: GatewayCall, symbol: str | None = None) -> GatewayFailure:
    return GatewayFailure(
        error=GatewayUnavailable(f"{call.value} down", symbol=symbol, call=call.value)
    )


class FakeGateway:
    """In-process ExchangeGateway double.

    Per-symbol responses are plain attributes so each test can script
    exactly what the exchange reports. Every call is recorded.
    """

    def __init__(self) -> None:
        self.tickers: dict[str, Any] = {}
        self.orders: dict[str, Any] = {}
        self.positions: dict[str, Any] = {}
        self.account: Any = GatewayOk(data=AccountSnapshot(equity=1000.0, available=800.0))
        self.place_order_result: Any = GatewayOk(data={"orderId": "close-1"})
        self.flash_close_result: Any = GatewayOk(data={"wasExecuted": True})
        self.cancel_results: dict[str, Any] = {}
        self.calls: list[tuple] = []

    def set_ticker(self, symbol: str, last: float, mark: float | None = None) -> None:
        self.tickers[symbol] = GatewayOk(
            data=TickerSnapshot(last_price=last, mark_price=mark, funding_rate=0.0001)
        )

    def set_orders(self, symbol: str, orders: list[RawOrder]) -> None:
        self.orders[symbol] = GatewayOk(data=orders)

    def set_position(self, symbol: str, **fields: Any) -> None:
        self.positions[symbol] = GatewayOk(data=ExchangePositionSnapshot(**fields))

    async def get_ticker(self, symbol: str):
        self.calls.append(("get_ticker", symbol))
        return self.tickers.get(symbol, GatewayOk(data=TickerSnapshot()))

    async def get_plan_orders(self, symbol: str):
        self.calls.append(("get_plan_orders", symbol))
        return self.orders.get(symbol, GatewayOk(data=[]))

    async def get_position(self, symbol: str):
        self.calls.append(("get_position", symbol))
        return self.positions.get(symbol, GatewayOk(data=None))

    async def get_account(self):
        self.calls.append(("get_account",))
        return self.account

    async def place_order(self, symbol: str, size: float, side: str):
        self.calls.append(("place_order", symbol, size, side))
        return self.place_order_result

    async def flash_close_position(self, symbol: str, hold_side: str):
        self.calls.append(("flash_close_position", symbol, hold_side))
        return self.flash_close_result

    async def cancel_plan_order(self, symbol: str, order_id: str):
        self.calls.append(("cancel_plan_order", symbol, order_id))
        return self.cancel_results.get(order_id, GatewayOk(data={"orderId": order_id}))

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)
