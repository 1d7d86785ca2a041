"""Protective-order classification.

Splits the account's pending trigger orders for one symbol into
stop-loss and take-profit sets using plan-type and trigger-field
heuristics. Pure functions, no I/O.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from tradedesk.schemas.enums import PlanStatus, PlanType, PositionSide
from tradedesk.schemas.exchange import RawOrder

SL_PLAN_TYPES = frozenset({PlanType.POS_LOSS.value, PlanType.LOSS_PLAN.value})
TP_PLAN_TYPES = frozenset({PlanType.POS_PROFIT.value, PlanType.PROFIT_PLAN.value})


@dataclass(frozen=True)
class ClassifiedOrders:
    """Disjoint SL/TP partitions for one symbol."""

    side: PositionSide
    sl_orders: list[RawOrder] = field(default_factory=list)
    tp_orders: list[RawOrder] = field(default_factory=list)

    @property
    def has_sl(self) -> bool:
        return len(self.sl_orders) > 0

    @property
    def has_tp(self) -> bool:
        return len(self.tp_orders) > 0

    @property
    def first_sl_price(self) -> Optional[float]:
        """Trigger price of the first SL order, if it has a usable one."""
        if not self.sl_orders:
            return None
        return sl_trigger_price(self.sl_orders[0])

    @property
    def tp_prices(self) -> list[float]:
        """TP trigger prices, nearest target first for this side."""
        return ordered_tp_prices(self.tp_orders, self.side)


def is_live(order: RawOrder) -> bool:
    return order.plan_status == PlanStatus.LIVE.value


def is_stop_loss(order: RawOrder) -> bool:
    """SL predicate: loss plan types, or a TP/SL pair carrying a stop-loss trigger."""
    if not is_live(order):
        return False
    if order.plan_type in SL_PLAN_TYPES:
        return True
    return (
        order.plan_type == PlanType.PROFIT_LOSS.value
        and order.stop_loss_trigger_price is not None
    )


def is_take_profit(order: RawOrder) -> bool:
    """TP predicate: profit plan types, or a TP/SL pair carrying a take-profit trigger."""
    if not is_live(order):
        return False
    if order.plan_type in TP_PLAN_TYPES:
        return True
    return (
        order.plan_type == PlanType.PROFIT_LOSS.value
        and order.stop_surplus_trigger_price is not None
    )


def sl_trigger_price(order: RawOrder) -> Optional[float]:
    return order.stop_loss_trigger_price or order.trigger_price


def tp_trigger_price(order: RawOrder) -> Optional[float]:
    return order.stop_surplus_trigger_price or order.trigger_price


def order_prices(prices: Iterable[Optional[float]], side: PositionSide) -> list[float]:
    """Drop missing prices and sort ascending for BUY, descending for SELL."""
    numeric = [p for p in prices if p is not None]
    return sorted(numeric, reverse=side == PositionSide.SELL)


def ordered_tp_prices(orders: Iterable[RawOrder], side: PositionSide) -> list[float]:
    return order_prices((tp_trigger_price(o) for o in orders), side)


def classify(
    orders: Iterable[RawOrder],
    symbol: str,
    side: PositionSide,
) -> ClassifiedOrders:
    """Partition pending orders for ``symbol`` into SL and TP sets.

    Args:
        orders: Full pending/trigger order list for the account.
        symbol: Position symbol; matched case-insensitively.
        side: Position side, used to order TP prices.

    Returns:
        ClassifiedOrders. An order matching both predicates (a profit_loss
        pair with both triggers) lands in ``sl_orders`` only, so such a
        position reports ``has_tp == False`` unless a separate TP order
        exists. Orders that match neither are dropped.
    """
    wanted = symbol.lower()
    sl_orders: list[RawOrder] = []
    tp_orders: list[RawOrder] = []

    for order in orders:
        if order.symbol.lower() != wanted:
            continue
        if is_stop_loss(order):
            sl_orders.append(order)
        elif is_take_profit(order):
            tp_orders.append(order)

    return ClassifiedOrders(side=side, sl_orders=sl_orders, tp_orders=tp_orders)
