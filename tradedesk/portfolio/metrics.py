"""Per-position and portfolio risk arithmetic.

Pure functions shared by the reconciliation engine and the close
workflow. Every division guards a zero denominator.
"""
from __future__ import annotations

from typing import Iterable, Optional

from tradedesk.schemas.enums import PositionSide
from tradedesk.schemas.exchange import AccountSnapshot
from tradedesk.schemas.live import LivePosition, PortfolioRisk
from tradedesk.utils.numbers import safe_div

NEAR_LIQUIDATION_THRESHOLD = 0.10
ENTRY_DRIFT_THRESHOLD = 1e-4


def local_unrealized_pnl(
    side: PositionSide,
    entry_price: float,
    current_price: float,
    quantity: float,
) -> float:
    """Approximate P&L when the exchange does not report one."""
    if side == PositionSide.BUY:
        return (current_price - entry_price) * quantity
    return (entry_price - current_price) * quantity


def position_margin(quantity: float, entry_price: float, leverage: float) -> float:
    """Initial margin: notional / leverage. Zero leverage contributes nothing."""
    if leverage <= 0:
        return 0.0
    return quantity * entry_price / leverage


def roi_pct(unrealized_pnl: float, margin: float) -> float:
    return safe_div(unrealized_pnl, margin) * 100


def liquidation_distance(
    current_price: float,
    liquidation_price: Optional[float],
) -> Optional[float]:
    """Fractional distance |current - liquidation| / current, None when unknown."""
    if liquidation_price is None or not current_price:
        return None
    return abs(current_price - liquidation_price) / current_price


def is_near_liquidation(
    distance: Optional[float],
    threshold: float = NEAR_LIQUIDATION_THRESHOLD,
) -> bool:
    return distance is not None and distance < threshold


def tp1_progress_pct(
    side: PositionSide,
    entry_price: float,
    current_price: float,
    tp1_price: Optional[float],
) -> float:
    """Progress from entry towards the first target, clamped to [0, 100]."""
    if not tp1_price:
        return 0.0

    progress = 0.0
    if side == PositionSide.BUY and tp1_price > entry_price:
        progress = (current_price - entry_price) / (tp1_price - entry_price) * 100
    elif side == PositionSide.SELL and tp1_price < entry_price:
        progress = (entry_price - current_price) / (entry_price - tp1_price) * 100

    return max(0.0, min(100.0, progress))


def entry_drift_exceeds(
    stored_entry: float,
    exchange_entry: Optional[float],
    threshold: float = ENTRY_DRIFT_THRESHOLD,
) -> bool:
    """True when the exchange average open price has drifted from the stored one."""
    if exchange_entry is None:
        return False
    return abs(stored_entry - exchange_entry) > threshold


def aggregate_risk(
    positions: Iterable[LivePosition],
    account: Optional[AccountSnapshot] = None,
    account_error: Optional[str] = None,
) -> PortfolioRisk:
    """Sum margin and P&L across open positions, relative to account equity."""
    equity = account.equity if account else 0.0
    available = account.available if account else 0.0

    used_margin = 0.0
    total_unrealized = 0.0
    count = 0
    near_liq = 0
    unprotected = 0

    for pos in positions:
        count += 1
        used_margin += position_margin(pos.quantity, pos.entry_price, pos.leverage)
        total_unrealized += pos.unrealized_pnl or 0.0
        if pos.near_liquidation:
            near_liq += 1
        if not pos.has_sl_order:
            unprotected += 1

    return PortfolioRisk(
        equity=equity,
        available=available,
        used_margin=used_margin,
        used_margin_pct=safe_div(used_margin, equity) * 100,
        total_unrealized_pnl=total_unrealized,
        unrealized_pnl_pct=safe_div(total_unrealized, equity) * 100,
        position_count=count,
        near_liquidation_count=near_liq,
        unprotected_count=unprotected,
        account_error=account_error,
    )
