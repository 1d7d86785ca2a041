"""Shared enumerations for tradedesk schemas.

All enums used across the engine are defined here to ensure
consistency and avoid circular imports.
"""

from enum import Enum


class PositionSide(str, Enum):
    """Direction of a leveraged position."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def close_side(self) -> str:
        """Exchange order side that flattens this position."""
        return "close_long" if self is PositionSide.BUY else "close_short"

    @property
    def hold_side(self) -> str:
        """Exchange holdSide used by the flash-close endpoint."""
        return "long" if self is PositionSide.BUY else "short"


class PositionStatus(str, Enum):
    """Lifecycle status of a persisted position. ``closed`` is terminal."""
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"


class PlanType(str, Enum):
    """Exchange trigger-order plan types."""
    POS_LOSS = "pos_loss"
    LOSS_PLAN = "loss_plan"
    POS_PROFIT = "pos_profit"
    PROFIT_PLAN = "profit_plan"
    PROFIT_LOSS = "profit_loss"
    NORMAL_PLAN = "normal_plan"
    TRACK_PLAN = "track_plan"
    MOVING_PLAN = "moving_plan"


class PlanStatus(str, Enum):
    """Exchange trigger-order status. Only ``live`` orders protect a position."""
    LIVE = "live"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    NOT_TRIGGER = "not_trigger"
    FAIL_TRIGGER = "fail_trigger"


class CloseState(str, Enum):
    """States of a close attempt.

    REQUESTED -> EXCHANGE_CLOSE_SENT -> DB_UPDATED
    REQUESTED -> EXCHANGE_CLOSE_SENT -> DB_UPDATE_FAILED
    REQUESTED -> EXCHANGE_CLOSE_FAILED
    """
    REQUESTED = "REQUESTED"
    EXCHANGE_CLOSE_SENT = "EXCHANGE_CLOSE_SENT"
    EXCHANGE_CLOSE_FAILED = "EXCHANGE_CLOSE_FAILED"
    DB_UPDATED = "DB_UPDATED"
    DB_UPDATE_FAILED = "DB_UPDATE_FAILED"


class ChangeEventType(str, Enum):
    """Row change events delivered by the realtime bridge."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class GatewayCall(str, Enum):
    """Names of exchange gateway operations, used in error reporting."""
    TICKER = "ticker"
    PLAN_ORDERS = "plan_orders"
    POSITION = "position"
    ACCOUNT = "account"
    PLACE_ORDER = "place_order"
    FLASH_CLOSE = "flash_close"
    CANCEL_PLAN_ORDER = "cancel_plan_order"


class PnlSource(str, Enum):
    """Where a LivePosition's unrealized P&L came from."""
    EXCHANGE = "exchange"
    LOCAL = "local"
