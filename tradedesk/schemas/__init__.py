"""tradedesk schemas: persisted rows, exchange snapshots, derived views."""

from tradedesk.schemas.enums import (
    ChangeEventType,
    CloseState,
    GatewayCall,
    PlanStatus,
    PlanType,
    PnlSource,
    PositionSide,
    PositionStatus,
)
from tradedesk.schemas.events import ChangeEvent
from tradedesk.schemas.exchange import (
    AccountSnapshot,
    ExchangePositionSnapshot,
    ExchangeSnapshot,
    GatewayFailure,
    GatewayOk,
    GatewayResult,
    RawOrder,
    TickerSnapshot,
)
from tradedesk.schemas.live import (
    CloseResult,
    LivePosition,
    PortfolioRisk,
    ReconciliationReport,
)
from tradedesk.schemas.position import Position, TakeProfitLevel, close_fields
from tradedesk.schemas.stats import GroupStat, GroupSummary, TradingStats

__all__ = [
    # Enums
    "ChangeEventType",
    "CloseState",
    "GatewayCall",
    "PlanStatus",
    "PlanType",
    "PnlSource",
    "PositionSide",
    "PositionStatus",
    # Store rows
    "Position",
    "TakeProfitLevel",
    "close_fields",
    "ChangeEvent",
    # Exchange
    "AccountSnapshot",
    "ExchangePositionSnapshot",
    "ExchangeSnapshot",
    "GatewayFailure",
    "GatewayOk",
    "GatewayResult",
    "RawOrder",
    "TickerSnapshot",
    # Derived
    "CloseResult",
    "LivePosition",
    "PortfolioRisk",
    "ReconciliationReport",
    # Stats
    "GroupStat",
    "GroupSummary",
    "TradingStats",
]
