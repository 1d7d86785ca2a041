"""Position reconciliation and live risk.

Classifies protective orders, overlays exchange state onto stored
positions, and aggregates portfolio risk.
"""
from .classifier import ClassifiedOrders, classify
from .metrics import aggregate_risk
from .reconciler import (
    ExchangeGateway,
    PositionStore,
    ReconciliationEngine,
    derive_live_position,
)

__all__ = [
    "ClassifiedOrders",
    "classify",
    "aggregate_risk",
    "ExchangeGateway",
    "PositionStore",
    "ReconciliationEngine",
    "derive_live_position",
]
