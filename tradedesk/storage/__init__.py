"""Storage layer: local persistence for position rows."""

from tradedesk.storage.position_store import InMemoryPositionStore

__all__ = [
    "InMemoryPositionStore",
]
