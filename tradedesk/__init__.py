"""tradedesk: position reconciliation and live P&L for leveraged futures.

Merges stored position rows with live exchange state, repairs drifted
entry prices, aggregates portfolio risk, and closes positions on the
exchange and in the store in the right order.
"""

__version__ = "0.1.0"
