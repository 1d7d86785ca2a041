"""tradedesk utilities: logging and numeric coercion helpers."""

from tradedesk.utils.logging import configure_logging, get_logger, log_context
from tradedesk.utils.numbers import safe_div, to_float, to_price

__all__ = [
    "configure_logging",
    "get_logger",
    "log_context",
    "safe_div",
    "to_float",
    "to_price",
]
