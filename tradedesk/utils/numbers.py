"""Numeric coercion for exchange and store payloads.

Exchange payloads carry numbers as strings ("0.0123"), empty strings,
or nothing at all. These helpers turn them into floats or None so the
rest of the engine never does arithmetic on NaN.
"""

import math
from typing import Any


def to_float(value: Any) -> float | None:
    """Parse a number, returning None for missing, blank, or non-finite input.

    Examples:
        >>> to_float("101.5")
        101.5
        >>> to_float("") is None
        True
        >>> to_float("abc") is None
        True
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def to_price(value: Any) -> float | None:
    """Parse a price. Zero and negative prices count as absent."""
    number = to_float(value)
    if number is None or number <= 0:
        return None
    return number


def safe_div(numerator: float, denominator: float) -> float:
    """Divide, returning 0.0 when the denominator is zero."""
    if not denominator:
        return 0.0
    return numerator / denominator
