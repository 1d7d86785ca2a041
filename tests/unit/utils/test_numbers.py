"""Tests for numeric coercion helpers."""

import pytest

from tradedesk.utils.numbers import safe_div, to_float, to_price


class TestToFloat:
    """to_float never returns NaN or raises."""

    @pytest.mark.parametrize("value,expected", [
        ("101.5", 101.5),
        (" 2 ", 2.0),
        (3, 3.0),
        ("-0.25", -0.25),
        ("0", 0.0),
    ])
    def test_parses_numbers(self, value, expected):
        assert to_float(value) == expected

    @pytest.mark.parametrize("value", [None, "", "   ", "abc", "nan", "inf", True, {"x": 1}, [1]])
    def test_absent_values(self, value):
        assert to_float(value) is None


class TestToPrice:
    """Zero and negative prices count as absent."""

    def test_positive(self):
        assert to_price("95.5") == 95.5

    @pytest.mark.parametrize("value", ["0", 0, "-1", None, ""])
    def test_absent(self, value):
        assert to_price(value) is None


class TestSafeDiv:
    """Division with a zero guard."""

    def test_divides(self):
        assert safe_div(1.0, 4.0) == 0.25

    def test_zero_denominator(self):
        assert safe_div(5.0, 0.0) == 0.0
