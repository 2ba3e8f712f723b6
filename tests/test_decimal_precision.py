"""
Regression Tests for Decimal Precision in Financial Operations
Tests monetary conversions and fee math so amounts never pass through float arithmetic
"""

import pytest
from decimal import Decimal

from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import InvalidAmount


class TestConversion:
    """Conversion of inbound values into Decimal"""

    def test_float_goes_through_string(self):
        """0.1 as a float must not become 0.1000000000000000055511..."""
        assert MonetaryDecimal.to_decimal(0.1) == Decimal("0.1")

    def test_strings_are_stripped(self):
        assert MonetaryDecimal.to_decimal(" 42.50 ") == Decimal("42.50")

    @pytest.mark.parametrize("value", [None, True, "abc", "NaN", "Infinity", "-inf", ""])
    def test_rejects_non_finite_and_garbage(self, value):
        with pytest.raises(InvalidAmount):
            MonetaryDecimal.to_decimal(value)

    @pytest.mark.parametrize("value", ["0", "-1", 0, Decimal("-0.01")])
    def test_validate_positive(self, value):
        with pytest.raises(InvalidAmount) as exc_info:
            MonetaryDecimal.validate_positive(value, "withdrawal")

        assert "withdrawal" in exc_info.value.message

    def test_validate_positive_returns_decimal(self):
        assert MonetaryDecimal.validate_positive("12.5") == Decimal("12.5")


class TestFees:
    """Percentage fees are rounded half-up to cents"""

    def test_transfer_fee(self):
        assert MonetaryDecimal.percent_of(100, Decimal("2.5")) == Decimal("2.50")

    def test_flight_fee_rounds_half_up(self):
        # 1.8% of 12.50 is 0.225
        assert MonetaryDecimal.percent_of("12.50", "1.8") == Decimal("0.23")

    def test_whole_percent(self):
        assert MonetaryDecimal.percent_of("50", "9") == Decimal("4.50")


class TestNormalizeAndFormat:

    def test_normalize_absorbs_float_noise(self):
        assert MonetaryDecimal.normalize(96.4) == Decimal("96.40000000")
        assert MonetaryDecimal.normalize(0.1 + 0.2) == Decimal("0.30000000")

    def test_normalize_none_is_zero(self):
        assert MonetaryDecimal.normalize(None) == Decimal("0")

    def test_quantize_crypto(self):
        assert MonetaryDecimal.quantize_crypto("0.123456789") == Decimal("0.12345679")

    def test_format_usd(self):
        assert MonetaryDecimal.format_usd("1234.5") == "$1,234.50"
        assert MonetaryDecimal.format_usd(Decimal("0.005")) == "$0.01"
