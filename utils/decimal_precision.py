#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

from utils.exceptions import InvalidAmount

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    USD_PRECISION = Decimal("0.01")  # 2 decimal places for USD and fees
    CRYPTO_PRECISION = Decimal("0.00000001")  # 8 decimal places for crypto
    LEDGER_PRECISION = Decimal("0.00000001")  # Stored bucket precision

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Convert any numeric value to a finite Decimal, raising InvalidAmount otherwise"""
        if value is None or isinstance(value, bool):
            raise InvalidAmount(f"Invalid amount in {context}: {value!r}")

        try:
            # Convert to string first to avoid float precision issues
            decimal_value = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as e:
            logger.error(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
            raise InvalidAmount(f"Invalid amount in {context}: {value!r}")

        if not decimal_value.is_finite():
            raise InvalidAmount(f"Amount must be finite in {context}: {value!r}")

        if abs(decimal_value) > Decimal("999999999999"):  # 999 billion limit
            logger.warning(f"Unusually large monetary value: {decimal_value} in context: {context}")

        return decimal_value

    @classmethod
    def validate_positive(cls, amount: Numeric, context: str = "amount") -> Decimal:
        """Validate that amount is finite and positive and return as Decimal"""
        amount_decimal = cls.to_decimal(amount, context)

        if amount_decimal <= 0:
            raise InvalidAmount(f"Amount must be positive in {context}: {amount_decimal}")

        return amount_decimal

    @classmethod
    def normalize(cls, amount) -> Decimal:
        """Normalize a stored bucket value, absorbing backend float noise"""
        if amount is None:
            return Decimal("0")
        return Decimal(str(amount)).quantize(cls.LEDGER_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_usd(cls, amount: Numeric) -> Decimal:
        """Quantize amount to USD precision (2 decimal places)"""
        return cls.to_decimal(amount, "USD").quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_crypto(cls, amount: Numeric) -> Decimal:
        """Quantize amount to crypto precision (8 decimal places)"""
        return cls.to_decimal(amount, "crypto").quantize(cls.CRYPTO_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def percent_of(cls, amount: Numeric, percent: Numeric) -> Decimal:
        """Percentage of amount rounded to cents, e.g. percent_of(100, 2.5) == 2.50"""
        amount_decimal = cls.to_decimal(amount, "percentage_amount")
        percent_decimal = cls.to_decimal(percent, "percentage_rate")
        return cls.quantize_usd(amount_decimal * percent_decimal / Decimal("100"))

    @classmethod
    def format_usd(cls, amount: Numeric) -> str:
        """Format amount as USD string with proper precision"""
        return f"${cls.quantize_usd(amount):,.2f}"
