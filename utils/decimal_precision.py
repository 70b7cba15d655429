#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage for fiat amounts and on-chain base units
"""

import logging
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, getcontext
from typing import Optional, Union

logger = logging.getLogger(__name__)

# Wide enough for 18-decimal token amounts in base units
getcontext().prec = 60

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    USD_PRECISION = Decimal("0.01")  # 2 decimal places for fiat
    RATE_PRECISION = Decimal("0.00000001")  # 8 decimal places for exchange rates

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Safely convert any numeric value to Decimal; unparseable input becomes 0"""
        if value is None:
            return Decimal("0")

        if isinstance(value, Decimal):
            return value

        try:
            # Convert to string first to avoid float precision issues
            decimal_value = Decimal(str(value))
        except Exception as e:
            logger.error(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
            return Decimal("0")

        if not decimal_value.is_finite():
            logger.error(f"Non-finite value {value!r} rejected in context {context}")
            return Decimal("0")

        return decimal_value

    @classmethod
    def quantize_usd(cls, amount: Numeric) -> Decimal:
        """Quantize amount to fiat precision (2 decimal places)"""
        return cls.to_decimal(amount, "USD").quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_rate(cls, rate: Numeric) -> Decimal:
        """Quantize exchange rate to high precision (8 decimal places)"""
        return cls.to_decimal(rate, "exchange_rate").quantize(cls.RATE_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def multiply_precise(
        cls,
        amount: Numeric,
        rate: Numeric,
        result_precision: Optional[Decimal] = None,
    ) -> Decimal:
        """Multiply two values with proper precision handling"""
        result = cls.to_decimal(amount, "multiply_amount") * cls.to_decimal(rate, "multiply_rate")
        return result.quantize(result_precision or cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def validate_positive(cls, amount: Numeric, context: str = "amount") -> Decimal:
        """Validate that amount is positive and return as Decimal"""
        amount_decimal = cls.to_decimal(amount, context)
        if amount_decimal <= 0:
            raise ValueError(f"Amount must be positive in context {context}: {amount_decimal}")
        return amount_decimal


def to_base_units(amount: Numeric, decimals: int) -> int:
    """
    Scale a token amount to integer base units (e.g. ETH -> wei).

    Raises ValueError if the amount has more fractional digits than the token
    supports; silently truncating value would under-pay.
    """
    amount_decimal = MonetaryDecimal.to_decimal(amount, "base_units")
    scaled = amount_decimal.scaleb(decimals)
    integral = scaled.to_integral_value(rounding=ROUND_DOWN)
    if integral != scaled:
        raise ValueError(f"{amount_decimal} has more than {decimals} decimal places")
    return int(integral)


def from_base_units(units: int, decimals: int) -> Decimal:
    """Inverse of to_base_units"""
    return Decimal(int(units)).scaleb(-decimals)


def format_token_amount(units: int, decimals: int) -> str:
    """Human-readable token amount without trailing zeros"""
    formatted = f"{from_base_units(units, decimals):f}"
    if "." in formatted:
        formatted = formatted.rstrip("0").rstrip(".")
    return formatted or "0"
