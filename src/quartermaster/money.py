"""USDC conversion helpers using fixed 6-decimal base units."""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR


USDC_DECIMALS = 6
UNITS_PER_USDC = 1_000_000
_USDC_QUANT = Decimal("0.000001")


def amount_usdc_to_units(value: Decimal | float | int | str) -> int:
    """Convert spend amount to base units, rounding up (conservative)."""
    dec = Decimal(str(value)).quantize(_USDC_QUANT, rounding=ROUND_CEILING)
    return int(dec * UNITS_PER_USDC)


def limit_usdc_to_units(value: Decimal | float | int | str) -> int:
    """Convert a ceiling to base units, rounding down (conservative)."""
    dec = Decimal(str(value)).quantize(_USDC_QUANT, rounding=ROUND_FLOOR)
    return int(dec * UNITS_PER_USDC)


def units_to_usdc(value: int) -> Decimal:
    """Convert integer base units to Decimal USDC."""
    return (Decimal(value) / Decimal(UNITS_PER_USDC)).quantize(_USDC_QUANT)


def units_to_usdc_float(value: int) -> float:
    """Convert integer base units to float USDC (for display and JSON)."""
    return float(units_to_usdc(value))


def format_usdc(value: int) -> str:
    """Format base units the way audit lines show them, e.g. ``0.75USDC``."""
    return f"{units_to_usdc(value):.2f}USDC"


def plain_decimal(value: Decimal | int | str) -> str:
    """Render a number without exponent or trailing zeros (``200``, ``0.5``)."""
    dec = Decimal(str(value))
    if dec == dec.to_integral_value():
        return str(dec.quantize(Decimal(1)))
    return format(dec.normalize(), "f")
