"""Decimal helpers for monetary amounts and metered units."""

from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0")
TWO_PLACES = Decimal("0.01")


def round_money(value: Decimal | int | float | str) -> Decimal:
    """Round to two decimals, half away from zero."""
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)

