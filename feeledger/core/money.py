"""Fixed-point money helpers. Every monetary value is a Decimal quantized to centavos."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(val) -> Decimal:
    """Coerce a Decimal, int, str or float into a centavo-exact Decimal (round half up)."""
    if val is None:
        return ZERO
    if not isinstance(val, Decimal):
        # str() keeps floats from leaking binary noise into the decimal value
        val = Decimal(str(val))
    return val.quantize(CENT, rounding=ROUND_HALF_UP)


def from_minor_units(centavos: int) -> Decimal:
    return (Decimal(centavos) / 100).quantize(CENT)


def to_minor_units(amount) -> int:
    return int(to_money(amount) * 100)


def money_sum(values: Iterable) -> Decimal:
    total = ZERO
    for v in values:
        total += to_money(v)
    return total


def percent_of(amount, percentage) -> Decimal:
    """`percentage` percent of `amount`, rounded half up to the centavo."""
    return to_money(to_money(amount) * Decimal(str(percentage)) / Decimal("100"))


def clamp_non_negative(amount) -> Decimal:
    return max(ZERO, to_money(amount))
