"""
Fixed-point money helpers.

Amounts are ``Decimal`` quantized to two places inside the engine and
integer minor units (kobo, cents) at the gateway boundary.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, str, float]


def to_decimal(value: Number) -> Decimal:
    """Convert any accepted input to a 2-place Decimal."""
    if isinstance(value, float):
        # str() first so 0.1 becomes Decimal("0.1"), not its binary expansion
        value = str(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid money amount: {value!r}") from e


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Number) -> int:
    """Major units (Decimal) -> integer minor units; amount must be positive."""
    value = to_decimal(amount)
    if value <= 0:
        raise ValueError("Amount must be greater than 0")
    return int((value * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(minor: int) -> Decimal:
    return quantize(Decimal(minor) / 100)
