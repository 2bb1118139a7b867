"""Exact integer encoding of real-valued quantities.

A quantity `x` is stored as `(value, multiplier)` with `value = x * multiplier`
and multiplier the smallest of 1, 100, 1000 that makes the product integral.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Union

MULTIPLIERS = (1, 100, 1000)

Number = Union[int, float, Decimal, str]


def _to_decimal(x: Number) -> Decimal:
    if isinstance(x, Decimal):
        return x
    if isinstance(x, bool):
        raise TypeError("Booleans are not quantities")
    try:
        # str() keeps the shortest repr of a float (0.1 -> "0.1").
        return Decimal(str(x))
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {x!r}") from exc


def encode_value(x: Number | None) -> tuple[int | None, int | None]:
    """Encode `x` as an exact (value, multiplier) pair."""
    if x is None:
        return None, None
    amount = _to_decimal(x)
    if not amount.is_finite():
        raise ValueError(f"Not a finite number: {x!r}")
    for multiplier in MULTIPLIERS:
        scaled = amount * multiplier
        if scaled == scaled.to_integral_value():
            return int(scaled), multiplier
    # More than three decimals: keep three.
    scaled = (amount * MULTIPLIERS[-1]).quantize(Decimal(1), rounding=ROUND_HALF_EVEN)
    return int(scaled), MULTIPLIERS[-1]


def decode_decimal(value: int | None, multiplier: int | None) -> Decimal | None:
    if value is None:
        return None
    return Decimal(int(value)) / Decimal(int(multiplier or 1))


def decode_value(value: int | None, multiplier: int | None) -> float | None:
    """Inverse of `encode_value` for display and arithmetic."""
    if value is None:
        return None
    return int(value) / int(multiplier or 1)


def encode_minor_units(amount_minor: int, *, exponent: int = 2) -> tuple[int, int]:
    """Encode an amount already expressed in minor units (e.g. pence).

    Banks report 1234 meaning 12.34; that is value 1234 at multiplier 100.
    """
    return int(amount_minor), 10 ** int(exponent)
