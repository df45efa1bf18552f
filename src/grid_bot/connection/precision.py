"""Exact price/quantity alignment helpers for venue tick and step sizes."""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_DOWN, ROUND_FLOOR, Decimal
from typing import Union

DEFAULT_PRECISION = 8

Number = Union[Decimal, str, int]


def to_decimal(value: Number | float) -> Decimal:
    """Convert venue payload values to Decimal without float artefacts."""

    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def precision_from_unit(unit: str) -> int:
    """Number of decimals implied by a unit string such as ``"0.01000000"``.

    Trailing zeros are ignored, so ``"0.01000000"`` has precision 2 and
    ``"1.00000000"`` has precision 0. Blank strings fall back to 8.
    """

    if unit is None or not str(unit).strip():
        return DEFAULT_PRECISION
    text = str(unit).strip()
    if "." not in text:
        return 0
    text = text.rstrip("0").rstrip(".")
    dot = text.find(".")
    return 0 if dot < 0 else len(text) - dot - 1


def truncate(value: Decimal, precision: int) -> Decimal:
    """Truncate toward zero to ``precision`` decimals."""

    exponent = Decimal(1).scaleb(-precision)
    return value.quantize(exponent, rounding=ROUND_DOWN)


def floor_to_unit(value: Decimal, unit: Decimal, precision: int) -> Decimal:
    if unit <= 0:
        return truncate(value, precision)
    units = (value / unit).to_integral_value(rounding=ROUND_FLOOR)
    return truncate(units * unit, precision)


def ceil_to_unit(value: Decimal, unit: Decimal, precision: int) -> Decimal:
    if unit <= 0:
        return truncate(value, precision)
    units = (value / unit).to_integral_value(rounding=ROUND_CEILING)
    return truncate(units * unit, precision)


# Named aliases keep call sites readable: ticks are for prices, steps for quantities.
floor_to_tick = floor_to_unit
ceil_to_tick = ceil_to_unit
floor_to_step = floor_to_unit
ceil_to_step = ceil_to_unit


def format_decimal(value: Decimal) -> str:
    """Render a Decimal in plain notation (no exponent) for query strings."""

    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


__all__ = [
    "DEFAULT_PRECISION",
    "ceil_to_step",
    "ceil_to_tick",
    "ceil_to_unit",
    "floor_to_step",
    "floor_to_tick",
    "floor_to_unit",
    "format_decimal",
    "precision_from_unit",
    "to_decimal",
    "truncate",
]
