"""Order quantity sizing against venue lot and notional filters."""

from __future__ import annotations

from decimal import Decimal

from grid_bot.connection.models import ExchangeSymbolRules
from grid_bot.connection.precision import ceil_to_step, floor_to_step, to_decimal, truncate


def compute_buy_quantity(price: Decimal, quote_per_level: Decimal, rules: ExchangeSymbolRules) -> Decimal:
    """Smallest step-aligned quantity that spends ``quote_per_level`` and clears venue minimums.

    The raw size is the largest of ``quote / price``, ``min_notional / price``
    and the step-floored ``min_qty``; it is ceiled to the step and truncated
    to the quantity precision. Rounding can still leave the notional a hair
    short, so whole steps are added until ``qty * price >= min_notional``.
    """

    price = to_decimal(price)
    quote_per_level = to_decimal(quote_per_level)
    if price <= 0:
        raise ValueError("price must be positive")

    step = rules.step_size
    precision = rules.quantity_precision

    min_step_qty = floor_to_step(rules.min_qty, step, precision)
    if min_step_qty <= 0:
        min_step_qty = rules.min_qty

    candidates = [quote_per_level / price, rules.min_notional / price, min_step_qty]
    qty = ceil_to_step(max(candidates), step, precision)
    qty = truncate(qty, precision)

    if step > 0:
        while qty * price < rules.min_notional:
            qty = truncate(qty + step, precision)
    return qty


def clamp_quote_per_level(value: Decimal, min_notional: Decimal, default: Decimal) -> Decimal:
    """Non-positive values fall back to ``default``; anything below ``min_notional`` is raised to it."""

    value = to_decimal(value)
    if value <= 0:
        value = to_decimal(default)
    return max(value, to_decimal(min_notional))


__all__ = ["clamp_quote_per_level", "compute_buy_quantity"]
