# src/grid_bot/grid/catalog.py

from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from grid_bot.connection.models import ExchangeSymbolRules
from grid_bot.connection.precision import ceil_to_tick, to_decimal

_TOLERANCE_RELATIVE = Decimal("1e-10")
_TOLERANCE_ABSOLUTE = Decimal("1e-8")


class CatalogError(ValueError):
    """Raised when a ladder violates its ordering or uniqueness invariants."""


@dataclass(frozen=True)
class PriceLevel:
    index: int
    buy_price: Decimal
    next_sell_price: Optional[Decimal] = None


class PriceLadderCatalog:
    """
    Immutable, strictly increasing ladder of tick-aligned BUY prices.

    The paired SELL target of each level is the next level's BUY price, so a
    filled BUY is always resold exactly one rung higher.
    """

    def __init__(
        self,
        symbol: str,
        step_percent: Decimal,
        min_price: Decimal,
        max_price: Decimal,
        levels: Sequence[PriceLevel],
    ):
        self.symbol = symbol
        self.step_percent = to_decimal(step_percent)
        self.min_price = to_decimal(min_price)
        self.max_price = to_decimal(max_price)
        self._levels = tuple(levels)
        self._prices: List[Decimal] = [level.buy_price for level in self._levels]
        self._validate()
        self._by_price: Dict[Decimal, PriceLevel] = {level.buy_price: level for level in self._levels}

    def _validate(self) -> None:
        for position, level in enumerate(self._levels):
            if level.index != position:
                raise CatalogError(f"Level index {level.index} found at position {position}")
            if level.buy_price <= 0:
                raise CatalogError(f"Level {position} has non-positive price {level.buy_price}")
            if position and level.buy_price <= self._levels[position - 1].buy_price:
                raise CatalogError(
                    f"Level {position} price {level.buy_price} does not increase "
                    f"over {self._levels[position - 1].buy_price}"
                )

    @classmethod
    def build(
        cls,
        rules: ExchangeSymbolRules,
        symbol: str,
        step_percent: Decimal,
        min_price: Decimal,
        max_price: Decimal,
    ) -> "PriceLadderCatalog":
        step_percent = to_decimal(step_percent)
        min_price = to_decimal(min_price)
        max_price = to_decimal(max_price)
        if step_percent <= 0:
            raise ValueError("step_percent must be positive")
        if min_price > max_price:
            raise ValueError("min_price must not exceed max_price")

        tick = rules.tick_size
        precision = rules.price_precision
        # smallest representable advance when the venue reports no tick
        min_advance = tick if tick > 0 else Decimal(1).scaleb(-precision)
        growth = Decimal(1) + step_percent / Decimal(100)

        prices: List[Decimal] = []
        price = ceil_to_tick(min_price, tick, precision)
        while price <= max_price:
            prices.append(price)
            following = ceil_to_tick(price * growth, tick, precision)
            if following <= price:
                following = price + min_advance
            price = following

        levels = [
            PriceLevel(
                index=i,
                buy_price=p,
                next_sell_price=prices[i + 1] if i + 1 < len(prices) else None,
            )
            for i, p in enumerate(prices)
        ]
        return cls(symbol, step_percent, min_price, max_price, levels)

    @property
    def levels(self) -> Sequence[PriceLevel]:
        return self._levels

    def __len__(self) -> int:
        return len(self._levels)

    def matches(self, symbol: str, step_percent: Decimal, min_price: Decimal, max_price: Decimal) -> bool:
        return (
            self.symbol == symbol
            and self.step_percent == to_decimal(step_percent)
            and self.min_price == to_decimal(min_price)
            and self.max_price == to_decimal(max_price)
        )

    def levels_below(self, ask: Decimal, count: int) -> List[Decimal]:
        """Highest ``count`` BUY prices strictly below ``ask``, descending."""
        if count <= 0:
            return []
        top = bisect_left(self._prices, to_decimal(ask)) - 1
        if top < 0:
            return []
        bottom = max(-1, top - count)
        return [self._prices[i] for i in range(top, bottom, -1)]

    def paired_sell_for(self, buy_price: Decimal) -> Optional[Decimal]:
        buy_price = to_decimal(buy_price)
        level = self._by_price.get(buy_price)
        if level is None:
            level = next(
                (
                    candidate
                    for candidate in self._levels
                    if abs(candidate.buy_price - buy_price)
                    < candidate.buy_price * _TOLERANCE_RELATIVE + _TOLERANCE_ABSOLUTE
                ),
                None,
            )
        return level.next_sell_price if level is not None else None


__all__ = ["CatalogError", "PriceLadderCatalog", "PriceLevel"]
