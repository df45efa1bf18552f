"""Wallet valuation in the quote asset and P&L against the first valuation."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from grid_bot.connection.models import Balance


@dataclass(frozen=True)
class WalletValuation:
    quote_total: Decimal
    base_total: Decimal
    ask: Decimal
    total_value: Decimal
    baseline_value: Optional[Decimal]
    pnl_percent: Optional[Decimal]


class WalletTracker:
    """Values ``quote + base * ask``; the first positive valuation becomes the P&L baseline."""

    def __init__(self, base_asset: str, quote_asset: str) -> None:
        self.base_asset = base_asset
        self.quote_asset = quote_asset
        self._lock = threading.Lock()
        self._baseline: Optional[Decimal] = None
        self._last: Optional[WalletValuation] = None

    @property
    def baseline(self) -> Optional[Decimal]:
        with self._lock:
            return self._baseline

    @property
    def last(self) -> Optional[WalletValuation]:
        with self._lock:
            return self._last

    def reset_baseline(self) -> None:
        with self._lock:
            self._baseline = None

    def update(self, balances: Mapping[str, Balance], ask: Decimal) -> WalletValuation:
        quote = balances.get(self.quote_asset)
        base = balances.get(self.base_asset)
        quote_total = quote.total if quote else Decimal("0")
        base_total = base.total if base else Decimal("0")
        total = quote_total + base_total * ask

        with self._lock:
            if self._baseline is None and total > 0:
                self._baseline = total
            baseline = self._baseline
            pnl = None
            if baseline:
                pnl = (total - baseline) / baseline * Decimal(100)
            valuation = WalletValuation(
                quote_total=quote_total,
                base_total=base_total,
                ask=ask,
                total_value=total,
                baseline_value=baseline,
                pnl_percent=pnl,
            )
            self._last = valuation
        return valuation


__all__ = ["WalletTracker", "WalletValuation"]
