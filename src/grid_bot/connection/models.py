from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from .precision import DEFAULT_PRECISION, precision_from_unit, to_decimal

BUY = "BUY"
SELL = "SELL"

OPEN_STATUSES = frozenset({"NEW", "PARTIALLY_FILLED"})
TERMINAL_STATUSES = frozenset({"FILLED", "CANCELED", "REJECTED", "EXPIRED"})


@dataclass(frozen=True)
class ExchangeSymbolRules:
    symbol: str
    status: str = "TRADING"
    base_asset: str = ""
    quote_asset: str = ""
    tick_size: Decimal = Decimal("0")
    step_size: Decimal = Decimal("0")
    min_qty: Decimal = Decimal("0")
    min_notional: Decimal = Decimal("0")
    price_precision: int = DEFAULT_PRECISION
    quantity_precision: int = DEFAULT_PRECISION

    @classmethod
    def from_exchange_info(cls, payload: Dict[str, Any]) -> "ExchangeSymbolRules":
        """Build rules from one entry of ``exchangeInfo.symbols``."""

        fields: Dict[str, Any] = {}
        for flt in payload.get("filters") or []:
            filter_type = flt.get("filterType")
            if filter_type == "LOT_SIZE":
                step = str(flt.get("stepSize") or "0")
                fields["step_size"] = to_decimal(step)
                fields["min_qty"] = to_decimal(flt.get("minQty") or "0")
                fields["quantity_precision"] = precision_from_unit(step)
            elif filter_type == "PRICE_FILTER":
                tick = str(flt.get("tickSize") or "0")
                fields["tick_size"] = to_decimal(tick)
                fields["price_precision"] = precision_from_unit(tick)
            elif filter_type in ("MIN_NOTIONAL", "NOTIONAL"):
                fields["min_notional"] = to_decimal(flt.get("minNotional") or "0")

        return cls(
            symbol=payload.get("symbol", ""),
            status=payload.get("status") or "TRADING",
            base_asset=payload.get("baseAsset") or "",
            quote_asset=payload.get("quoteAsset") or "",
            **fields,
        )


@dataclass(frozen=True)
class OrderAck:
    order_id: int
    client_order_id: str
    symbol: str
    side: str
    status: str
    price: Decimal
    orig_qty: Decimal
    executed_qty: Decimal


@dataclass
class OpenOrder:
    order_id: int
    client_order_id: str
    symbol: str
    side: str
    status: str
    price: Decimal
    orig_qty: Decimal
    executed_qty: Decimal = Decimal("0")
    order_type: str = "LIMIT"
    time_in_force: str = "GTC"

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "OpenOrder":
        return cls(
            order_id=int(payload["orderId"]),
            client_order_id=payload.get("clientOrderId") or "",
            symbol=payload.get("symbol") or "",
            side=payload.get("side") or "",
            status=payload.get("status") or "NEW",
            price=to_decimal(payload.get("price") or "0"),
            orig_qty=to_decimal(payload.get("origQty") or "0"),
            executed_qty=to_decimal(payload.get("executedQty") or "0"),
            order_type=payload.get("type") or "LIMIT",
            time_in_force=payload.get("timeInForce") or "GTC",
        )


@dataclass(frozen=True)
class Balance:
    asset: str
    free: Decimal = Decimal("0")
    locked: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.free + self.locked


def parse_order_ack(
    payload: Dict[str, Any],
    *,
    symbol: str,
    side: str,
    price: Optional[Decimal] = None,
    quantity: Optional[Decimal] = None,
) -> OrderAck:
    """Normalize an order placement response.

    When the caller already knows the rounded price/quantity it submitted,
    those take precedence over the echoed strings.
    """

    return OrderAck(
        order_id=int(payload["orderId"]),
        client_order_id=payload.get("clientOrderId") or "",
        symbol=payload.get("symbol") or symbol,
        side=payload.get("side") or side,
        status=payload.get("status") or "",
        price=price if price is not None else to_decimal(payload.get("price") or "0"),
        orig_qty=quantity if quantity is not None else to_decimal(payload.get("origQty") or "0"),
        executed_qty=to_decimal(payload.get("executedQty") or "0"),
    )


__all__ = [
    "BUY",
    "SELL",
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
    "Balance",
    "ExchangeSymbolRules",
    "OpenOrder",
    "OrderAck",
    "parse_order_ack",
]
