from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from grid_bot.connection.precision import to_decimal


class PriceStreamState(str, Enum):
    STOPPED = "STOPPED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    SUBSCRIBING = "SUBSCRIBING"
    SUBSCRIBED = "SUBSCRIBED"
    RECEIVING = "RECEIVING"
    STALE = "STALE"
    RECONNECTING = "RECONNECTING"
    ERROR = "ERROR"


class UserStreamState(str, Enum):
    STOPPED = "STOPPED"
    CREATING_LISTEN_KEY = "CREATING_LISTEN_KEY"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECEIVING = "RECEIVING"
    KEEP_ALIVE = "KEEP_ALIVE"
    RECONNECTING = "RECONNECTING"
    ERROR = "ERROR"


_PRICE_CONNECTED = {
    PriceStreamState.CONNECTED,
    PriceStreamState.SUBSCRIBING,
    PriceStreamState.SUBSCRIBED,
    PriceStreamState.RECEIVING,
    PriceStreamState.STALE,
}

_USER_CONNECTED = {
    UserStreamState.CONNECTED,
    UserStreamState.RECEIVING,
    UserStreamState.KEEP_ALIVE,
}


@dataclass(frozen=True)
class PriceStreamStatus:
    """Immutable snapshot published on every price stream transition."""

    state: PriceStreamState
    endpoint: str = ""
    stream_name: str = ""
    reconnect_count: int = 0
    last_message_at: Optional[float] = None
    last_error: Optional[str] = None
    detail: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.state in _PRICE_CONNECTED

    @property
    def is_receiving(self) -> bool:
        return self.state == PriceStreamState.RECEIVING


@dataclass(frozen=True)
class UserStreamStatus:
    """Immutable snapshot published on every user stream transition."""

    state: UserStreamState
    endpoint: str = ""
    reconnect_count: int = 0
    last_message_at: Optional[float] = None
    last_error: Optional[str] = None
    detail: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.state in _USER_CONNECTED

    @property
    def is_receiving(self) -> bool:
        return self.state in (UserStreamState.RECEIVING, UserStreamState.KEEP_ALIVE)


@dataclass(frozen=True)
class Ticker:
    bid: Optional[Decimal]
    ask: Optional[Decimal]
    received_at: float = 0.0


@dataclass(frozen=True)
class OrderUpdate:
    """Normalized ``executionReport`` event."""

    order_id: int
    client_order_id: str
    symbol: str
    side: str
    status: str
    order_type: str = ""
    time_in_force: str = ""
    price: Decimal = Decimal("0")
    orig_qty: Decimal = Decimal("0")
    executed_qty: Decimal = Decimal("0")
    last_fill_qty: Decimal = Decimal("0")
    last_fill_price: Decimal = Decimal("0")
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_execution_report(cls, payload: Dict[str, Any]) -> "OrderUpdate":
        status = payload.get("X") or ""
        client_id = payload.get("c") or ""
        original_client_id = payload.get("C") or ""
        if status == "CANCELED" and original_client_id:
            client_id = original_client_id
        return cls(
            order_id=int(payload.get("i") or 0),
            client_order_id=client_id,
            symbol=payload.get("s") or "",
            side=payload.get("S") or "",
            status=status,
            order_type=payload.get("o") or "",
            time_in_force=payload.get("f") or "",
            price=to_decimal(payload.get("p") or "0"),
            orig_qty=to_decimal(payload.get("q") or "0"),
            executed_qty=to_decimal(payload.get("z") or "0"),
            last_fill_qty=to_decimal(payload.get("l") or "0"),
            last_fill_price=to_decimal(payload.get("L") or "0"),
            raw=dict(payload),
        )


__all__ = [
    "OrderUpdate",
    "PriceStreamState",
    "PriceStreamStatus",
    "Ticker",
    "UserStreamState",
    "UserStreamStatus",
]
