# src/grid_bot/engine/order_book.py

import threading
import time
from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set

from grid_bot.connection.models import BUY, OPEN_STATUSES, SELL, OpenOrder, OrderAck
from grid_bot.streams.models import OrderUpdate

_CLOSED_MEMORY = 1000


@dataclass(frozen=True)
class InFlightReservation:
    price: Decimal
    reserved_at: float


class OrderBook:
    """
    Local view of the symbol's open orders plus BUY prices whose placement is
    in flight. Both live behind one lock so "is this price covered?" and
    "reserve it" happen atomically.
    """

    def __init__(self, symbol: str, monotonic: Callable[[], float] = time.monotonic):
        self.symbol = symbol
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._orders: Dict[int, OpenOrder] = {}
        self._in_flight: Dict[Decimal, InFlightReservation] = {}
        self._closed_ids: Set[int] = set()
        self._closed_order: Deque[int] = deque()

    # ------------------------------------------------------------------
    # reservations
    # ------------------------------------------------------------------

    def try_reserve(self, price: Decimal) -> bool:
        """Reserves ``price`` unless an open BUY or another reservation already covers it."""
        with self._lock:
            if price in self._in_flight:
                return False
            if any(o.side == BUY and o.price == price for o in self._orders.values()):
                return False
            self._in_flight[price] = InFlightReservation(price=price, reserved_at=self._monotonic())
            return True

    def release(self, price: Decimal) -> bool:
        with self._lock:
            return self._in_flight.pop(price, None) is not None

    def is_reserved(self, price: Decimal) -> bool:
        with self._lock:
            return price in self._in_flight

    def reservations(self) -> List[InFlightReservation]:
        with self._lock:
            return list(self._in_flight.values())

    def expire_reservations(self, ttl_seconds: float) -> List[Decimal]:
        """Drops reservations older than ``ttl_seconds``; returns their prices."""
        cutoff = self._monotonic() - ttl_seconds
        with self._lock:
            expired = [p for p, r in self._in_flight.items() if r.reserved_at <= cutoff]
            for price in expired:
                del self._in_flight[price]
        return expired

    # ------------------------------------------------------------------
    # open orders
    # ------------------------------------------------------------------

    def replace_all(self, orders: Iterable[OpenOrder]) -> None:
        """Replaces the open view with a REST snapshot."""
        fresh = {o.order_id: o for o in orders if o.symbol == self.symbol and o.is_open}
        with self._lock:
            self._orders = fresh

    def upsert(self, order: OpenOrder) -> None:
        with self._lock:
            self._orders[order.order_id] = order

    def remove(self, order_id: int) -> Optional[OpenOrder]:
        with self._lock:
            return self._orders.pop(order_id, None)

    def apply_update(self, update: OrderUpdate, *, release_reservation: bool = False) -> None:
        """Upserts NEW/PARTIALLY_FILLED orders and drops every other status.

        With ``release_reservation`` the in-flight reservation at the update's
        price is dropped in the same critical section, so the price is never
        seen as uncovered between the two steps.
        """
        with self._lock:
            if update.status in OPEN_STATUSES:
                if update.order_id not in self._closed_ids:
                    self._orders[update.order_id] = OpenOrder(
                        order_id=update.order_id,
                        client_order_id=update.client_order_id,
                        symbol=update.symbol,
                        side=update.side,
                        status=update.status,
                        price=update.price,
                        orig_qty=update.orig_qty,
                        executed_qty=update.executed_qty,
                        order_type=update.order_type or "LIMIT",
                        time_in_force=update.time_in_force or "GTC",
                    )
            else:
                self._orders.pop(update.order_id, None)
                self._remember_closed(update.order_id)
            if release_reservation:
                self._in_flight.pop(update.price, None)

    def record_placement(self, ack: OrderAck, reserved_price: Optional[Decimal] = None) -> None:
        """Records an acknowledged placement; drops the BUY reservation at
        ``reserved_price`` in the same critical section.

        An order the stream already reported closed is not resurrected.
        """
        status = ack.status or "NEW"
        with self._lock:
            if status in OPEN_STATUSES and ack.order_id not in self._closed_ids:
                self._orders.setdefault(
                    ack.order_id,
                    OpenOrder(
                        order_id=ack.order_id,
                        client_order_id=ack.client_order_id,
                        symbol=ack.symbol,
                        side=ack.side,
                        status=status,
                        price=ack.price,
                        orig_qty=ack.orig_qty,
                        executed_qty=ack.executed_qty,
                    ),
                )
            if reserved_price is not None:
                self._in_flight.pop(reserved_price, None)

    def _remember_closed(self, order_id: int) -> None:
        if order_id in self._closed_ids:
            return
        self._closed_ids.add(order_id)
        self._closed_order.append(order_id)
        if len(self._closed_order) > _CLOSED_MEMORY:
            self._closed_ids.discard(self._closed_order.popleft())

    def open_orders(self, side: Optional[str] = None) -> List[OpenOrder]:
        with self._lock:
            orders = list(self._orders.values())
        if side:
            orders = [o for o in orders if o.side == side]
        return orders

    def open_buys(self) -> List[OpenOrder]:
        return self.open_orders(BUY)

    def open_sells(self) -> List[OpenOrder]:
        return self.open_orders(SELL)

    def open_sell_count(self) -> int:
        return len(self.open_sells())


__all__ = ["InFlightReservation", "OrderBook"]
