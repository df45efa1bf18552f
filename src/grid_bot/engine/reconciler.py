# src/grid_bot/engine/reconciler.py

import logging
import threading
import time
from collections import deque
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Deque, Dict, List, Optional, Set

from grid_bot.config_models import GridConfig
from grid_bot.connection.exceptions import ExchangeApiError, ExchangeError, LocalValidationError
from grid_bot.connection.models import BUY, SELL, ExchangeSymbolRules, OpenOrder
from grid_bot.connection.precision import ceil_to_tick, format_decimal, to_decimal
from grid_bot.connection.rest_client import BinanceSpotClient
from grid_bot.grid.catalog import PriceLadderCatalog
from grid_bot.logging_config import structured_log_extra
from grid_bot.metrics import EngineMetrics
from grid_bot.streams.models import OrderUpdate, Ticker

from .order_book import OrderBook
from .sizing import clamp_quote_per_level, compute_buy_quantity

logger = logging.getLogger(__name__)

DEFAULT_QUOTE_PER_LEVEL = Decimal("10")
RELEASING_STATUSES = frozenset({"NEW", "CANCELED", "REJECTED"})
_FILLED_MEMORY = 1000


def make_client_id(prefix: str, price: Decimal, now_ns: Optional[int] = None) -> str:
    """``<prefix>_<price digits>_<suffix>``, e.g. ``GBUY_60012_48213``."""
    digits = format_decimal(price).replace(".", "")
    ticks = (now_ns if now_ns is not None else time.time_ns()) // 100
    return f"{prefix}_{digits}_{ticks % 100000}"


@dataclass
class PassSummary:
    ask: Optional[Decimal] = None
    desired_count: int = 0
    desired_prices: List[Decimal] = field(default_factory=list)
    placed: List[Decimal] = field(default_factory=list)
    cancelled: List[int] = field(default_factory=list)
    expired_reservations: List[Decimal] = field(default_factory=list)


class ReconciliationEngine:
    """Keeps the BUY ladder below the ask in line with the catalog.

    Each pass computes the desired BUY prices (``target_buy_count`` minus
    open SELLs, taken from the catalog just below the ask), cancels duplicate
    and excess BUYs, and places the missing ones. A price is reserved in the
    :class:`OrderBook` before its placement request so concurrent passes can
    never place twice at the same level. The acknowledged order replaces its
    reservation in one step; a failed placement just drops it.

    Filled BUYs are answered with a SELL one ladder step higher. SELL
    placement runs on ``executor`` so the stream thread is never blocked on
    REST.
    """

    def __init__(
        self,
        client: BinanceSpotClient,
        catalog: PriceLadderCatalog,
        rules: ExchangeSymbolRules,
        config: Optional[GridConfig] = None,
        *,
        metrics: Optional[EngineMetrics] = None,
        order_book: Optional[OrderBook] = None,
        price_source: Optional[Callable[[], Optional[Ticker]]] = None,
        executor: Optional[Executor] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.catalog = catalog
        self.rules = rules
        self.config = config or GridConfig(symbol=catalog.symbol)
        self.symbol = self.config.symbol
        self.metrics = metrics or EngineMetrics()
        self.order_book = order_book or OrderBook(self.symbol, monotonic=monotonic)
        self._price_source = price_source
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="grid-bot-sell")
        self._monotonic = monotonic

        self.quote_per_level = clamp_quote_per_level(
            self.config.quote_per_level, rules.min_notional, DEFAULT_QUOTE_PER_LEVEL
        )

        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._ask_lock = threading.Lock()
        self._cached_ask: Optional[Decimal] = None
        self._cached_ask_at: Optional[float] = None
        self._last_snapshot_at: Optional[float] = None

        self._filled_lock = threading.Lock()
        self._filled_ids: Set[int] = set()
        self._filled_order: Deque[int] = deque()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            logger.warning("Reconciliation engine already running", extra=structured_log_extra(event="engine_already_running", symbol=self.symbol))
            return
        self._stop_event.clear()
        self._wake_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="grid-bot-engine", daemon=True)
        self._thread.start()
        logger.info("Reconciliation engine started", extra=structured_log_extra(event="engine_started", symbol=self.symbol))

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Reconciliation engine stopped", extra=structured_log_extra(event="engine_stopped", symbol=self.symbol))

    def close(self) -> None:
        self.stop()
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    def wake(self) -> None:
        """Runs the next pass now instead of after the loop interval."""
        self._wake_event.set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_pass()
            except Exception as exc:
                self.metrics.record_error(str(exc))
                logger.exception(
                    "Reconciliation pass failed",
                    extra=structured_log_extra(event="engine_pass_error", symbol=self.symbol, error=str(exc)),
                )
            self._wake_event.wait(self.config.loop_interval_sec)
            self._wake_event.clear()

    # ------------------------------------------------------------------
    # inputs
    # ------------------------------------------------------------------

    def set_quote_per_level(self, value: Decimal) -> Decimal:
        """Applies a new quote amount per level, raised to the venue min notional."""
        self.quote_per_level = clamp_quote_per_level(value, self.rules.min_notional, DEFAULT_QUOTE_PER_LEVEL)
        logger.info(
            "Quote per level updated",
            extra=structured_log_extra(
                event="quote_per_level_updated", symbol=self.symbol, quote_per_level=self.quote_per_level
            ),
        )
        self.wake()
        return self.quote_per_level

    def current_ask(self) -> Decimal:
        """Streamed ask when fresh, else a REST ask cached for ``ask_max_age_sec``."""
        now = self._monotonic()
        max_age = self.config.ask_max_age_sec
        ticker = self._price_source() if self._price_source else None
        if ticker is not None and ticker.ask and now - ticker.received_at < max_age:
            return ticker.ask

        with self._ask_lock:
            if self._cached_ask is not None and self._cached_ask_at is not None and now - self._cached_ask_at < max_age:
                return self._cached_ask

        ask = self.client.get_ask_price(self.symbol)
        with self._ask_lock:
            self._cached_ask = ask
            self._cached_ask_at = now
        return ask

    def refresh_open_orders(self) -> List[OpenOrder]:
        """Replaces the local open-order view with a REST snapshot."""
        orders = self.client.list_open_orders(self.symbol)
        self.order_book.replace_all(orders)
        self._last_snapshot_at = self._monotonic()
        logger.info(
            "Open orders refreshed",
            extra=structured_log_extra(event="open_orders_refreshed", symbol=self.symbol, count=len(orders)),
        )
        return orders

    def on_order_update(self, update: OrderUpdate) -> None:
        if update.symbol != self.symbol:
            return

        releases = update.side == BUY and update.status in RELEASING_STATUSES
        self.order_book.apply_update(update, release_reservation=releases)

        if update.side == BUY and update.status == "FILLED" and self._first_fill(update.order_id):
            self.metrics.record_fill()
            logger.info(
                "BUY filled",
                extra=structured_log_extra(
                    event="buy_filled",
                    symbol=self.symbol,
                    order_id=update.order_id,
                    client_order_id=update.client_order_id,
                    side=BUY,
                    price=update.price,
                    quantity=update.executed_qty,
                ),
            )
            self._executor.submit(self.place_sell_for_fill, update.price, update.executed_qty)

    def _first_fill(self, order_id: int) -> bool:
        with self._filled_lock:
            if order_id in self._filled_ids:
                return False
            self._filled_ids.add(order_id)
            self._filled_order.append(order_id)
            if len(self._filled_order) > _FILLED_MEMORY:
                self._filled_ids.discard(self._filled_order.popleft())
            return True

    # ------------------------------------------------------------------
    # SELL on fill
    # ------------------------------------------------------------------

    def sell_price_for(self, buy_price: Decimal) -> Decimal:
        paired = self.catalog.paired_sell_for(buy_price)
        if paired is not None:
            return paired
        fallback = ceil_to_tick(
            to_decimal(buy_price) * (Decimal(1) + self.catalog.step_percent / Decimal(100)),
            self.rules.tick_size,
            self.rules.price_precision,
        )
        logger.warning(
            "Filled price not in catalog; using step fallback",
            extra=structured_log_extra(
                event="catalog_miss", symbol=self.symbol, price=buy_price, sell_price=fallback
            ),
        )
        return fallback

    def place_sell_for_fill(self, buy_price: Decimal, quantity: Decimal) -> Optional[Decimal]:
        sell_price = self.sell_price_for(buy_price)
        client_id = make_client_id("GSELL", sell_price)
        try:
            ack = self.client.place_limit_order(
                self.symbol,
                SELL,
                sell_price,
                quantity,
                self.rules,
                self.config.time_in_force,
                client_id=client_id,
            )
        except ExchangeError as exc:
            self.metrics.record_placement_failure(f"SELL {sell_price}: {exc}")
            logger.error(
                "SELL placement failed",
                extra=structured_log_extra(
                    event="sell_place_error",
                    symbol=self.symbol,
                    client_order_id=client_id,
                    side=SELL,
                    price=sell_price,
                    error=str(exc),
                ),
            )
            return None

        self.order_book.record_placement(ack)
        self.metrics.record_sell_placed()
        logger.info(
            "SELL placed",
            extra=structured_log_extra(
                event="sell_placed",
                symbol=self.symbol,
                order_id=ack.order_id,
                client_order_id=client_id,
                side=SELL,
                price=sell_price,
                quantity=ack.orig_qty,
            ),
        )
        return sell_price

    # ------------------------------------------------------------------
    # reconciliation pass
    # ------------------------------------------------------------------

    def _snapshot_due(self) -> bool:
        interval = self.config.snapshot_interval_sec
        if interval <= 0 or self._last_snapshot_at is None:
            return False
        return self._monotonic() - self._last_snapshot_at >= interval

    def run_pass(self) -> PassSummary:
        summary = PassSummary()
        self.metrics.record_pass()

        if self._snapshot_due():
            self.refresh_open_orders()

        summary.expired_reservations = self.order_book.expire_reservations(self.config.reservation_ttl_sec)
        if summary.expired_reservations:
            logger.warning(
                "Released stale reservations",
                extra=structured_log_extra(
                    event="reservations_expired", symbol=self.symbol, prices=summary.expired_reservations
                ),
            )

        ask = self.current_ask()
        summary.ask = ask
        if ask <= 0:
            logger.warning("No usable ask price; skipping pass", extra=structured_log_extra(event="engine_no_ask", symbol=self.symbol))
            return summary

        summary.desired_count = max(0, self.config.target_buy_count - self.order_book.open_sell_count())
        summary.desired_prices = self.catalog.levels_below(ask, summary.desired_count)

        summary.cancelled.extend(self._cancel_duplicate_buys())

        open_buys = sorted(self.order_book.open_buys(), key=lambda o: o.price, reverse=True)
        if len(open_buys) > summary.desired_count:
            summary.cancelled.extend(self._cancel_excess(open_buys, summary))
            return summary

        summary.placed.extend(self._place_missing(summary.desired_prices))
        return summary

    def _cancel_duplicate_buys(self) -> List[int]:
        by_price: Dict[Decimal, List[OpenOrder]] = {}
        for order in self.order_book.open_buys():
            by_price.setdefault(order.price, []).append(order)

        cancelled = []
        for orders in by_price.values():
            if len(orders) < 2:
                continue
            keep = min(orders, key=lambda o: o.order_id)
            for extra in orders:
                if extra.order_id != keep.order_id and self._cancel(extra, "duplicate"):
                    cancelled.append(extra.order_id)
        return cancelled

    def _cancel_excess(self, open_buys: List[OpenOrder], summary: PassSummary) -> List[int]:
        to_cancel = len(open_buys) - summary.desired_count
        desired = set(summary.desired_prices)
        victims = [o for o in open_buys if o.price not in desired]
        if len(victims) < to_cancel:
            farthest = sorted((o for o in open_buys if o.price in desired), key=lambda o: o.price)
            victims.extend(farthest[: to_cancel - len(victims)])

        return [o.order_id for o in victims[:to_cancel] if self._cancel(o, "excess")]

    def _place_missing(self, desired_prices: List[Decimal]) -> List[Decimal]:
        placed = []
        for price in desired_prices:
            if self._stop_event.is_set():
                break
            if not self.order_book.try_reserve(price):
                continue
            if self._place_buy(price):
                placed.append(price)
            if self._stop_event.wait(self.config.placement_delay_sec):
                break
        return placed

    def _place_buy(self, price: Decimal) -> bool:
        client_id = make_client_id("GBUY", price)
        placed = False
        try:
            quantity = compute_buy_quantity(price, self.quote_per_level, self.rules)
            ack = self.client.place_limit_order(
                self.symbol,
                BUY,
                price,
                quantity,
                self.rules,
                self.config.time_in_force,
                client_id=client_id,
            )
            placed = True
            self.order_book.record_placement(ack, reserved_price=price)
        except LocalValidationError as exc:
            self.metrics.record_placement_failure(f"BUY {price}: {exc}")
            logger.warning(
                "BUY rejected locally",
                extra=structured_log_extra(
                    event="buy_rejected_locally", symbol=self.symbol, side=BUY, price=price, error=str(exc)
                ),
            )
            return False
        except ExchangeError as exc:
            self.metrics.record_placement_failure(f"BUY {price}: {exc}")
            logger.error(
                "BUY placement failed",
                extra=structured_log_extra(
                    event="buy_place_error",
                    symbol=self.symbol,
                    client_order_id=client_id,
                    side=BUY,
                    price=price,
                    error=str(exc),
                ),
            )
            return False
        finally:
            if not placed:
                self.order_book.release(price)

        self.metrics.record_placement()
        logger.info(
            "BUY placed",
            extra=structured_log_extra(
                event="buy_placed",
                symbol=self.symbol,
                order_id=ack.order_id,
                client_order_id=client_id,
                side=BUY,
                price=price,
                quantity=ack.orig_qty,
            ),
        )
        return True

    def _cancel(self, order: OpenOrder, reason: str) -> bool:
        """Cancels ``order``; an order the venue no longer knows counts as cancelled."""
        try:
            self.client.cancel_order(self.symbol, order.order_id)
        except ExchangeApiError as exc:
            if not exc.is_unknown_order:
                self._record_cancel_failure(order, reason, exc)
                return False
            logger.info(
                "Order already gone on venue",
                extra=structured_log_extra(event="cancel_unknown_order", symbol=self.symbol, order_id=order.order_id),
            )
        except ExchangeError as exc:
            self._record_cancel_failure(order, reason, exc)
            return False

        self.order_book.remove(order.order_id)
        self.metrics.record_cancellation()
        logger.info(
            "BUY cancelled",
            extra=structured_log_extra(
                event="buy_cancelled",
                symbol=self.symbol,
                order_id=order.order_id,
                client_order_id=order.client_order_id,
                side=order.side,
                price=order.price,
                reason=reason,
            ),
        )
        return True

    def _record_cancel_failure(self, order: OpenOrder, reason: str, exc: Exception) -> None:
        self.metrics.record_cancel_failure(f"cancel {order.order_id}: {exc}")
        logger.error(
            "Cancel failed",
            extra=structured_log_extra(
                event="cancel_error", symbol=self.symbol, order_id=order.order_id, reason=reason, error=str(exc)
            ),
        )
