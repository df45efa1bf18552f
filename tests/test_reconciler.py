import itertools
import threading
import time
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from grid_bot.config_models import GridConfig
from grid_bot.connection.exceptions import ExchangeApiError
from grid_bot.connection.models import OpenOrder, OrderAck
from grid_bot.engine.reconciler import ReconciliationEngine, make_client_id
from grid_bot.grid.catalog import PriceLadderCatalog
from grid_bot.metrics import EngineMetrics
from grid_bot.streams.models import OrderUpdate, Ticker

D = Decimal


class RecordingClient:
    """Stands in for BinanceSpotClient; records every placement."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.placed = []
        self.cancelled = []
        self.cancel_error = None
        self.place_error = None
        self.open_orders = []
        self.ask = D("0")
        self.list_calls = 0
        self._ids = itertools.count(1000)
        self._lock = threading.Lock()

    def place_limit_order(self, symbol, side, price, quantity, rules, time_in_force="GTC", client_id=None):
        if self.delay:
            time.sleep(self.delay)
        if self.place_error is not None:
            raise self.place_error
        with self._lock:
            self.placed.append((side, price, quantity, client_id))
            order_id = next(self._ids)
        return OrderAck(order_id, client_id or "", symbol, side, "NEW", price, quantity, D("0"))

    def cancel_order(self, symbol, order_id):
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(order_id)
        return {}

    def list_open_orders(self, symbol=None):
        self.list_calls += 1
        return list(self.open_orders)

    def get_ask_price(self, symbol):
        return self.ask


def _buy(order_id: int, price: str) -> OpenOrder:
    return OpenOrder(order_id, f"c{order_id}", "BNBUSDT", "BUY", "NEW", D(price), D("0.1"))


@pytest.fixture
def catalog(rules) -> PriceLadderCatalog:
    return PriceLadderCatalog.build(rules, "BNBUSDT", D("1"), D("100"), D("110"))


@pytest.fixture
def client() -> RecordingClient:
    return RecordingClient()


@pytest.fixture
def ticker():
    return {"value": Ticker(bid=D("104.99"), ask=D("105"), received_at=0.0)}


@pytest.fixture
def engine(client, catalog, rules, clock, inline_executor, ticker) -> ReconciliationEngine:
    config = GridConfig(
        symbol="BNBUSDT",
        step_percent=D("1"),
        min_price=D("100"),
        max_price=D("110"),
        target_buy_count=3,
        quote_per_level=D("10"),
        placement_delay_sec=0,
        snapshot_interval_sec=60,
    )
    return ReconciliationEngine(
        client,
        catalog,
        rules,
        config,
        metrics=EngineMetrics(),
        price_source=lambda: ticker["value"],
        executor=inline_executor,
        monotonic=clock,
    )


def _ack_all(engine: ReconciliationEngine, client: RecordingClient) -> None:
    for index, (side, price, quantity, client_id) in enumerate(client.placed):
        engine.on_order_update(
            OrderUpdate(
                order_id=1000 + index,
                client_order_id=client_id,
                symbol="BNBUSDT",
                side=side,
                status="NEW",
                price=price,
                orig_qty=quantity,
            )
        )


def test_pass_places_missing_buys_below_ask(engine, client):
    summary = engine.run_pass()

    assert summary.desired_prices == [D("104.08"), D("103.04"), D("102.01")]
    assert [price for _, price, _, _ in client.placed] == summary.desired_prices
    assert all(side == "BUY" for side, _, _, _ in client.placed)
    assert client.placed[0][2] == D("0.097")
    assert all(cid.startswith("GBUY_") for _, _, _, cid in client.placed)
    assert engine.metrics.snapshot()["placements"] == 3


def test_repeated_passes_are_idempotent(engine, client):
    engine.run_pass()
    engine.run_pass()
    assert len(client.placed) == 3

    _ack_all(engine, client)
    summary = engine.run_pass()

    assert len(client.placed) == 3
    assert summary.cancelled == []
    assert engine.order_book.reservations() == []
    assert len(engine.order_book.open_buys()) == 3


def test_concurrent_passes_never_duplicate_a_price(engine, catalog, rules):
    slow_client = RecordingClient(delay=0.02)
    engine.client = slow_client
    barrier = threading.Barrier(2)

    def _worker():
        barrier.wait()
        engine.run_pass()

    threads = [threading.Thread(target=_worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    prices = [price for _, price, _, _ in slow_client.placed]
    assert sorted(prices) == [D("102.01"), D("103.04"), D("104.08")]


def test_open_sells_reduce_desired_buys(engine, client):
    engine.order_book.upsert(OpenOrder(1, "s1", "BNBUSDT", "SELL", "NEW", D("106.19"), D("0.1")))

    summary = engine.run_pass()

    assert summary.desired_count == 2
    assert [price for _, price, _, _ in client.placed] == [D("104.08"), D("103.04")]


def test_excess_cancels_non_desired_first_and_skips_placement(engine, client):
    for order_id, price in [(1, "104.08"), (2, "103.04"), (3, "102.01"), (4, "101.00"), (5, "100.00")]:
        engine.order_book.upsert(_buy(order_id, price))

    summary = engine.run_pass()

    assert sorted(client.cancelled) == [4, 5]
    assert sorted(summary.cancelled) == [4, 5]
    assert client.placed == []
    assert sorted(o.order_id for o in engine.order_book.open_buys()) == [1, 2, 3]


def test_excess_of_desired_prices_cancels_farthest(engine, client):
    engine.order_book.upsert(OpenOrder(9, "s9", "BNBUSDT", "SELL", "NEW", D("106.19"), D("0.1")))
    for order_id, price in [(1, "104.08"), (2, "103.04"), (3, "102.01")]:
        engine.order_book.upsert(_buy(order_id, price))

    engine.run_pass()

    assert client.cancelled == [3]


def test_duplicate_buys_keep_lowest_order_id(engine, client):
    engine.order_book.upsert(_buy(9, "104.08"))
    engine.order_book.upsert(_buy(7, "104.08"))

    engine.run_pass()

    assert client.cancelled == [9]
    assert [o.order_id for o in engine.order_book.open_buys() if o.price == D("104.08")] == [7]


def test_unknown_order_on_cancel_counts_as_success(engine, client):
    for order_id, price in [(1, "104.08"), (2, "103.04"), (3, "102.01"), (4, "101.00")]:
        engine.order_book.upsert(_buy(order_id, price))
    client.cancel_error = ExchangeApiError(-2011, "Unknown order sent.", 400)

    summary = engine.run_pass()

    assert summary.cancelled == [4]
    assert 4 not in [o.order_id for o in engine.order_book.open_buys()]
    assert engine.metrics.snapshot()["cancellations"] == 1


def test_other_cancel_errors_keep_the_order(engine, client):
    for order_id, price in [(1, "104.08"), (2, "103.04"), (3, "102.01"), (4, "101.00")]:
        engine.order_book.upsert(_buy(order_id, price))
    client.cancel_error = ExchangeApiError(-1000, "An unknown error occurred.", 400)

    summary = engine.run_pass()

    assert summary.cancelled == []
    assert 4 in [o.order_id for o in engine.order_book.open_buys()]
    assert engine.metrics.snapshot()["cancel_failures"] == 1


def test_failed_placement_releases_reservation(engine, client):
    client.place_error = ExchangeApiError(-2010, "Account has insufficient balance.", 400)

    summary = engine.run_pass()

    assert summary.placed == []
    assert engine.order_book.reservations() == []
    assert engine.metrics.snapshot()["placement_failures"] == 3


def test_filled_buy_places_exactly_one_paired_sell(engine, client):
    filled = OrderUpdate(
        order_id=77,
        client_order_id="GBUY_10304_1",
        symbol="BNBUSDT",
        side="BUY",
        status="FILLED",
        price=D("103.04"),
        orig_qty=D("0.097"),
        executed_qty=D("0.097"),
    )

    engine.on_order_update(filled)
    engine.on_order_update(filled)

    assert len(client.placed) == 1
    side, price, quantity, client_id = client.placed[0]
    assert (side, price, quantity) == ("SELL", D("104.08"), D("0.097"))
    assert client_id.startswith("GSELL_")
    assert engine.metrics.snapshot()["fills"] == 1
    assert engine.metrics.snapshot()["sells_placed"] == 1


def test_fill_outside_catalog_uses_step_fallback(engine, client, caplog):
    with caplog.at_level("WARNING"):
        price = engine.sell_price_for(D("103.5"))

    assert price == D("104.54")
    assert any(getattr(record, "event", None) == "catalog_miss" for record in caplog.records)


def test_acknowledgement_releases_reservation(engine):
    assert engine.order_book.try_reserve(D("104.08"))

    engine.on_order_update(
        OrderUpdate(order_id=1, client_order_id="x", symbol="BNBUSDT", side="BUY", status="NEW", price=D("104.08"))
    )

    assert not engine.order_book.is_reserved(D("104.08"))
    assert [o.order_id for o in engine.order_book.open_buys()] == [1]


def test_updates_for_other_symbols_are_ignored(engine):
    engine.on_order_update(
        OrderUpdate(order_id=1, client_order_id="x", symbol="ETHUSDT", side="BUY", status="NEW", price=D("1"))
    )

    assert engine.order_book.open_orders() == []


def test_stale_ticker_falls_back_to_cached_rest_ask(engine, client, clock):
    clock.advance(11)
    client.ask = D("0")

    summary = engine.run_pass()

    assert summary.ask == D("0")
    assert client.placed == []


def test_periodic_snapshot_refreshes_open_orders(engine, client, clock):
    engine.refresh_open_orders()
    assert client.list_calls == 1

    clock.advance(30)
    engine.run_pass()
    assert client.list_calls == 1

    clock.advance(31)
    engine.run_pass()
    assert client.list_calls == 2


def test_stale_reservations_expire(engine, clock):
    engine.order_book.try_reserve(D("50"))
    clock.advance(121)

    summary = engine.run_pass()

    assert D("50") in summary.expired_reservations
    assert not engine.order_book.is_reserved(D("50"))


def test_quote_per_level_is_raised_to_min_notional(engine):
    assert engine.set_quote_per_level(D("1")) == D("5")
    assert engine.set_quote_per_level(D("0")) == D("10")
    assert engine.set_quote_per_level(D("25")) == D("25")


def test_make_client_id_format():
    assert make_client_id("GBUY", D("600.12"), now_ns=123_456_789) == "GBUY_60012_34567"


def test_start_and_stop_run_loop(engine, client):
    engine.config.loop_interval_sec = 0.01
    engine.start()
    deadline = time.time() + 2
    while not client.placed and time.time() < deadline:
        time.sleep(0.01)
    engine.stop()

    assert not engine.is_running
    assert client.placed


def test_new_report_never_leaves_a_price_uncovered(engine, client, monkeypatch):
    engine.run_pass()
    price = D("104.08")
    book = engine.order_book
    original_release = book.release
    interleaved = []

    def _release_then_pass(target):
        released = original_release(target)
        interleaved.extend(engine._place_missing([target]))
        return released

    monkeypatch.setattr(book, "release", _release_then_pass)
    engine.on_order_update(
        OrderUpdate(order_id=1000, client_order_id=client.placed[0][3], symbol="BNBUSDT", side="BUY", status="NEW", price=price)
    )
    engine.run_pass()

    assert [p for _, p, _, _ in client.placed].count(price) == 1
    assert interleaved == []


def test_acked_buys_stay_covered_without_stream_events(engine, client, clock, ticker):
    engine.run_pass()
    assert len(client.placed) == 3
    assert len(engine.order_book.open_buys()) == 3
    assert engine.order_book.reservations() == []

    clock.advance(engine.config.reservation_ttl_sec + 1)
    ticker["value"] = Ticker(bid=D("104.99"), ask=D("105"), received_at=clock.now)
    engine.run_pass()

    assert len(client.placed) == 3


def test_quote_change_wakes_the_loop(engine, client):
    engine.config.loop_interval_sec = 60
    engine.start()
    deadline = time.time() + 2
    while engine.metrics.snapshot()["passes"] < 1 and time.time() < deadline:
        time.sleep(0.01)

    engine.set_quote_per_level(D("20"))
    while engine.metrics.snapshot()["passes"] < 2 and time.time() < deadline:
        time.sleep(0.01)
    engine.stop()

    assert engine.metrics.snapshot()["passes"] >= 2
