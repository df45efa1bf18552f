"""Shared fixtures for grid_bot tests."""
from __future__ import annotations

from concurrent.futures import Executor, Future
from decimal import Decimal

import pytest

from grid_bot.connection.models import ExchangeSymbolRules
from grid_bot.events import EventHub


class InlineExecutor(Executor):
    """Runs submitted callables immediately on the calling thread."""

    def submit(self, fn, /, *args, **kwargs):  # type: ignore[override]
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def rules() -> ExchangeSymbolRules:
    return ExchangeSymbolRules(
        symbol="BNBUSDT",
        base_asset="BNB",
        quote_asset="USDT",
        tick_size=Decimal("0.01"),
        step_size=Decimal("0.001"),
        min_qty=Decimal("0.001"),
        min_notional=Decimal("5"),
        price_precision=2,
        quantity_precision=3,
    )


@pytest.fixture
def inline_executor() -> InlineExecutor:
    return InlineExecutor()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def hub_events():
    """Inline hub plus the list of ``(topic, payload)`` it delivered."""
    hub = EventHub.inline()
    received = []
    for topic in ("ticker", "price_status", "user_status", "balances", "order_update", "wallet"):
        hub.subscribe(topic, lambda payload, topic=topic: received.append((topic, payload)))
    return hub, received
