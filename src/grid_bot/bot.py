"""Headless orchestrator wiring streams, the reconciliation engine and wallet valuation."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from grid_bot.config_models import AppConfig
from grid_bot.connection.exceptions import ExchangeError
from grid_bot.connection.models import Balance, ExchangeSymbolRules
from grid_bot.connection.rest_client import BinanceSpotClient
from grid_bot.engine.reconciler import DEFAULT_QUOTE_PER_LEVEL, ReconciliationEngine
from grid_bot.engine.sizing import clamp_quote_per_level
from grid_bot.engine.wallet import WalletTracker, WalletValuation
from grid_bot.events import BALANCES, ORDER_UPDATE, WALLET, EventHub
from grid_bot.grid.catalog import PriceLadderCatalog
from grid_bot.grid.catalog_store import CatalogStore, load_or_build_catalog
from grid_bot.logging_config import structured_log_extra
from grid_bot.metrics import EngineMetrics
from grid_bot.streams.models import OrderUpdate
from grid_bot.streams.price_stream import PriceStream
from grid_bot.streams.user_stream import UserDataStream

logger = logging.getLogger(__name__)


class GridBot:
    """Owns every component for one symbol and exposes the operator commands.

    Observers subscribe to the :class:`EventHub` topics ``ticker``,
    ``price_status``, ``user_status``, ``balances``, ``order_update`` and
    ``wallet``. ``start``/``shutdown`` manage the streams; ``start_bot`` and
    ``stop_bot`` manage the reconciliation loop.
    """

    def __init__(
        self,
        client: BinanceSpotClient,
        config: AppConfig,
        *,
        hub: Optional[EventHub] = None,
        metrics: Optional[EngineMetrics] = None,
        price_stream: Optional[PriceStream] = None,
        user_stream: Optional[UserDataStream] = None,
        catalog_store: Optional[CatalogStore] = None,
        executor: Optional[Executor] = None,
    ):
        self.client = client
        self.config = config
        self.symbol = config.grid.symbol
        self.hub = hub or EventHub()
        self.metrics = metrics or EngineMetrics()
        self._executor = executor

        exchange = config.exchange
        streams = config.streams
        self.price_stream = price_stream or PriceStream(
            self.symbol,
            use_testnet=exchange.use_testnet,
            base_url=exchange.price_stream_url,
            hub=self.hub,
            stale_after=streams.stale_after_sec,
            watchdog_interval=streams.watchdog_interval_sec,
            backoff_cap=streams.price_backoff_cap_sec,
        )
        self.user_stream = user_stream or UserDataStream(
            client,
            use_testnet=exchange.use_testnet,
            base_url=exchange.user_stream_url,
            hub=self.hub,
            keepalive_interval=streams.keepalive_interval_sec,
            backoff_base=streams.user_backoff_base_sec,
            backoff_factor=streams.user_backoff_factor,
            backoff_cap=streams.user_backoff_cap_sec,
        )
        self.catalog_store = catalog_store or CatalogStore(
            Path(config.catalog_path) if config.catalog_path else None
        )

        self.rules: Optional[ExchangeSymbolRules] = None
        self.catalog: Optional[PriceLadderCatalog] = None
        self.engine: Optional[ReconciliationEngine] = None
        self.wallet: Optional[WalletTracker] = None
        self._quote_per_level: Decimal = config.grid.quote_per_level
        self._lock = threading.Lock()

        self.hub.subscribe(ORDER_UPDATE, self._on_order_update)
        self.hub.subscribe(BALANCES, self._on_balances)

    # ------------------------------------------------------------------
    # streams
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Starts event dispatch and both streams."""
        self.hub.start()
        rules = self._load_rules()
        with self._lock:
            if self.wallet is None:
                self.wallet = WalletTracker(rules.base_asset, rules.quote_asset)
        self.price_stream.start()
        self.user_stream.start()
        logger.info("Streams started", extra=structured_log_extra(event="streams_started", symbol=self.symbol))

    def shutdown(self) -> None:
        self.stop_bot()
        if self.engine is not None:
            self.engine.close()
        self.user_stream.stop()
        self.price_stream.stop()
        self.hub.stop()
        self.client.close()
        logger.info("Grid bot shut down", extra=structured_log_extra(event="bot_shutdown", symbol=self.symbol))

    # ------------------------------------------------------------------
    # engine commands
    # ------------------------------------------------------------------

    def start_bot(self) -> ReconciliationEngine:
        """Loads or builds the catalog, seeds open orders and starts the engine loop."""
        grid = self.config.grid
        rules = self._load_rules(refresh=True)
        catalog = load_or_build_catalog(
            self.client, self.catalog_store, self.symbol, grid.step_percent, grid.min_price, grid.max_price
        )

        previous = self.engine
        if previous is not None:
            previous.close()

        engine = ReconciliationEngine(
            self.client,
            catalog,
            rules,
            grid,
            metrics=self.metrics,
            price_source=self.price_stream.latest_ticker,
            executor=self._executor,
        )
        engine.set_quote_per_level(self._quote_per_level)
        engine.refresh_open_orders()
        with self._lock:
            self.catalog = catalog
            self.engine = engine
        engine.start()
        logger.info(
            "Grid bot started",
            extra=structured_log_extra(event="bot_started", symbol=self.symbol, levels=len(catalog)),
        )
        return engine

    def stop_bot(self) -> None:
        engine = self.engine
        if engine is not None and engine.is_running:
            engine.stop()

    def set_quote_per_level(self, value: Decimal) -> Decimal:
        engine = self.engine
        if engine is not None:
            applied = engine.set_quote_per_level(value)
        else:
            min_notional = self.rules.min_notional if self.rules else Decimal("0")
            applied = clamp_quote_per_level(value, min_notional, DEFAULT_QUOTE_PER_LEVEL)
        self._quote_per_level = applied
        return applied

    def status(self) -> Dict[str, Any]:
        wallet = self.wallet.last if self.wallet else None
        return {
            "symbol": self.symbol,
            "engine_running": bool(self.engine and self.engine.is_running),
            "price_stream": self.price_stream.status(),
            "user_stream": self.user_stream.status(),
            "metrics": self.metrics.snapshot(),
            "wallet": wallet,
        }

    # ------------------------------------------------------------------
    # event handlers
    # ------------------------------------------------------------------

    def _load_rules(self, refresh: bool = False) -> ExchangeSymbolRules:
        if self.rules is None or refresh:
            self.rules = self.client.fetch_symbol_rules(self.symbol)
        return self.rules

    def _on_order_update(self, update: OrderUpdate) -> None:
        engine = self.engine
        if engine is not None:
            engine.on_order_update(update)

    def _current_ask(self) -> Decimal:
        engine = self.engine
        if engine is not None:
            return engine.current_ask()
        ticker = self.price_stream.latest_ticker()
        if ticker is not None and ticker.ask:
            return ticker.ask
        return self.client.get_ask_price(self.symbol)

    def _on_balances(self, balances: Mapping[str, Balance]) -> Optional[WalletValuation]:
        wallet = self.wallet
        if wallet is None:
            return None
        try:
            ask = self._current_ask()
        except ExchangeError as exc:
            logger.warning(
                "Wallet valuation skipped; no ask price",
                extra=structured_log_extra(event="wallet_no_ask", symbol=self.symbol, error=str(exc)),
            )
            return None
        valuation = wallet.update(balances, ask)
        self.hub.publish(WALLET, valuation)
        return valuation
