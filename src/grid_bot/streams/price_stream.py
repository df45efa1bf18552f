# src/grid_bot/streams/price_stream.py

import asyncio
import json
import logging
import threading
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence

from grid_bot.connection.exceptions import ParseError, TransportError
from grid_bot.events import PRICE_STATUS, TICKER, EventHub
from grid_bot.logging_config import structured_log_extra

from .base import Connect, ThreadedStream
from .models import PriceStreamState, PriceStreamStatus, Ticker

logger = logging.getLogger(__name__)

MAINNET_STREAM_URL = "wss://stream.binance.com:9443"
TESTNET_STREAM_URL = "wss://testnet.binance.vision"


class ConnectorStrategy:
    """One way of reaching the bookTicker stream."""

    name = "base"
    subscribes = False

    def url(self, base_url: str, stream_name: str) -> str:
        raise NotImplementedError

    def subscribe_message(self, stream_name: str) -> str:
        return json.dumps({"method": "SUBSCRIBE", "params": [stream_name], "id": 1})


class RootSubscribeStrategy(ConnectorStrategy):
    name = "root_subscribe"
    subscribes = True

    def url(self, base_url: str, stream_name: str) -> str:
        return f"{base_url}/ws"


class DirectStreamStrategy(ConnectorStrategy):
    name = "direct"

    def url(self, base_url: str, stream_name: str) -> str:
        return f"{base_url}/ws/{stream_name}"


class CombinedStreamStrategy(ConnectorStrategy):
    name = "combined"

    def url(self, base_url: str, stream_name: str) -> str:
        return f"{base_url}/stream?streams={stream_name}"


DEFAULT_STRATEGIES = (RootSubscribeStrategy(), DirectStreamStrategy(), CombinedStreamStrategy())


def _positive_decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return number if number > 0 else None


def parse_book_ticker(message: str) -> Optional[Dict[str, Optional[Decimal]]]:
    """
    Extracts best bid/ask from a bookTicker message.

    Accepts the raw payload or a combined-stream ``data`` envelope, reading
    ``b``/``a`` first and ``bidPrice``/``askPrice`` as a fallback. Returns
    ``None`` for subscription acknowledgements and messages with no price.
    Raises :class:`ParseError` on malformed JSON.
    """
    try:
        data = json.loads(message)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"Malformed stream message: {exc}") from exc

    if not isinstance(data, dict):
        return None
    payload = data.get("data") if isinstance(data.get("data"), dict) else data

    bid = _positive_decimal(payload.get("b")) or _positive_decimal(payload.get("bidPrice"))
    ask = _positive_decimal(payload.get("a")) or _positive_decimal(payload.get("askPrice"))
    if bid is None and ask is None:
        return None
    return {"bid": bid, "ask": ask}


class PriceStream(ThreadedStream):
    """
    Public bookTicker feed for one symbol.

    Connects with the first working :class:`ConnectorStrategy`, publishes a
    :class:`Ticker` for every priced message and a :class:`PriceStreamStatus`
    on every state transition. A watchdog marks the feed STALE when no priced
    message arrived within ``stale_after`` seconds; the socket is kept.
    """

    thread_name = "grid-bot-price-stream"

    def __init__(
        self,
        symbol: str,
        *,
        use_testnet: bool = True,
        base_url: Optional[str] = None,
        hub: Optional[EventHub] = None,
        stale_after: float = 15.0,
        watchdog_interval: float = 3.0,
        backoff_cap: float = 10.0,
        strategies: Optional[Sequence[ConnectorStrategy]] = None,
        connect_factory: Optional[Connect] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        super().__init__(connect_factory)
        self.symbol = symbol.upper()
        self.stream_name = f"{symbol.lower()}@bookTicker"
        self.base_url = (base_url or (TESTNET_STREAM_URL if use_testnet else MAINNET_STREAM_URL)).rstrip("/")
        self.hub = hub or EventHub()
        self.stale_after = stale_after
        self.watchdog_interval = watchdog_interval
        self.backoff_cap = backoff_cap
        self.strategies: List[ConnectorStrategy] = list(strategies or DEFAULT_STRATEGIES)
        self._monotonic = monotonic

        self._lock = threading.Lock()
        self._state = PriceStreamState.STOPPED
        self._endpoint = ""
        self._reconnect_count = 0
        self._last_message_at: Optional[float] = None
        self._session_started_at: Optional[float] = None
        self._latest: Optional[Ticker] = None
        self._last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # public accessors
    # ------------------------------------------------------------------

    def status(self) -> PriceStreamStatus:
        with self._lock:
            return self._snapshot(None)

    def latest_ticker(self) -> Optional[Ticker]:
        with self._lock:
            return self._latest

    def backoff_seconds(self) -> float:
        return min(self.backoff_cap, 1 + self._reconnect_count)

    def stop(self, timeout: float = 5.0) -> None:
        super().stop(timeout)
        self._set_state(PriceStreamState.STOPPED)
        logger.info(
            "Price stream stopped",
            extra=structured_log_extra(event="price_stream_stopped", symbol=self.symbol),
        )

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------

    def _snapshot(self, detail: Optional[str]) -> PriceStreamStatus:
        return PriceStreamStatus(
            state=self._state,
            endpoint=self._endpoint,
            stream_name=self.stream_name,
            reconnect_count=self._reconnect_count,
            last_message_at=self._last_message_at,
            last_error=self._last_error,
            detail=detail,
        )

    def _set_state(
        self, state: PriceStreamState, error: Optional[str] = None, detail: Optional[str] = None
    ) -> None:
        with self._lock:
            self._state = state
            if error is not None:
                self._last_error = error
            elif state == PriceStreamState.SUBSCRIBED:
                self._last_error = None
            snapshot = self._snapshot(detail)
        self.hub.publish(PRICE_STATUS, snapshot)

    # ------------------------------------------------------------------
    # connection
    # ------------------------------------------------------------------

    async def _open_connection(self) -> Any:
        failures = []
        for strategy in self.strategies:
            url = strategy.url(self.base_url, self.stream_name)
            with self._lock:
                self._endpoint = url
            websocket = None
            try:
                websocket = await self._connect(url)
                self._set_state(PriceStreamState.CONNECTED)
                if strategy.subscribes:
                    self._set_state(PriceStreamState.SUBSCRIBING)
                    await websocket.send(strategy.subscribe_message(self.stream_name))
                self._set_state(PriceStreamState.SUBSCRIBED, detail=strategy.name)
                logger.info(
                    "Price stream connected",
                    extra=structured_log_extra(
                        event="price_stream_connected",
                        symbol=self.symbol,
                        endpoint=url,
                        strategy=strategy.name,
                    ),
                )
                return websocket
            except asyncio.CancelledError:
                if websocket is not None:
                    await websocket.close()
                raise
            except Exception as exc:
                failures.append(f"{strategy.name}: {exc}")
                logger.warning(
                    "Price stream strategy failed",
                    extra=structured_log_extra(
                        event="price_stream_strategy_failed",
                        symbol=self.symbol,
                        strategy=strategy.name,
                        error=str(exc),
                    ),
                )
                if websocket is not None:
                    try:
                        await websocket.close()
                    except Exception as close_exc:
                        logger.debug("Ignoring close failure: %s", close_exc)
        raise TransportError("All price stream strategies failed: " + "; ".join(failures))

    async def _connect_and_listen(self) -> None:
        try:
            while self._running:
                self._set_state(PriceStreamState.CONNECTING)
                try:
                    self._websocket = await self._open_connection()
                    with self._lock:
                        self._session_started_at = self._monotonic()
                    await self._listen(self._websocket)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if not self._running:
                        break
                    with self._lock:
                        self._reconnect_count += 1
                    self._set_state(PriceStreamState.ERROR, error=str(exc))
                    logger.warning(
                        "Price stream session ended",
                        extra=structured_log_extra(
                            event="price_stream_error", symbol=self.symbol, error=str(exc)
                        ),
                    )
                finally:
                    await self._close_websocket()

                if not self._running:
                    break
                delay = self.backoff_seconds()
                self._set_state(PriceStreamState.RECONNECTING, detail=f"retry in {delay}s")
                await asyncio.sleep(delay)
        finally:
            await self._close_websocket()

    async def _listen(self, websocket: Any) -> None:
        watchdog = asyncio.ensure_future(self._watchdog())
        try:
            while self._running:
                message = await websocket.recv()
                if isinstance(message, bytes):
                    message = message.decode("utf-8")
                await self._handle_message(message)
        finally:
            watchdog.cancel()
            try:
                await watchdog
            except asyncio.CancelledError:
                pass

    async def _watchdog(self) -> None:
        while True:
            await asyncio.sleep(self.watchdog_interval)
            self._check_stale()

    def _check_stale(self) -> bool:
        """Marks the feed STALE when quiet for longer than ``stale_after``."""
        with self._lock:
            if self._state not in (PriceStreamState.SUBSCRIBED, PriceStreamState.RECEIVING):
                return False
            reference = self._last_message_at or self._session_started_at
            if reference is None or self._monotonic() - reference <= self.stale_after:
                return False
        self._set_state(PriceStreamState.STALE)
        logger.warning(
            "Price stream stale",
            extra=structured_log_extra(event="price_stream_stale", symbol=self.symbol),
        )
        return True

    async def _handle_message(self, message: str) -> None:
        try:
            prices = parse_book_ticker(message)
        except ParseError as exc:
            logger.warning(
                "Dropping malformed price message",
                extra=structured_log_extra(event="price_parse_error", symbol=self.symbol, error=str(exc)),
            )
            return

        if prices is None:
            return

        now = self._monotonic()
        ticker = Ticker(bid=prices["bid"], ask=prices["ask"], received_at=now)
        with self._lock:
            self._latest = ticker
            self._last_message_at = now
            transition = self._state != PriceStreamState.RECEIVING
        if transition:
            self._set_state(PriceStreamState.RECEIVING)
        self.hub.publish(TICKER, ticker)
