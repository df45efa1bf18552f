# src/grid_bot/streams/user_stream.py

import asyncio
import json
import logging
import threading
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from grid_bot.connection.exceptions import ExchangeError
from grid_bot.connection.models import Balance
from grid_bot.connection.precision import to_decimal
from grid_bot.connection.rest_client import BinanceSpotClient
from grid_bot.events import BALANCES, ORDER_UPDATE, USER_STATUS, EventHub
from grid_bot.logging_config import structured_log_extra

from .base import Connect, ThreadedStream
from .models import OrderUpdate, UserStreamState, UserStreamStatus

logger = logging.getLogger(__name__)

MAINNET_USER_STREAM_URL = "wss://stream.binance.com:9443/ws"
TESTNET_USER_STREAM_URL = "wss://stream.testnet.binance.vision/ws"


class ListenKeyExpired(Exception):
    """The venue invalidated the current listen key."""


class KeepAliveFailed(Exception):
    """Renewing the listen key failed; the session must be rebuilt."""


class UserDataStream(ThreadedStream):
    """
    Private account stream: balances and ``executionReport`` order updates.

    Each session requests a fresh listen key, connects, publishes the full
    account snapshot and then applies incremental balance events on top of
    it. A keep-alive task renews the key periodically; its failure, a
    ``listenKeyExpired`` event or a socket error rebuilds the session after an
    exponential backoff.
    """

    thread_name = "grid-bot-user-stream"

    def __init__(
        self,
        client: BinanceSpotClient,
        *,
        use_testnet: bool = True,
        base_url: Optional[str] = None,
        hub: Optional[EventHub] = None,
        keepalive_interval: float = 30 * 60,
        backoff_base: float = 2.0,
        backoff_factor: float = 1.7,
        backoff_cap: float = 20.0,
        connect_factory: Optional[Connect] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        super().__init__(connect_factory)
        self.client = client
        self.base_url = (base_url or (TESTNET_USER_STREAM_URL if use_testnet else MAINNET_USER_STREAM_URL)).rstrip("/")
        self.hub = hub or EventHub()
        self.keepalive_interval = keepalive_interval
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self.backoff_cap = backoff_cap
        self._monotonic = monotonic

        self._listen_key: Optional[str] = None
        self._attempt = 0

        self._balances_lock = threading.Lock()
        self._balances: Dict[str, Balance] = {}

        self._status_lock = threading.Lock()
        self._state = UserStreamState.STOPPED
        self._endpoint = ""
        self._reconnect_count = 0
        self._last_message_at: Optional[float] = None
        self._last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # public accessors
    # ------------------------------------------------------------------

    def status(self) -> UserStreamStatus:
        with self._status_lock:
            return self._snapshot(None)

    def balances(self) -> Dict[str, Balance]:
        with self._balances_lock:
            return dict(self._balances)

    def backoff_seconds(self) -> float:
        return min(self.backoff_cap, self.backoff_base * self.backoff_factor ** self._attempt)

    def stop(self, timeout: float = 5.0) -> None:
        super().stop(timeout)
        listen_key, self._listen_key = self._listen_key, None
        if listen_key:
            try:
                self.client.close_listen_key(listen_key)
            except Exception as exc:
                logger.debug("Failed to release listen key: %s", exc)
        self._attempt = 0
        self._set_state(UserStreamState.STOPPED, detail="Stopped")
        logger.info("User data stream stopped", extra=structured_log_extra(event="user_stream_stopped"))

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------

    def _snapshot(self, detail: Optional[str]) -> UserStreamStatus:
        return UserStreamStatus(
            state=self._state,
            endpoint=self._endpoint,
            reconnect_count=self._reconnect_count,
            last_message_at=self._last_message_at,
            last_error=self._last_error,
            detail=detail,
        )

    def _set_state(
        self, state: UserStreamState, error: Optional[str] = None, detail: Optional[str] = None
    ) -> None:
        with self._status_lock:
            if state == UserStreamState.RECEIVING:
                self._last_message_at = self._monotonic()
            if state == UserStreamState.RECONNECTING:
                self._reconnect_count += 1
            if error is not None:
                self._last_error = error
            elif state == UserStreamState.CONNECTED:
                self._last_error = None
            self._state = state
            snapshot = self._snapshot(detail)
        self.hub.publish(USER_STATUS, snapshot)

    # ------------------------------------------------------------------
    # session
    # ------------------------------------------------------------------

    async def _connect_and_listen(self) -> None:
        try:
            while self._running:
                try:
                    await self._run_session()
                    if self._running:
                        self._set_state(UserStreamState.RECONNECTING, detail="Socket closed; reconnecting")
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if not self._running:
                        break
                    self._set_state(UserStreamState.ERROR, error=str(exc))
                    logger.warning(
                        "User data stream session ended",
                        extra=structured_log_extra(event="user_stream_error", error=str(exc)),
                    )
                    self._set_state(UserStreamState.RECONNECTING, detail="Reconnecting after error")
                finally:
                    await self._close_websocket()
                    if self._running:
                        await self._release_listen_key()

                if not self._running:
                    break
                delay = self.backoff_seconds()
                self._attempt += 1
                await asyncio.sleep(delay)
        finally:
            await self._close_websocket()

    async def _run_session(self) -> None:
        self._set_state(UserStreamState.CREATING_LISTEN_KEY, detail="Requesting listen key")
        self._listen_key = await asyncio.to_thread(self.client.create_listen_key)

        url = f"{self.base_url}/{self._listen_key}"
        with self._status_lock:
            self._endpoint = url
        self._set_state(UserStreamState.CONNECTING, detail="Connecting")
        self._websocket = await self._connect(url)
        self._set_state(UserStreamState.CONNECTED, detail="Connected")
        logger.info("User data stream connected", extra=structured_log_extra(event="user_stream_connected"))

        snapshot = await asyncio.to_thread(self.client.get_account_snapshot)
        self._replace_balances(snapshot)

        keepalive = asyncio.ensure_future(self._keepalive_loop())
        receive = asyncio.ensure_future(self._receive_loop(self._websocket))
        try:
            done, _ = await asyncio.wait({keepalive, receive}, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                task.result()
        finally:
            for task in (keepalive, receive):
                task.cancel()
            await asyncio.gather(keepalive, receive, return_exceptions=True)

    async def _release_listen_key(self) -> None:
        """Best-effort close of the previous session's listen key."""
        listen_key, self._listen_key = self._listen_key, None
        if not listen_key:
            return
        try:
            await asyncio.to_thread(self.client.close_listen_key, listen_key)
        except Exception as exc:
            logger.debug("Failed to release listen key: %s", exc)

    async def _receive_loop(self, websocket: Any) -> None:
        while self._running:
            message = await websocket.recv()
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            await self._handle_message(message)

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            listen_key = self._listen_key
            if not listen_key:
                continue
            try:
                await asyncio.to_thread(self.client.keepalive_listen_key, listen_key)
            except ExchangeError as exc:
                raise KeepAliveFailed(f"listen key keep-alive failed: {exc}") from exc
            self._set_state(UserStreamState.KEEP_ALIVE, detail="Listen key renewed")

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------

    def _replace_balances(self, balances: Dict[str, Balance]) -> None:
        with self._balances_lock:
            self._balances = dict(balances)
            published = dict(self._balances)
        self.hub.publish(BALANCES, published)

    async def _handle_message(self, message: str) -> None:
        """Applies one user-stream event. Malformed messages are dropped."""
        try:
            data = json.loads(message)
            event_type = data.get("e") if isinstance(data, dict) else None
            if event_type == "outboundAccountPosition":
                self._apply_account_position(data)
            elif event_type == "balanceUpdate":
                self._apply_balance_delta(data)
            elif event_type == "executionReport":
                update = OrderUpdate.from_execution_report(data)
                self.hub.publish(ORDER_UPDATE, update)
                self._set_state(UserStreamState.RECEIVING, detail="Order update")
        except (ValueError, TypeError, KeyError, AttributeError, InvalidOperation) as exc:
            logger.debug("Dropping malformed user stream message: %s", exc)
            return

        if event_type == "listenKeyExpired":
            logger.warning("Listen key expired", extra=structured_log_extra(event="listen_key_expired"))
            raise ListenKeyExpired("listen key expired")

    def _apply_account_position(self, data: Dict[str, Any]) -> None:
        updates = {}
        for entry in data["B"]:
            asset = entry["a"]
            updates[asset] = Balance(asset=asset, free=to_decimal(entry["f"]), locked=to_decimal(entry["l"]))
        with self._balances_lock:
            self._balances.update(updates)
            published = dict(self._balances)
        self.hub.publish(BALANCES, published)
        self._set_state(UserStreamState.RECEIVING, detail="Account position")

    def _apply_balance_delta(self, data: Dict[str, Any]) -> None:
        asset = data["a"]
        delta = to_decimal(data["d"])
        with self._balances_lock:
            current = self._balances.get(asset) or Balance(asset=asset, free=Decimal("0"), locked=Decimal("0"))
            self._balances[asset] = Balance(asset=asset, free=current.free + delta, locked=current.locked)
            published = dict(self._balances)
        self.hub.publish(BALANCES, published)
        self._set_state(UserStreamState.RECEIVING, detail=f"Balance delta {asset}")
