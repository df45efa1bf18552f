# src/grid_bot/connection/rest_client.py

import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import requests

from grid_bot.logging_config import structured_log_extra

from .clock import ServerClock
from .exceptions import (
    ExchangeApiError,
    ExchangeTransportError,
    BelowMinNotional,
    BelowMinQty,
    LocalValidationError,
    MetadataUnavailable,
    TransportError,
)
from .models import (
    BUY,
    SELL,
    Balance,
    ExchangeSymbolRules,
    OpenOrder,
    OrderAck,
    parse_order_ack,
)
from .precision import (
    ceil_to_tick,
    floor_to_step,
    floor_to_tick,
    format_decimal,
    to_decimal,
)

logger = logging.getLogger(__name__)

MAINNET_API_URL = "https://api.binance.com"
TESTNET_API_URL = "https://testnet.binance.vision"
DEFAULT_RECV_WINDOW = 5000
DEFAULT_TIMEOUT = 15.0

Params = List[Tuple[str, Any]]


class BinanceSpotClient:
    """Signed REST client for a Binance Spot account.

    Private calls carry a server-corrected ``timestamp`` plus ``recvWindow``
    and an HMAC-SHA256 ``signature`` computed over the exact query string that
    is sent. Order placement aligns price and quantity to the symbol filters
    and refuses locally, before any request, when the aligned values fall
    below the venue minimums.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        use_testnet: bool = True,
        recv_window: int = DEFAULT_RECV_WINDOW,
        request_timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
        clock: Optional[ServerClock] = None,
    ):
        self.base_url = (base_url or (TESTNET_API_URL if use_testnet else MAINNET_API_URL)).rstrip("/")
        self.api_key = api_key or ""
        self.api_secret = api_secret or ""
        self.recv_window = int(recv_window)
        self.request_timeout = float(request_timeout)

        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "GridBot/0.1.0"})
        if self.api_key:
            self.session.headers.update({"X-MBX-APIKEY": self.api_key})

        self.clock = clock or ServerClock(self.get_server_time)

    def close(self) -> None:
        self.session.close()

    # ------------------------------------------------------------------
    # signing / transport
    # ------------------------------------------------------------------

    def sign(self, query: str) -> str:
        """HMAC-SHA256 hex digest of ``query`` keyed by the account secret."""
        if not self.api_secret:
            raise LocalValidationError("API secret is required for signed requests.")
        return hmac.new(
            self.api_secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def _build_url(self, path: str, params: Optional[Sequence[Tuple[str, Any]]]) -> str:
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{urlencode(list(params))}"
        return url

    def _send(self, method: str, url: str) -> Any:
        try:
            response = self.session.request(method, url, timeout=self.request_timeout)
        except requests.exceptions.Timeout as exc:
            raise TransportError(f"Request timed out: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Network error: {exc}") from exc

        status = response.status_code
        if 200 <= status < 300:
            if not response.text:
                return {}
            try:
                return response.json()
            except ValueError as exc:
                raise ExchangeTransportError(status, response.text) from exc

        try:
            payload = response.json()
        except ValueError:
            raise ExchangeTransportError(status, response.text or "")

        if isinstance(payload, dict) and "code" in payload:
            try:
                code = int(payload.get("code"))
            except (TypeError, ValueError):
                code = status
            raise ExchangeApiError(code, str(payload.get("msg") or response.text), status_code=status)

        raise ExchangeTransportError(status, response.text or "")

    def _public(self, method: str, path: str, params: Optional[Params] = None) -> Any:
        return self._send(method, self._build_url(path, params))

    def _signed(self, method: str, path: str, params: Optional[Params] = None) -> Any:
        """Signs and sends a private request; resyncs the clock once on -1021."""
        self.clock.ensure_synced()
        try:
            return self._send(method, self._signed_url(path, params))
        except ExchangeApiError as exc:
            if not exc.is_timestamp_error:
                raise
            logger.warning(
                "Timestamp outside recvWindow; resyncing server clock",
                extra=structured_log_extra(event="clock_resync", path=path),
            )
            self.clock.sync()
            return self._send(method, self._signed_url(path, params))

    def _signed_url(self, path: str, params: Optional[Params]) -> str:
        query_params: Params = list(params or [])
        query_params.append(("recvWindow", self.recv_window))
        query_params.append(("timestamp", self.clock.timestamp()))
        query = urlencode(query_params)
        return f"{self.base_url}{path}?{query}&signature={self.sign(query)}"

    # ------------------------------------------------------------------
    # market data
    # ------------------------------------------------------------------

    def get_server_time(self) -> int:
        payload = self._public("GET", "/api/v3/time")
        return int(payload["serverTime"])

    def fetch_symbol_rules(self, symbol: str) -> ExchangeSymbolRules:
        """Loads tick/step/minimum filters for ``symbol`` from exchangeInfo."""
        try:
            payload = self._public("GET", "/api/v3/exchangeInfo", [("symbol", symbol)])
        except ExchangeApiError as exc:
            raise MetadataUnavailable(symbol, exc.message) from exc

        symbols = payload.get("symbols") if isinstance(payload, dict) else None
        if not symbols:
            raise MetadataUnavailable(symbol)

        entry = next((s for s in symbols if s.get("symbol") == symbol), None)
        if entry is None:
            raise MetadataUnavailable(symbol)
        return ExchangeSymbolRules.from_exchange_info(entry)

    def get_ask_price(self, symbol: str) -> Decimal:
        payload = self._public("GET", "/api/v3/ticker/bookTicker", [("symbol", symbol)])
        return to_decimal(payload.get("askPrice") or "0")

    # ------------------------------------------------------------------
    # account
    # ------------------------------------------------------------------

    def get_account_snapshot(self, hide_zero: bool = False) -> Dict[str, Balance]:
        """Returns balances keyed by asset."""
        payload = self._signed("GET", "/api/v3/account")
        balances: Dict[str, Balance] = {}
        for entry in payload.get("balances") or []:
            balance = Balance(
                asset=entry.get("asset") or "",
                free=to_decimal(entry.get("free") or "0"),
                locked=to_decimal(entry.get("locked") or "0"),
            )
            if hide_zero and balance.free == 0 and balance.locked == 0:
                continue
            balances[balance.asset] = balance
        return balances

    # ------------------------------------------------------------------
    # orders
    # ------------------------------------------------------------------

    def place_limit_order(
        self,
        symbol: str,
        side: str,
        price: Decimal,
        quantity: Decimal,
        rules: ExchangeSymbolRules,
        time_in_force: str = "GTC",
        client_id: Optional[str] = None,
    ) -> OrderAck:
        """
        Places a LIMIT order after aligning it to the symbol filters.
        BUY prices are floored to the tick and SELL prices ceiled, so the order
        never crosses further into the book than requested.
        """
        side = (side or "").upper()
        if side not in (BUY, SELL):
            raise ValueError("side must be BUY or SELL")
        if rules is None:
            raise ValueError("symbol rules are required for limit orders")

        price = to_decimal(price)
        quantity = to_decimal(quantity)
        if side == BUY:
            adj_price = floor_to_tick(price, rules.tick_size, rules.price_precision)
        else:
            adj_price = ceil_to_tick(price, rules.tick_size, rules.price_precision)
        adj_qty = floor_to_step(quantity, rules.step_size, rules.quantity_precision)

        if adj_price <= 0:
            raise LocalValidationError(f"Price {format_decimal(adj_price)} is not positive")
        if adj_qty <= 0 or adj_qty < rules.min_qty:
            raise BelowMinQty(
                f"Quantity below minQty: {format_decimal(adj_qty)} < {format_decimal(rules.min_qty)}"
            )
        notional = adj_price * adj_qty
        if notional < rules.min_notional:
            raise BelowMinNotional(
                f"Notional below minimum: {format_decimal(notional)} < {format_decimal(rules.min_notional)}"
            )

        params: Params = [
            ("symbol", symbol),
            ("side", side),
            ("type", "LIMIT"),
            ("timeInForce", time_in_force),
            ("quantity", format_decimal(adj_qty)),
            ("price", format_decimal(adj_price)),
        ]
        if client_id:
            params.append(("newClientOrderId", client_id))

        payload = self._signed("POST", "/api/v3/order", params)
        return parse_order_ack(payload, symbol=symbol, side=side, price=adj_price, quantity=adj_qty)

    def place_market_sell(
        self, symbol: str, quantity: Decimal, client_id: Optional[str] = None
    ) -> OrderAck:
        params: Params = [
            ("symbol", symbol),
            ("side", SELL),
            ("type", "MARKET"),
            ("quantity", format_decimal(to_decimal(quantity))),
        ]
        if client_id:
            params.append(("newClientOrderId", client_id))
        payload = self._signed("POST", "/api/v3/order", params)
        return parse_order_ack(payload, symbol=symbol, side=SELL)

    def list_open_orders(self, symbol: Optional[str] = None) -> List[OpenOrder]:
        params: Params = [("symbol", symbol)] if symbol else []
        payload = self._signed("GET", "/api/v3/openOrders", params)
        return [OpenOrder.from_payload(item) for item in payload or []]

    def cancel_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        return self._signed("DELETE", "/api/v3/order", [("symbol", symbol), ("orderId", order_id)])

    def cancel_all_open_orders(self, symbol: str) -> Any:
        return self._signed("DELETE", "/api/v3/openOrders", [("symbol", symbol)])

    # ------------------------------------------------------------------
    # user data stream session
    # ------------------------------------------------------------------

    def create_listen_key(self) -> str:
        payload = self._public("POST", "/api/v3/userDataStream")
        return payload["listenKey"]

    def keepalive_listen_key(self, listen_key: str) -> None:
        self._public("PUT", "/api/v3/userDataStream", [("listenKey", listen_key)])

    def close_listen_key(self, listen_key: str) -> None:
        self._public("DELETE", "/api/v3/userDataStream", [("listenKey", listen_key)])
