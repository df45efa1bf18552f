# tests/test_rest_client.py

import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from grid_bot.connection.clock import ServerClock
from grid_bot.connection.exceptions import (
    BelowMinNotional,
    BelowMinQty,
    ExchangeApiError,
    ExchangeTransportError,
    LocalValidationError,
    MetadataUnavailable,
    TransportError,
)
from grid_bot.connection.rest_client import TESTNET_API_URL, BinanceSpotClient


def _response(status: int, payload=None, text: str = ""):
    response = MagicMock()
    response.status_code = status
    if payload is not None:
        response.json.return_value = payload
        response.text = json.dumps(payload)
    else:
        response.json.side_effect = ValueError("no json")
        response.text = text
    return response


def _sent_url(session: MagicMock, call_index: int = -1) -> str:
    return session.request.call_args_list[call_index][0][1]


@pytest.fixture
def server_time():
    return MagicMock(return_value=1_000_500)


@pytest.fixture
def client(server_time):
    session = MagicMock()
    clock = ServerClock(server_time, local_ms=lambda: 1_000_000)
    return BinanceSpotClient("key", "secret", session=session, clock=clock)


def test_defaults_to_testnet_and_sets_api_key_header():
    session = MagicMock()
    client = BinanceSpotClient("key", "secret", session=session)

    assert client.base_url == TESTNET_API_URL
    session.headers.update.assert_any_call({"X-MBX-APIKEY": "key"})


def test_signed_request_signature_covers_exact_query(client):
    client.session.request.return_value = _response(200, [])

    client.list_open_orders("BNBUSDT")

    method, url = client.session.request.call_args[0]
    assert method == "GET"
    path, query_and_sig = url.split("?", 1)
    assert path == f"{TESTNET_API_URL}/api/v3/openOrders"
    query, signature = query_and_sig.rsplit("&signature=", 1)
    expected = hmac.new(b"secret", query.encode("utf-8"), hashlib.sha256).hexdigest()
    assert signature == expected
    assert query == "symbol=BNBUSDT&recvWindow=5000&timestamp=1000500"


def test_request_timeout_forwarded(client):
    client.session.request.return_value = _response(200, {"serverTime": 1})

    client.get_server_time()

    _, kwargs = client.session.request.call_args
    assert kwargs["timeout"] == client.request_timeout


def test_timestamp_error_resyncs_and_retries_once(client, server_time):
    client.session.request.side_effect = [
        _response(400, {"code": -1021, "msg": "Timestamp for this request is outside of the recvWindow."}),
        _response(200, []),
    ]

    assert client.list_open_orders("BNBUSDT") == []
    assert client.session.request.call_count == 2
    # initial sync plus the forced resync
    assert server_time.call_count == 2


def test_repeated_timestamp_error_is_raised(client):
    client.session.request.return_value = _response(400, {"code": -1021, "msg": "Timestamp"})

    with pytest.raises(ExchangeApiError) as excinfo:
        client.list_open_orders("BNBUSDT")

    assert excinfo.value.is_timestamp_error
    assert client.session.request.call_count == 2


def test_api_error_payload_maps_to_exchange_api_error(client):
    client.session.request.return_value = _response(400, {"code": -2010, "msg": "Account has insufficient balance."})

    with pytest.raises(ExchangeApiError) as excinfo:
        client.cancel_order("BNBUSDT", 7)

    assert excinfo.value.code == -2010
    assert excinfo.value.status_code == 400
    assert "insufficient" in excinfo.value.message


def test_non_json_error_body_maps_to_transport_error(client):
    client.session.request.return_value = _response(502, text="Bad Gateway")

    with pytest.raises(ExchangeTransportError) as excinfo:
        client.get_ask_price("BNBUSDT")

    assert excinfo.value.status_code == 502
    assert "Bad Gateway" in excinfo.value.body


@pytest.mark.parametrize(
    "error",
    [requests.exceptions.ConnectionError("refused"), requests.exceptions.Timeout("slow")],
)
def test_network_failures_raise_transport_error(client, error):
    client.session.request.side_effect = error

    with pytest.raises(TransportError):
        client.get_server_time()


def test_signed_request_without_secret_fails_locally():
    session = MagicMock()
    client = BinanceSpotClient(session=session, clock=ServerClock(lambda: 0, local_ms=lambda: 0))

    with pytest.raises(LocalValidationError):
        client.get_account_snapshot()

    session.request.assert_not_called()


def test_place_limit_buy_aligns_price_and_quantity(client, rules):
    client.session.request.return_value = _response(
        200, {"orderId": 42, "clientOrderId": "GBUY_1", "status": "NEW", "symbol": "BNBUSDT"}
    )

    ack = client.place_limit_order(
        "BNBUSDT", "buy", Decimal("100.129"), Decimal("0.1239"), rules, client_id="GBUY_1"
    )

    method, url = client.session.request.call_args[0]
    assert method == "POST"
    assert "/api/v3/order?" in url
    assert "side=BUY" in url
    assert "type=LIMIT" in url
    assert "timeInForce=GTC" in url
    assert "price=100.12&" in url
    assert "quantity=0.123&" in url
    assert "newClientOrderId=GBUY_1" in url
    assert ack.order_id == 42
    assert ack.price == Decimal("100.12")
    assert ack.orig_qty == Decimal("0.123")


def test_place_limit_sell_ceils_price(client, rules):
    client.session.request.return_value = _response(200, {"orderId": 43, "status": "NEW"})

    ack = client.place_limit_order("BNBUSDT", "SELL", Decimal("100.121"), Decimal("0.1"), rules)

    assert "price=100.13&" in _sent_url(client.session)
    assert ack.side == "SELL"
    assert ack.price == Decimal("100.13")


def test_quantity_below_min_qty_never_hits_the_wire(client, rules):
    with pytest.raises(BelowMinQty):
        client.place_limit_order("BNBUSDT", "BUY", Decimal("100"), Decimal("0.0004"), rules)

    client.session.request.assert_not_called()


def test_notional_below_minimum_never_hits_the_wire(client, rules):
    with pytest.raises(BelowMinNotional):
        client.place_limit_order("BNBUSDT", "BUY", Decimal("100"), Decimal("0.01"), rules)

    client.session.request.assert_not_called()


def test_invalid_side_rejected(client, rules):
    with pytest.raises(ValueError):
        client.place_limit_order("BNBUSDT", "HOLD", Decimal("100"), Decimal("1"), rules)


def test_fetch_symbol_rules_parses_filters(client):
    client.session.request.return_value = _response(
        200,
        {
            "symbols": [
                {
                    "symbol": "BNBUSDT",
                    "status": "TRADING",
                    "baseAsset": "BNB",
                    "quoteAsset": "USDT",
                    "filters": [
                        {"filterType": "PRICE_FILTER", "tickSize": "0.01000000"},
                        {"filterType": "LOT_SIZE", "stepSize": "0.00100000", "minQty": "0.00100000"},
                        {"filterType": "NOTIONAL", "minNotional": "5.00000000"},
                    ],
                }
            ]
        },
    )

    rules = client.fetch_symbol_rules("BNBUSDT")

    assert "signature=" not in _sent_url(client.session)
    assert rules.tick_size == Decimal("0.01")
    assert rules.price_precision == 2
    assert rules.step_size == Decimal("0.001")
    assert rules.quantity_precision == 3
    assert rules.min_qty == Decimal("0.001")
    assert rules.min_notional == Decimal("5")
    assert (rules.base_asset, rules.quote_asset) == ("BNB", "USDT")


def test_fetch_symbol_rules_unknown_symbol(client):
    client.session.request.return_value = _response(400, {"code": -1121, "msg": "Invalid symbol."})

    with pytest.raises(MetadataUnavailable):
        client.fetch_symbol_rules("NOPE")


def test_fetch_symbol_rules_rejects_payload_for_another_symbol(client):
    client.session.request.return_value = _response(
        200, {"symbols": [{"symbol": "ETHUSDT", "status": "TRADING", "filters": []}]}
    )

    with pytest.raises(MetadataUnavailable):
        client.fetch_symbol_rules("BNBUSDT")


def test_place_market_sell_is_signed_and_has_no_price(client):
    client.session.request.return_value = _response(
        200, {"orderId": 44, "clientOrderId": "GEXIT_1", "status": "FILLED", "symbol": "BNBUSDT"}
    )

    ack = client.place_market_sell("BNBUSDT", Decimal("0.25"), client_id="GEXIT_1")

    method, url = client.session.request.call_args[0]
    assert method == "POST"
    assert url.startswith(f"{TESTNET_API_URL}/api/v3/order?")
    assert "side=SELL" in url
    assert "type=MARKET" in url
    assert "quantity=0.25&" in url
    assert "newClientOrderId=GEXIT_1" in url
    assert "price=" not in url
    assert "timeInForce" not in url
    assert "&signature=" in url
    assert ack.order_id == 44
    assert ack.side == "SELL"
    assert ack.status == "FILLED"


def test_account_snapshot_can_hide_zero_balances(client):
    client.session.request.return_value = _response(
        200,
        {
            "balances": [
                {"asset": "BNB", "free": "1.5", "locked": "0.5"},
                {"asset": "ETH", "free": "0.00000000", "locked": "0.00000000"},
            ]
        },
    )

    balances = client.get_account_snapshot(hide_zero=True)

    assert list(balances) == ["BNB"]
    assert balances["BNB"].total == Decimal("2.0")


def test_listen_key_lifecycle_is_unsigned(client):
    client.session.request.side_effect = [
        _response(200, {"listenKey": "lk-1"}),
        _response(200, {}),
        _response(200, {}),
    ]

    assert client.create_listen_key() == "lk-1"
    client.keepalive_listen_key("lk-1")
    client.close_listen_key("lk-1")

    methods = [call[0][0] for call in client.session.request.call_args_list]
    assert methods == ["POST", "PUT", "DELETE"]
    assert all("signature=" not in call[0][1] for call in client.session.request.call_args_list)
    assert _sent_url(client.session).endswith("/api/v3/userDataStream?listenKey=lk-1")
