# src/grid_bot/connection/exceptions.py

from typing import Optional

UNKNOWN_ORDER_CODE = -2011
TIMESTAMP_OUTSIDE_RECV_WINDOW_CODE = -1021


class ExchangeError(Exception):
    """Base exception for all exchange related errors."""
    pass


class TransportError(ExchangeError):
    """Raised when the venue cannot be reached (connection failure, timeout)."""
    pass


class ExchangeTransportError(TransportError):
    """Raised when a non-2xx response carries a body that is not a venue error payload."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code}: {body[:500]}")


class ExchangeApiError(ExchangeError):
    """Raised when the venue rejects a request with a ``{code, msg}`` payload."""

    def __init__(self, code: int, message: str, status_code: Optional[int] = None):
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(f"Binance API error {code}: {message}")

    @property
    def is_unknown_order(self) -> bool:
        return self.code == UNKNOWN_ORDER_CODE

    @property
    def is_timestamp_error(self) -> bool:
        return self.code == TIMESTAMP_OUTSIDE_RECV_WINDOW_CODE


class MetadataUnavailable(ExchangeError):
    """Raised when exchange metadata for a symbol cannot be obtained."""

    def __init__(self, symbol: str, reason: str = "symbol not listed"):
        self.symbol = symbol
        super().__init__(f"Exchange metadata unavailable for {symbol}: {reason}")


class LocalValidationError(ExchangeError):
    """Raised when an order would violate venue filters; no request is sent."""
    pass


class BelowMinQty(LocalValidationError):
    """Raised when the step-aligned quantity is below the venue minimum quantity."""
    pass


class BelowMinNotional(LocalValidationError):
    """Raised when price x quantity is below the venue minimum notional."""
    pass


class ParseError(ExchangeError):
    """Raised when an inbound stream message cannot be decoded."""
    pass
