# src/grid_bot/connection/__init__.py

from .exceptions import (
    BelowMinNotional,
    BelowMinQty,
    ExchangeApiError,
    ExchangeError,
    ExchangeTransportError,
    LocalValidationError,
    MetadataUnavailable,
    ParseError,
    TransportError,
)
from .models import Balance, ExchangeSymbolRules, OpenOrder, OrderAck
from .rest_client import BinanceSpotClient

__all__ = [
    "Balance",
    "BelowMinNotional",
    "BelowMinQty",
    "BinanceSpotClient",
    "ExchangeApiError",
    "ExchangeError",
    "ExchangeSymbolRules",
    "ExchangeTransportError",
    "LocalValidationError",
    "MetadataUnavailable",
    "OpenOrder",
    "OrderAck",
    "ParseError",
    "TransportError",
]
