from .models import (
    OrderUpdate,
    PriceStreamState,
    PriceStreamStatus,
    Ticker,
    UserStreamState,
    UserStreamStatus,
)
from .price_stream import PriceStream
from .user_stream import UserDataStream

__all__ = [
    "OrderUpdate",
    "PriceStream",
    "PriceStreamState",
    "PriceStreamStatus",
    "Ticker",
    "UserDataStream",
    "UserStreamState",
    "UserStreamStatus",
]
