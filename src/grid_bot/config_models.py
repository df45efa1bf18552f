from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


@dataclass
class ExchangeConfig:
    use_testnet: bool = True
    rest_base_url: Optional[str] = None
    price_stream_url: Optional[str] = None
    user_stream_url: Optional[str] = None
    recv_window: int = 5000
    request_timeout_sec: float = 15.0


@dataclass
class GridConfig:
    symbol: str = "BNBUSDT"
    step_percent: Decimal = Decimal("0.25")
    min_price: Decimal = Decimal("1")
    max_price: Decimal = Decimal("10000")
    target_buy_count: int = 30
    quote_per_level: Decimal = Decimal("10")
    time_in_force: str = "GTC"
    loop_interval_sec: float = 4.0
    placement_delay_sec: float = 0.12
    ask_max_age_sec: float = 10.0
    reservation_ttl_sec: float = 120.0
    snapshot_interval_sec: float = 60.0


@dataclass
class StreamsConfig:
    stale_after_sec: float = 15.0
    watchdog_interval_sec: float = 3.0
    price_backoff_cap_sec: float = 10.0
    user_backoff_base_sec: float = 2.0
    user_backoff_factor: float = 1.7
    user_backoff_cap_sec: float = 20.0
    keepalive_interval_sec: float = 30 * 60.0


@dataclass
class AppConfig:
    env: str = "testnet"
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    grid: GridConfig = field(default_factory=GridConfig)
    streams: StreamsConfig = field(default_factory=StreamsConfig)
    catalog_path: Optional[str] = None
