from __future__ import annotations

import logging
import os
from dataclasses import fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import appdirs  # type: ignore[import-untyped]
import yaml  # type: ignore[import-untyped]

from grid_bot.config_models import AppConfig, ExchangeConfig, GridConfig, StreamsConfig

logger = logging.getLogger(__name__)

ALLOWED_ENVS = {"testnet", "live"}
DEFAULT_ENV = "testnet"
ENV_VAR = "GRID_BOT_ENV"


def get_config_dir() -> Path:
    """
    Returns the OS-specific configuration directory for the bot using appdirs.
    """
    return Path(appdirs.user_config_dir("grid_bot"))


def get_data_dir() -> Path:
    return Path(appdirs.user_data_dir("grid_bot"))


def _deep_merge_dicts(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml_mapping(path: Path, event: str) -> Dict[str, Any]:
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        logger.warning(
            "Configuration file is not a mapping; ignoring it",
            extra={"event": event, "config_path": str(path)},
        )
        return {}
    return data


class _SectionParser:
    """Reads one config section, falling back to defaults on invalid values."""

    def __init__(self, name: str, data: Any, config_path: Path):
        self.name = name
        self.config_path = config_path
        if not isinstance(data, dict):
            if data is not None:
                self._warn(None, data, f"config_invalid_{name}")
            data = {}
        self.data = data

    def _warn(self, key: Optional[str], value: Any, event: str) -> None:
        field_name = f"{self.name}.{key}" if key else self.name
        logger.warning(
            "%s is invalid; using default",
            field_name,
            extra={"event": event, "config_path": str(self.config_path), "value": repr(value)},
        )

    def positive_float(self, key: str, default: float, allow_zero: bool = False) -> float:
        value = self.data.get(key, default)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if value > 0 or (allow_zero and value == 0):
                return float(value)
        self._warn(key, value, f"config_invalid_{self.name}_{key}")
        return default

    def positive_int(self, key: str, default: int, allow_zero: bool = False) -> int:
        value = self.data.get(key, default)
        if isinstance(value, int) and not isinstance(value, bool):
            if value > 0 or (allow_zero and value == 0):
                return value
        self._warn(key, value, f"config_invalid_{self.name}_{key}")
        return default

    def positive_decimal(self, key: str, default: Decimal) -> Decimal:
        value = self.data.get(key, default)
        try:
            number = value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, ValueError):
            number = None
        if number is not None and not isinstance(value, bool) and number.is_finite() and number > 0:
            return number
        self._warn(key, value, f"config_invalid_{self.name}_{key}")
        return default

    def boolean(self, key: str, default: bool) -> bool:
        value = self.data.get(key, default)
        if isinstance(value, bool):
            return value
        self._warn(key, value, f"config_invalid_{self.name}_{key}")
        return default

    def string(self, key: str, default: Optional[str]) -> Optional[str]:
        value = self.data.get(key, default)
        if value is None or isinstance(value, str):
            return value
        self._warn(key, value, f"config_invalid_{self.name}_{key}")
        return default


def _resolve_env(env: Optional[str], config_path: Path) -> str:
    requested = env if env is not None else os.environ.get(ENV_VAR)
    if requested is None:
        return DEFAULT_ENV
    if requested not in ALLOWED_ENVS:
        logger.warning(
            "Invalid environment '%s'; defaulting to '%s'",
            requested,
            DEFAULT_ENV,
            extra={"event": "config_invalid_env", "config_path": str(config_path)},
        )
        return DEFAULT_ENV
    return requested


def load_config(config_path: Optional[Path] = None, env: Optional[str] = None) -> AppConfig:
    """
    Loads ``config.yaml`` (default: the per-user config dir), overlays
    ``config.<env>.yaml`` when present and returns a validated AppConfig.
    A missing file yields defaults.
    """
    if config_path is None:
        config_path = get_config_dir() / "config.yaml"
    config_path = Path(config_path).expanduser()

    effective_env = _resolve_env(env, config_path)

    if not config_path.exists():
        logger.warning(
            "Configuration file not found; using defaults",
            extra={"event": "config_missing_file", "config_path": str(config_path)},
        )
        raw_config: Dict[str, Any] = {}
    else:
        raw_config = _read_yaml_mapping(config_path, "config_invalid_format")

    env_config_path = config_path.parent / f"config.{effective_env}.yaml"
    if env_config_path.exists():
        env_config = _read_yaml_mapping(env_config_path, "config_invalid_env_file")
        raw_config = _deep_merge_dicts(raw_config, env_config)

    exchange = _SectionParser("exchange", raw_config.get("exchange"), config_path)
    exchange_defaults = ExchangeConfig()
    exchange_config = ExchangeConfig(
        use_testnet=exchange.boolean("use_testnet", effective_env != "live"),
        rest_base_url=exchange.string("rest_base_url", None),
        price_stream_url=exchange.string("price_stream_url", None),
        user_stream_url=exchange.string("user_stream_url", None),
        recv_window=exchange.positive_int("recv_window", exchange_defaults.recv_window),
        request_timeout_sec=exchange.positive_float(
            "request_timeout_sec", exchange_defaults.request_timeout_sec
        ),
    )
    if effective_env == "live" and exchange_config.use_testnet:
        logger.warning(
            "Live environment selected but exchange.use_testnet is true",
            extra={"event": "config_live_on_testnet", "config_path": str(config_path)},
        )

    grid = _SectionParser("grid", raw_config.get("grid"), config_path)
    grid_defaults = GridConfig()
    symbol = grid.string("symbol", grid_defaults.symbol) or grid_defaults.symbol
    min_price = grid.positive_decimal("min_price", grid_defaults.min_price)
    max_price = grid.positive_decimal("max_price", grid_defaults.max_price)
    if min_price > max_price:
        logger.warning(
            "grid.min_price exceeds grid.max_price; using default range",
            extra={"event": "config_invalid_grid_range", "config_path": str(config_path)},
        )
        min_price, max_price = grid_defaults.min_price, grid_defaults.max_price

    grid_config = GridConfig(
        symbol=symbol.upper(),
        step_percent=grid.positive_decimal("step_percent", grid_defaults.step_percent),
        min_price=min_price,
        max_price=max_price,
        target_buy_count=grid.positive_int("target_buy_count", grid_defaults.target_buy_count, allow_zero=True),
        quote_per_level=grid.positive_decimal("quote_per_level", grid_defaults.quote_per_level),
        time_in_force=grid.string("time_in_force", grid_defaults.time_in_force) or grid_defaults.time_in_force,
        loop_interval_sec=grid.positive_float("loop_interval_sec", grid_defaults.loop_interval_sec),
        placement_delay_sec=grid.positive_float(
            "placement_delay_sec", grid_defaults.placement_delay_sec, allow_zero=True
        ),
        ask_max_age_sec=grid.positive_float("ask_max_age_sec", grid_defaults.ask_max_age_sec),
        reservation_ttl_sec=grid.positive_float("reservation_ttl_sec", grid_defaults.reservation_ttl_sec),
        snapshot_interval_sec=grid.positive_float(
            "snapshot_interval_sec", grid_defaults.snapshot_interval_sec, allow_zero=True
        ),
    )

    streams = _SectionParser("streams", raw_config.get("streams"), config_path)
    streams_defaults = StreamsConfig()
    streams_config = StreamsConfig(
        **{
            f.name: streams.positive_float(f.name, getattr(streams_defaults, f.name))
            for f in fields(StreamsConfig)
        }
    )

    catalog_path = raw_config.get("catalog_path")
    if catalog_path is not None and not isinstance(catalog_path, str):
        logger.warning(
            "catalog_path is not a string; using default",
            extra={"event": "config_invalid_catalog_path", "config_path": str(config_path)},
        )
        catalog_path = None

    return AppConfig(
        env=effective_env,
        exchange=exchange_config,
        grid=grid_config,
        streams=streams_config,
        catalog_path=catalog_path,
    )
