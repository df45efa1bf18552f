"""Convenience bootstrapper for loading config, credentials, and a REST client."""

import logging
from pathlib import Path
from typing import Optional, Tuple

from grid_bot.config import AppConfig, load_config
from grid_bot.connection.rest_client import BinanceSpotClient
from grid_bot.credentials import (
    API_KEY_ENV,
    API_SECRET_ENV,
    CredentialResult,
    CredentialStatus,
    load_api_keys,
)

logger = logging.getLogger(__name__)


class CredentialBootstrapError(RuntimeError):
    """Raised when credentials cannot be prepared for the REST client."""


def _validate_credentials(result: CredentialResult) -> Tuple[str, str]:
    """Ensure credentials are loaded and usable for the REST client."""

    if result.status is CredentialStatus.INCOMPLETE:
        logger.error(
            "Only one of the API key pair is set",
            extra={"event": "credentials_incomplete", "source": result.source},
        )
        raise CredentialBootstrapError(
            f"Both {API_KEY_ENV} and {API_SECRET_ENV} must be set."
        )

    if result.status is not CredentialStatus.LOADED or not result.api_key or not result.api_secret:
        raise CredentialBootstrapError(
            f"Binance API credentials not found; set {API_KEY_ENV} and {API_SECRET_ENV}."
        )

    logger.info(
        "Loaded API credentials",
        extra={"event": "credentials_loaded", "source": result.source},
    )
    return result.api_key, result.api_secret


def build_client(config: AppConfig, api_key: str, api_secret: str) -> BinanceSpotClient:
    exchange = config.exchange
    return BinanceSpotClient(
        api_key=api_key,
        api_secret=api_secret,
        base_url=exchange.rest_base_url,
        use_testnet=exchange.use_testnet,
        recv_window=exchange.recv_window,
        request_timeout=exchange.request_timeout_sec,
    )


def bootstrap(
    config_path: Optional[Path] = None, env: Optional[str] = None
) -> Tuple[BinanceSpotClient, AppConfig]:
    """Load configuration, fetch credentials, and return a ready REST client.

    Raises:
        CredentialBootstrapError: If credentials cannot be loaded.
    """

    config = load_config(config_path=config_path, env=env)
    api_key, api_secret = _validate_credentials(load_api_keys())
    client = build_client(config, api_key, api_secret)
    logger.info(
        "Bootstrapped REST client",
        extra={
            "event": "bootstrap_complete",
            "env": config.env,
            "testnet": config.exchange.use_testnet,
            "base_url": client.base_url,
        },
    )
    return client, config


__all__ = [
    "bootstrap",
    "build_client",
    "CredentialBootstrapError",
    "AppConfig",
    "BinanceSpotClient",
]
