from __future__ import annotations

# Re-export loader helpers
from .config_loader import ALLOWED_ENVS, get_config_dir, get_data_dir, load_config

# Re-export config models
from .config_models import AppConfig, ExchangeConfig, GridConfig, StreamsConfig

__all__ = [
    # models
    "AppConfig",
    "ExchangeConfig",
    "GridConfig",
    "StreamsConfig",
    # loader
    "ALLOWED_ENVS",
    "get_config_dir",
    "get_data_dir",
    "load_config",
]
