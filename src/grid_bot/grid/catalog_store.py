# src/grid_bot/grid/catalog_store.py

from __future__ import annotations

import json
import logging
import os
import tempfile
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

from grid_bot.config_loader import get_data_dir
from grid_bot.connection.precision import format_decimal, to_decimal
from grid_bot.logging_config import structured_log_extra

from .catalog import CatalogError, PriceLadderCatalog, PriceLevel

logger = logging.getLogger(__name__)

CATALOG_FILENAME = "grid_catalog.json"


def get_default_catalog_path() -> Path:
    return get_data_dir() / CATALOG_FILENAME


def _encode(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def catalog_to_dict(catalog: PriceLadderCatalog) -> Dict[str, Any]:
    return {
        "symbol": catalog.symbol,
        "step_percent": format_decimal(catalog.step_percent),
        "min_price": format_decimal(catalog.min_price),
        "max_price": format_decimal(catalog.max_price),
        "levels": [
            {
                "index": level.index,
                "buy_price": _encode(level.buy_price),
                "next_sell_price": _encode(level.next_sell_price),
            }
            for level in catalog.levels
        ],
    }


def catalog_from_dict(data: Dict[str, Any]) -> PriceLadderCatalog:
    try:
        levels = [
            PriceLevel(
                index=int(entry["index"]),
                buy_price=to_decimal(entry["buy_price"]),
                next_sell_price=(
                    None if entry.get("next_sell_price") is None else to_decimal(entry["next_sell_price"])
                ),
            )
            for entry in data["levels"]
        ]
        return PriceLadderCatalog(
            symbol=data["symbol"],
            step_percent=to_decimal(data["step_percent"]),
            min_price=to_decimal(data["min_price"]),
            max_price=to_decimal(data["max_price"]),
            levels=levels,
        )
    except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
        if isinstance(exc, CatalogError):
            raise
        raise CatalogError(f"Invalid catalog document: {exc}") from exc


class CatalogStore:
    """JSON file holding one catalog; decimals are stored as strings."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path).expanduser() if path else get_default_catalog_path()

    def load(self) -> Optional[PriceLadderCatalog]:
        """Returns the stored catalog, ``None`` when absent; raises CatalogError when corrupt."""
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except ValueError as exc:
            raise CatalogError(f"Catalog file is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise CatalogError("Catalog file is not a mapping")
        return catalog_from_dict(data)

    def save(self, catalog: PriceLadderCatalog) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                delete=False,
                dir=self.path.parent,
                prefix=self.path.name,
                suffix=".tmp",
                encoding="utf-8",
            ) as f:
                tmp_path = Path(f.name)
                json.dump(catalog_to_dict(catalog), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        finally:
            if tmp_path is not None and tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    pass


def load_or_build_catalog(
    client,
    store: CatalogStore,
    symbol: str,
    step_percent: Decimal,
    min_price: Decimal,
    max_price: Decimal,
) -> PriceLadderCatalog:
    """
    Reuses the stored catalog when it was built for the same parameters and
    holds more than one level; otherwise rebuilds it from fresh exchange
    rules and persists the result.
    """
    try:
        cached = store.load()
    except (CatalogError, OSError) as exc:
        logger.warning(
            "Stored catalog unreadable; rebuilding",
            extra=structured_log_extra(
                event="catalog_corrupt", symbol=symbol, path=str(store.path), error=str(exc)
            ),
        )
        cached = None

    if cached is not None and cached.matches(symbol, step_percent, min_price, max_price) and len(cached) > 1:
        logger.info(
            "Using stored catalog",
            extra=structured_log_extra(event="catalog_loaded", symbol=symbol, levels=len(cached)),
        )
        return cached

    rules = client.fetch_symbol_rules(symbol)
    catalog = PriceLadderCatalog.build(rules, symbol, step_percent, min_price, max_price)
    store.save(catalog)
    logger.info(
        "Built price ladder catalog",
        extra=structured_log_extra(
            event="catalog_built", symbol=symbol, levels=len(catalog), path=str(store.path)
        ),
    )
    return catalog
