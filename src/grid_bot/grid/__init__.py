from .catalog import CatalogError, PriceLadderCatalog, PriceLevel
from .catalog_store import CatalogStore, load_or_build_catalog

__all__ = [
    "CatalogError",
    "CatalogStore",
    "PriceLadderCatalog",
    "PriceLevel",
    "load_or_build_catalog",
]
