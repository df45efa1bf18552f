from .order_book import InFlightReservation, OrderBook
from .reconciler import PassSummary, ReconciliationEngine, make_client_id
from .sizing import clamp_quote_per_level, compute_buy_quantity
from .wallet import WalletTracker, WalletValuation

__all__ = [
    "InFlightReservation",
    "OrderBook",
    "PassSummary",
    "ReconciliationEngine",
    "WalletTracker",
    "WalletValuation",
    "clamp_quote_per_level",
    "compute_buy_quantity",
    "make_client_id",
]
