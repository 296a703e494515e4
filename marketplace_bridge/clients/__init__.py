"""Expose constructed client wrappers."""

from .marketplace_api import MarketplaceApiClient
from .marketplace_auth import MarketplaceOAuthClient
from .payments_api import PaymentsClient
from .sqlite_store import SQLiteStore

__all__ = [
    "MarketplaceApiClient",
    "MarketplaceOAuthClient",
    "PaymentsClient",
    "SQLiteStore",
]
