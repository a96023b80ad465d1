"""
Catalog Sync - CommerceML (1C) catalog synchronization service.

This package provides the exchange protocol endpoint, product classification,
image derivatives and a cached catalog store for a retail storefront.
"""

from catalog_sync.api import create_app
from catalog_sync.classifier import Classification, classify
from catalog_sync.exceptions import (
    AuthenticationError,
    BackendError,
    ConfigurationError,
    ImageProcessingError,
    MalformedFeedError,
    MissingIdentityError,
    ObjectStoreError,
    StorageError,
    SyncError,
    ValidationError,
)
from catalog_sync.exchange import ExchangeHandler, ExchangeRequest, ExchangeResponse
from catalog_sync.models import Order, Product
from catalog_sync.store import CatalogStore

__all__ = [
    "create_app",
    "classify",
    "Classification",
    "CatalogStore",
    "ExchangeHandler",
    "ExchangeRequest",
    "ExchangeResponse",
    "Product",
    "Order",
    "SyncError",
    "AuthenticationError",
    "MalformedFeedError",
    "MissingIdentityError",
    "StorageError",
    "ObjectStoreError",
    "BackendError",
    "ImageProcessingError",
    "ValidationError",
    "ConfigurationError",
]

__version__ = "1.0.0"
