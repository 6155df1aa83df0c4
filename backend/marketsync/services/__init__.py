# backend/marketsync/services/__init__.py
"""
Service layer: business logic with no HTTP knowledge.

Modules:
- market_data: provider abstraction, Yahoo Finance adapter, throttle
- circuit_breaker: provider circuit breaker
- registry: asset registry
- price_store: historical price store
- ingestion: ingestion pipeline
- scheduler: run coordination and history
- notifications: failed-run webhook
- search: simulated-date asset search
- freshness: per-asset update status report

Exceptions are re-exported here; services are imported from their modules.
"""

from marketsync.services.exceptions import (
    ServiceError,
    ValidationError,
    NotFoundError,
    AssetNotFoundError,
    MarketDataError,
    TickerNotFoundError,
    RateLimitError,
    ProviderUnavailableError,
    MalformedResponseError,
    RunInProgressError,
    StorageUnavailableError,
    AuthError,
)

__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "AssetNotFoundError",
    "MarketDataError",
    "TickerNotFoundError",
    "RateLimitError",
    "ProviderUnavailableError",
    "MalformedResponseError",
    "RunInProgressError",
    "StorageUnavailableError",
    "AuthError",
]
