# backend/marketsync/dependencies.py
"""
Dependency injection module for FastAPI services.

Services are process-wide singletons, lazily created on first use. The
scheduler in particular must be unique: its lock is what guarantees a
single ingestion run per process, and the provider's throttle and circuit
breaker only work if every run shares them.

Usage in routers:
    from marketsync.dependencies import get_scheduler, verify_cron_secret

    @router.get("/cron/daily", dependencies=[Depends(verify_cron_secret)])
    def daily(scheduler: IngestionScheduler = Depends(get_scheduler)):
        ...
"""

import logging
import secrets
from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from marketsync.config import settings
from marketsync.services.exceptions import AuthError
from marketsync.services.freshness import FreshnessService
from marketsync.services.ingestion.pipeline import IngestionPipeline
from marketsync.services.market_data.base import MarketDataProvider, provider_breaker
from marketsync.services.market_data.throttle import RequestThrottle
from marketsync.services.market_data.yahoo import YahooFinanceProvider
from marketsync.services.notifications import ErrorNotifier
from marketsync.services.price_store import HistoricalPriceStore
from marketsync.services.registry import AssetRegistry
from marketsync.services.scheduler import IngestionScheduler
from marketsync.services.search import SearchService

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


# =============================================================================
# SINGLETON SERVICE INSTANCES
# =============================================================================
# Order matters: define dependencies before dependents
# 1. get_market_data_provider (no deps)
# 2. get_asset_registry, get_price_store (no deps)
# 3. get_ingestion_pipeline (provider, registry, store)
# 4. get_scheduler (pipeline)
# 5. get_search_service, get_freshness_service (registry, store)


@lru_cache(maxsize=1)
def get_market_data_provider() -> MarketDataProvider:
    """
    Get the singleton provider with its shared throttle and circuit breaker.
    """
    logger.debug("Initializing singleton YahooFinanceProvider")
    throttle = RequestThrottle(
        provider="yahoo",
        min_interval=settings.provider_min_request_interval,
        max_concurrency=settings.provider_max_concurrency,
        acquire_timeout=settings.provider_acquire_timeout,
    )
    breaker = provider_breaker("yahoo")
    return YahooFinanceProvider(
        timeout=settings.provider_timeout_seconds,
        throttle=throttle,
        breaker=breaker,
        max_retry_attempts=settings.provider_max_retry_attempts,
    )


@lru_cache(maxsize=1)
def get_asset_registry() -> AssetRegistry:
    return AssetRegistry()


@lru_cache(maxsize=1)
def get_price_store() -> HistoricalPriceStore:
    return HistoricalPriceStore()


@lru_cache(maxsize=1)
def get_ingestion_pipeline() -> IngestionPipeline:
    logger.debug("Initializing singleton IngestionPipeline")
    return IngestionPipeline(
        provider=get_market_data_provider(),
        registry=get_asset_registry(),
        store=get_price_store(),
    )


@lru_cache(maxsize=1)
def get_scheduler() -> IngestionScheduler:
    """The one scheduler of this process."""
    logger.debug("Initializing singleton IngestionScheduler")
    return IngestionScheduler(
        pipeline=get_ingestion_pipeline(),
        notifier=ErrorNotifier(settings.error_webhook_url, app_name=settings.app_name),
    )


@lru_cache(maxsize=1)
def get_search_service() -> SearchService:
    return SearchService(registry=get_asset_registry(), store=get_price_store())


@lru_cache(maxsize=1)
def get_freshness_service() -> FreshnessService:
    return FreshnessService(registry=get_asset_registry(), store=get_price_store())


# =============================================================================
# BEARER TOKEN CHECKS
# =============================================================================

def _check_bearer(credentials: HTTPAuthorizationCredentials | None, expected: str | None, label: str) -> None:
    # An unset secret rejects every caller
    if not expected:
        logger.warning(f"{label} rejected: secret not configured")
        raise AuthError(f"{label} is not configured")

    if credentials is None or not secrets.compare_digest(
            credentials.credentials.encode(), expected.encode()
    ):
        logger.warning(f"{label} rejected: invalid or missing bearer token")
        raise AuthError()


def verify_cron_secret(
        credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Require `Authorization: Bearer <CRON_SECRET>`."""
    _check_bearer(credentials, settings.cron_secret, "Cron trigger")


def verify_admin_token(
        credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Require `Authorization: Bearer <ADMIN_API_TOKEN>`."""
    _check_bearer(credentials, settings.admin_api_token, "Admin request")
