# backend/marketsync/routers/assets.py
"""
Asset registry, search, price history and freshness endpoints.

Static paths (/search, /freshness) are declared before /{ticker} so they
are not captured as tickers.
"""

import logging
from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from marketsync.database import get_db
from marketsync.dependencies import (
    get_asset_registry,
    get_freshness_service,
    get_price_store,
    get_search_service,
    verify_admin_token,
)
from marketsync.middleware.rate_limit import limiter, RATE_LIMIT_DEFAULT, RATE_LIMIT_SEARCH, RATE_LIMIT_WRITE
from marketsync.schemas.assets import (
    AssetCreate,
    AssetExistsResponse,
    AssetFreshnessResponse,
    AssetQuoteResponse,
    AssetResponse,
    AssetSearchResponse,
    AssetSummary,
    AssetUpdate,
    FreshnessResponse,
    PriceHistoryResponse,
    PricePeriod,
    PricePoint,
)
from marketsync.services.freshness import FreshnessService
from marketsync.services.price_store import HistoricalPriceStore
from marketsync.services.registry import AssetRegistry
from marketsync.services.search import SearchService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/assets",
    tags=["Assets"],
)


# =============================================================================
# REGISTRY WRITES (admin)
# =============================================================================

@router.post(
    "",
    response_model=AssetResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_admin_token)],
    responses={200: {"model": AssetExistsResponse, "description": "Asset already exists"}},
    summary="Register an asset",
)
@limiter.limit(RATE_LIMIT_WRITE)
def create_asset(
        request: Request,
        body: AssetCreate,
        db: Session = Depends(get_db),
        registry: AssetRegistry = Depends(get_asset_registry),
):
    """
    Register a tradable asset.

    Returns **201** with the new asset, or **200** with
    `{"message": "Asset already exists", "asset": ...}` when the ticker is
    already registered (the stored record is not modified).
    Raises **400** when a field is missing or invalid.
    """
    asset, created = registry.upsert_asset(
        db,
        ticker=body.ticker,
        name=body.name,
        currency=body.currency,
        market=body.market,
        decimals=body.decimals,
        min_lot_size=body.min_lot_size,
    )

    if not created:
        existing = AssetExistsResponse(asset=AssetResponse.model_validate(asset))
        return JSONResponse(status_code=status.HTTP_200_OK, content=existing.model_dump(mode="json"))

    return AssetResponse.model_validate(asset)


# =============================================================================
# SEARCH / FRESHNESS
# =============================================================================

@router.get("/search", response_model=AssetSearchResponse, summary="Search assets")
@limiter.limit(RATE_LIMIT_SEARCH)
def search_assets(
        request: Request,
        q: str = Query(default="", description="Ticker prefix or name fragment"),
        simulation_date: date | None = Query(default=None, description="Price assets as of this date"),
        db: Session = Depends(get_db),
        service: SearchService = Depends(get_search_service),
) -> AssetSearchResponse:
    """
    Search active assets by ticker prefix or name.

    Each result carries the close as of `simulation_date` (default today),
    or 0 when no price is known that early. Queries shorter than two
    characters return an empty list.
    """
    quotes = service.search(db, q, simulation_date=simulation_date)
    return AssetSearchResponse(
        assets=[AssetQuoteResponse.model_validate(quote) for quote in quotes],
        total=len(quotes),
    )


@router.get("/freshness", response_model=FreshnessResponse, summary="Price history freshness")
@limiter.limit(RATE_LIMIT_DEFAULT)
def get_freshness(
        request: Request,
        db: Session = Depends(get_db),
        service: FreshnessService = Depends(get_freshness_service),
) -> FreshnessResponse:
    """How recent the stored history of every active asset is."""
    report = service.report(db)
    return FreshnessResponse(
        totals=report.totals(),
        assets=[AssetFreshnessResponse.model_validate(entry) for entry in report.assets],
        last_check=datetime.now(timezone.utc),
    )


# =============================================================================
# SINGLE ASSET
# =============================================================================

@router.get("/{ticker}", response_model=AssetResponse, summary="Get an asset")
@limiter.limit(RATE_LIMIT_DEFAULT)
def get_asset(
        request: Request,
        ticker: str,
        db: Session = Depends(get_db),
        registry: AssetRegistry = Depends(get_asset_registry),
) -> AssetResponse:
    """Raises **404** for an unknown ticker."""
    return AssetResponse.model_validate(registry.get_by_ticker(db, ticker))


@router.patch(
    "/{ticker}",
    response_model=AssetResponse,
    dependencies=[Depends(verify_admin_token)],
    summary="Correct asset metadata",
)
@limiter.limit(RATE_LIMIT_WRITE)
def update_asset(
        request: Request,
        ticker: str,
        body: AssetUpdate,
        db: Session = Depends(get_db),
        registry: AssetRegistry = Depends(get_asset_registry),
) -> AssetResponse:
    """Only the fields sent are changed; the ticker itself cannot change."""
    asset = registry.update_asset(db, ticker, **body.model_dump(exclude_unset=True))
    return AssetResponse.model_validate(asset)


@router.delete(
    "/{ticker}",
    response_model=AssetResponse,
    dependencies=[Depends(verify_admin_token)],
    summary="Deactivate an asset",
)
@limiter.limit(RATE_LIMIT_WRITE)
def deactivate_asset(
        request: Request,
        ticker: str,
        db: Session = Depends(get_db),
        registry: AssetRegistry = Depends(get_asset_registry),
) -> AssetResponse:
    """
    Soft delete: the asset leaves ingestion and search, its price history
    stays.
    """
    return AssetResponse.model_validate(registry.deactivate_asset(db, ticker))


@router.get("/{ticker}/prices", response_model=PriceHistoryResponse, summary="Price history")
@limiter.limit(RATE_LIMIT_DEFAULT)
def get_price_history(
        request: Request,
        ticker: str,
        start_date: date | None = None,
        end_date: date | None = None,
        simulation_date: date | None = Query(default=None, description="End date when end_date is absent"),
        db: Session = Depends(get_db),
        registry: AssetRegistry = Depends(get_asset_registry),
        store: HistoricalPriceStore = Depends(get_price_store),
) -> PriceHistoryResponse:
    """
    Daily prices in ascending order, at most 365 rows from the start of the
    range. Raises **404** for an unknown ticker.
    """
    asset = registry.get_by_ticker(db, ticker)
    effective_end = end_date or simulation_date
    prices = store.get_price_history(db, asset, start_date=start_date, end_date=effective_end)

    return PriceHistoryResponse(
        asset=AssetSummary.model_validate(asset),
        prices=[PricePoint.model_validate(price) for price in prices],
        period=PricePeriod(
            start_date=start_date or (prices[0].date if prices else None),
            end_date=effective_end or (prices[-1].date if prices else None),
            total_days=len(prices),
        ),
    )
