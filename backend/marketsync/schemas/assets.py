# backend/marketsync/schemas/assets.py
"""
Pydantic schemas for the asset registry, search and price endpoints.

AssetCreate keeps every field optional in the wire format:
a missing field is reported by the registry as a 400 ValidationError,
the same error as an empty one.
"""

import datetime as dt
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from marketsync.services.freshness import FreshnessStatus


# =============================================================================
# REGISTRY
# =============================================================================

class AssetCreate(BaseModel):
    """Body of POST /assets."""

    ticker: str | None = Field(default=None, max_length=20, examples=["PETR4", "AAPL"])
    name: str | None = Field(default=None, max_length=255, examples=["Petrobras PN"])
    currency: str | None = Field(default=None, max_length=3, examples=["BRL", "USD"])
    market: str | None = Field(default=None, max_length=20, examples=["B3", "NASDAQ"])
    decimals: int = Field(default=2, description="Presentation precision for prices")
    min_lot_size: Decimal = Field(default=Decimal(1), description="Minimum tradable quantity")


class AssetUpdate(BaseModel):
    """
    Body of PATCH /assets/{ticker}.

    Only the fields sent are changed. The ticker cannot be changed.
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, max_length=255)
    currency: str | None = Field(default=None, max_length=3)
    market: str | None = Field(default=None, max_length=20)
    decimals: int | None = None
    min_lot_size: Decimal | None = None


class AssetResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticker: str
    name: str
    currency: str
    market: str
    decimals: int
    min_lot_size: Decimal
    is_active: bool
    created_at: dt.datetime
    updated_at: dt.datetime


class AssetExistsResponse(BaseModel):
    """Returned with 200 when POST /assets names an existing ticker."""

    message: str = "Asset already exists"
    asset: AssetResponse


# =============================================================================
# SEARCH
# =============================================================================

class AssetQuoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticker: str
    name: str
    currency: str
    market: str
    decimals: int
    min_lot_size: Decimal
    price: Decimal = Field(..., description="Close as of the requested date; 0 when unknown")


class AssetSearchResponse(BaseModel):
    assets: list[AssetQuoteResponse] = Field(default_factory=list)
    total: int = 0


# =============================================================================
# PRICE HISTORY
# =============================================================================

class PricePoint(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: dt.date
    open: Decimal | None = None
    high: Decimal | None = None
    low: Decimal | None = None
    close: Decimal
    volume: int | None = None


class AssetSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticker: str
    name: str
    currency: str
    market: str


class PricePeriod(BaseModel):
    start_date: dt.date | None
    end_date: dt.date | None
    total_days: int


class PriceHistoryResponse(BaseModel):
    asset: AssetSummary
    prices: list[PricePoint]
    period: PricePeriod


# =============================================================================
# FRESHNESS
# =============================================================================

class AssetFreshnessResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticker: str
    name: str
    currency: str
    market: str
    last_update: dt.date | None
    days_ago: int | None
    status: FreshnessStatus


class FreshnessResponse(BaseModel):
    success: bool = True
    totals: dict
    assets: list[AssetFreshnessResponse]
    last_check: dt.datetime
