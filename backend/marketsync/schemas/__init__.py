# backend/marketsync/schemas/__init__.py
"""
Pydantic schemas for API request/response validation.

- assets: registry, search, price history, freshness
- errors: error response formats
- ingestion: trigger envelope, run log, scheduler status
"""

from marketsync.schemas.assets import (
    AssetCreate,
    AssetUpdate,
    AssetResponse,
    AssetExistsResponse,
    AssetQuoteResponse,
    AssetSearchResponse,
    PricePoint,
    PriceHistoryResponse,
    AssetFreshnessResponse,
    FreshnessResponse,
)
from marketsync.schemas.errors import ErrorDetail, ValidationErrorDetail
from marketsync.schemas.ingestion import (
    ForceIngestionRequest,
    IngestionEnvelope,
    IngestionRunResponse,
    IngestionStatusResponse,
    SchedulerStatusResponse,
)

__all__ = [
    "AssetCreate",
    "AssetUpdate",
    "AssetResponse",
    "AssetExistsResponse",
    "AssetQuoteResponse",
    "AssetSearchResponse",
    "PricePoint",
    "PriceHistoryResponse",
    "AssetFreshnessResponse",
    "FreshnessResponse",
    "ErrorDetail",
    "ValidationErrorDetail",
    "ForceIngestionRequest",
    "IngestionEnvelope",
    "IngestionRunResponse",
    "IngestionStatusResponse",
    "SchedulerStatusResponse",
]
