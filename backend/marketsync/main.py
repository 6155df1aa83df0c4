# backend/marketsync/main.py
"""
FastAPI application entry point.

This file:
- Configures application-wide logging
- Creates the FastAPI application and initializes the schema at startup
- Registers global exception handlers
- Registers all routers
- Defines global endpoints (health checks)
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from marketsync.config import settings
from marketsync.database import check_database_health, init_database
from marketsync.dependencies import get_market_data_provider
from marketsync.middleware import (
    CorrelationIdMiddleware,
    limiter,
    rate_limit_exceeded_handler,
    SlowAPIMiddleware,
    RATE_LIMIT_HEALTH,
)
from marketsync.routers import assets, ingestion
from marketsync.schemas.errors import ErrorDetail, ValidationErrorDetail
from marketsync.services.circuit_breaker import CircuitBreakerOpen
from marketsync.services.exceptions import (
    AssetNotFoundError,
    AuthError,
    MarketDataError,
    NotFoundError,
    RateLimitError,
    RunInProgressError,
    ServiceError,
    StorageUnavailableError,
    ValidationError,
)
from marketsync.utils import setup_logging

logger = logging.getLogger(__name__)

# =============================================================================
# LOGGING SETUP (must be before app creation)
# =============================================================================

setup_logging()


# =============================================================================
# APPLICATION SETUP
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Schema exists before the first request; handlers never check for it
    init_database()
    yield


app = FastAPI(
    title=settings.app_name,
    description="Daily market price ingestion and asset registry API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# =============================================================================
# MIDDLEWARE (order matters: last added = first executed)
# =============================================================================

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(CorrelationIdMiddleware)


# =============================================================================
# GLOBAL EXCEPTION HANDLERS
# =============================================================================

app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


def _error_response(status_code: int, error: str, message: str, details: dict | None = None,
                    headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorDetail(error=error, message=message, details=details).model_dump(),
        headers=headers,
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle invalid input rejected by a service (400)."""
    logger.warning(f"Validation error: {exc}")
    return _error_response(
        400, "ValidationError", exc.message,
        details={"field": exc.field} if exc.field else None,
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Handle missing or wrong bearer tokens (401)."""
    logger.warning(f"Rejected credentials on {request.url.path}")
    return _error_response(401, "Unauthorized", exc.message, headers={"WWW-Authenticate": "Bearer"})


@app.exception_handler(AssetNotFoundError)
async def asset_not_found_handler(request: Request, exc: AssetNotFoundError) -> JSONResponse:
    """Handle unknown tickers (404)."""
    logger.warning(f"Asset not found: {exc.ticker}")
    return _error_response(404, "AssetNotFoundError", exc.message, details={"ticker": exc.ticker})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    """Handle other missing resources (404)."""
    return _error_response(
        404, "NotFoundError", exc.message,
        details={"resource_type": exc.resource_type, "resource_id": exc.resource_id},
    )


@app.exception_handler(RunInProgressError)
async def run_in_progress_handler(request: Request, exc: RunInProgressError) -> JSONResponse:
    """Handle a trigger arriving while a run is active (409)."""
    return _error_response(
        409, "RunInProgressError", exc.message,
        details={"run_id": exc.run_id} if exc.run_id else None,
    )


@app.exception_handler(StorageUnavailableError)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError) -> JSONResponse:
    """Handle an unreachable database (503)."""
    logger.error(f"Storage unavailable: {exc.reason}")
    return _error_response(503, "StorageUnavailableError", exc.message)


@app.exception_handler(CircuitBreakerOpen)
async def circuit_breaker_handler(request: Request, exc: CircuitBreakerOpen) -> JSONResponse:
    """Handle circuit breaker open (503 with Retry-After)."""
    logger.warning(f"Circuit breaker open: {exc.breaker_name}")
    retry_after = int(exc.time_remaining) + 1
    return _error_response(
        503, "CircuitBreakerOpen",
        f"Service temporarily unavailable. The {exc.breaker_name} circuit breaker is open.",
        details={"breaker_name": exc.breaker_name, "retry_after": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(RateLimitError)
async def provider_rate_limit_handler(request: Request, exc: RateLimitError) -> JSONResponse:
    """Handle provider throttling that reached the API layer (429)."""
    logger.warning(f"Provider rate limit: {exc}")
    return _error_response(
        429, "RateLimitError", exc.message,
        details={"retry_after": exc.retry_after} if exc.retry_after else None,
    )


@app.exception_handler(MarketDataError)
async def market_data_error_handler(request: Request, exc: MarketDataError) -> JSONResponse:
    """Handle provider errors that reached the API layer (502)."""
    logger.error(f"Market data error: {exc}")
    return _error_response(502, type(exc).__name__, exc.message, details={"provider": exc.provider})


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle generic service errors (500)."""
    logger.error(f"Service error: {exc}")
    return _error_response(500, "ServiceError", exc.message)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Converts the default 422 body to ValidationErrorDetail."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=ValidationErrorDetail(details=errors).model_dump(),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: never leak exception text to the client (500)."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return _error_response(500, "InternalServerError", "An unexpected error occurred")


# =============================================================================
# ROUTERS
# =============================================================================

app.include_router(assets.router)  # /assets/*
app.include_router(ingestion.router)  # /cron/daily, /ingestion/*


# =============================================================================
# GLOBAL ENDPOINTS
# =============================================================================

@app.get("/", tags=["Health"])
@limiter.limit(RATE_LIMIT_HEALTH)
def root(request: Request):
    return {
        "message": f"Welcome to {settings.app_name}!",
        "docs": "/docs",
    }


@app.get("/health", tags=["Health"])
@limiter.limit(RATE_LIMIT_HEALTH)
def health_check(request: Request):
    """
    Health of the service and its dependencies.

    - 200 "healthy": database reachable, provider circuit closed
    - 200 "degraded": database reachable, provider circuit open
    - 503 "unhealthy": database unreachable
    """
    database = check_database_health()
    circuit = get_market_data_provider().breaker.snapshot()

    if database["status"] != "healthy":
        overall = "unhealthy"
    elif circuit["state"] == "open":
        overall = "degraded"
    else:
        overall = "healthy"

    body = {"status": overall, "checks": {"database": database, "provider_circuit": circuit}}
    if overall == "unhealthy":
        return JSONResponse(status_code=503, content=body)
    return body


@app.get("/health/live", tags=["Health"])
@limiter.limit(RATE_LIMIT_HEALTH)
def liveness_check(request: Request):
    """Always 200 while the process is alive; checks no dependency."""
    return {"status": "alive"}
