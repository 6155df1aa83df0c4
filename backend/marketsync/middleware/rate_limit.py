# backend/marketsync/middleware/rate_limit.py
"""
Rate limiting for the HTTP API using slowapi.

Ingestion triggers are the most restricted: every run fans out to Yahoo
Finance for each registered asset, so abuse would exhaust the provider quota
and trip the provider circuit breaker.

Keys:
- Requests with a bearer credential (cron, admin) are keyed by a digest of
  the credential, so a cron platform rotating egress IPs is still one caller.
- Everything else is keyed by client IP; forwarded headers are honoured only
  from trusted proxies.

Storage: in-memory. Disabled when ENVIRONMENT=test.

Usage:
    from marketsync.middleware.rate_limit import limiter, RATE_LIMIT_SEARCH

    @router.get("/search")
    @limiter.limit(RATE_LIMIT_SEARCH)
    def search(request: Request, ...):
        ...
"""

import hashlib
import logging

from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from marketsync.config import settings
from marketsync.services.constants import (
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_WRITE,
    RATE_LIMIT_INGESTION,
    RATE_LIMIT_SEARCH,
    RATE_LIMIT_HEALTH,
)

logger = logging.getLogger(__name__)

BEARER_PREFIX = "bearer "


def client_ip(request: Request) -> str:
    """Client address, taken from X-Forwarded-For / X-Real-IP behind a trusted proxy."""
    peer = get_remote_address(request)
    if not (settings.trust_proxy_headers or peer in settings.trusted_proxy_ips):
        return peer

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or peer


def rate_limit_key(request: Request) -> str:
    authorization = request.headers.get("Authorization", "")
    if authorization.lower().startswith(BEARER_PREFIX):
        token = authorization[len(BEARER_PREFIX):].strip()
        if token:
            return "bearer:" + hashlib.sha256(token.encode()).hexdigest()[:16]
    return "ip:" + client_ip(request)


limiter = Limiter(
    key_func=rate_limit_key,
    default_limits=[RATE_LIMIT_DEFAULT],
    enabled=not settings.is_test,
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with the standard error body; Retry-After is the limit's window."""
    retry_after = exc.limit.limit.get_expiry()
    logger.warning(f"Rate limit exceeded on {request.url.path} for {rate_limit_key(request)}: {exc.detail}")

    return JSONResponse(
        status_code=429,
        content={
            "error": "RateLimitExceeded",
            "message": f"Too many requests: {exc.detail}",
            "details": {"retry_after": retry_after, "path": request.url.path},
        },
        headers={"Retry-After": str(retry_after)},
    )


__all__ = [
    "limiter",
    "client_ip",
    "rate_limit_key",
    "rate_limit_exceeded_handler",
    "SlowAPIMiddleware",
    "RATE_LIMIT_DEFAULT",
    "RATE_LIMIT_WRITE",
    "RATE_LIMIT_INGESTION",
    "RATE_LIMIT_SEARCH",
    "RATE_LIMIT_HEALTH",
]
