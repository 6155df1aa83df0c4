# backend/marketsync/middleware/__init__.py
"""
HTTP middleware: correlation IDs and slowapi rate limiting.

Routers import the limiter and their limit strings from
marketsync.middleware.rate_limit directly; main.py wires the rest.
"""

from marketsync.middleware.correlation import CorrelationIdMiddleware
from marketsync.middleware.rate_limit import (
    limiter,
    rate_limit_exceeded_handler,
    SlowAPIMiddleware,
    RATE_LIMIT_HEALTH,
)

__all__ = [
    "CorrelationIdMiddleware",
    "limiter",
    "rate_limit_exceeded_handler",
    "SlowAPIMiddleware",
    "RATE_LIMIT_HEALTH",
]
