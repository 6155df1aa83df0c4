# backend/marketsync/utils/__init__.py
"""Logging, correlation IDs and SQL helpers shared by every layer."""

from marketsync.utils.context import (
    clear_correlation_id,
    correlation_scope,
    get_correlation_id,
    set_correlation_id,
)
from marketsync.utils.logging import setup_logging
from marketsync.utils.sql import escape_like_pattern, storage_errors

__all__ = [
    "setup_logging",
    "get_correlation_id",
    "set_correlation_id",
    "clear_correlation_id",
    "correlation_scope",
    "escape_like_pattern",
    "storage_errors",
]
