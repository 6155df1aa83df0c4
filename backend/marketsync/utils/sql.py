# backend/marketsync/utils/sql.py
"""
SQL utility functions.

Usage:
    from marketsync.utils.sql import escape_like_pattern, storage_errors

    safe_pattern = f"{escape_like_pattern(user_input)}%"
    query = query.where(Asset.ticker.like(safe_pattern, escape="\\"))

    with storage_errors():
        db.execute(stmt)
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import InterfaceError, OperationalError

from marketsync.services.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)


def escape_like_pattern(value: str) -> str:
    """
    Escape special characters in a SQL LIKE pattern.

    `%` and `_` are LIKE wildcards and `\\` is the escape character, so user
    search text containing them must be escaped to match literally.

    Example:
        >>> escape_like_pattern("50% off")
        '50\\\\% off'
    """
    # Backslash first, otherwise the wildcard escapes get doubled
    return (
        value
        .replace("\\", "\\\\")
        .replace("%", "\\%")
        .replace("_", "\\_")
    )


@contextmanager
def storage_errors() -> Iterator[None]:
    """
    Re-raise connection-level database failures as StorageUnavailableError.

    Constraint violations and programming errors pass through unchanged;
    only "the database is unreachable" becomes a storage outage.
    """
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        logger.error(f"Database unavailable: {type(e).__name__}")
        raise StorageUnavailableError(type(e).__name__) from e
