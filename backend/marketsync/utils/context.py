# backend/marketsync/utils/context.py
"""
Correlation ID of the current request or ingestion run.

HTTP requests get their ID from CorrelationIdMiddleware. An ingestion run
replaces it with its run ID for the duration of the run, so every line a
run logs (worker threads included, see IngestionPipeline) shares one ID.

Usage:
    with correlation_scope(run.run_id):
        pipeline.run_batch(...)
"""

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

_correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> str | None:
    return _correlation_id_var.get()


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    _correlation_id_var.set(None)


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Use `correlation_id` inside the block, then restore the previous one."""
    token = _correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id_var.reset(token)
