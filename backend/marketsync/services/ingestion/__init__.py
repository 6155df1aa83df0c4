# backend/marketsync/services/ingestion/__init__.py
"""
Ingestion pipeline and its run/outcome types.

Usage:
    from marketsync.services.ingestion import IngestionPipeline, IncrementalMode, Trigger
"""

from marketsync.services.ingestion.pipeline import IngestionPipeline
from marketsync.services.ingestion.types import (
    BackfillMode,
    IncrementalMode,
    IngestionMode,
    IngestionRun,
    RunError,
    RunStatus,
    TickerOutcome,
    TickerStatus,
    Trigger,
)

__all__ = [
    "IngestionPipeline",
    "BackfillMode",
    "IncrementalMode",
    "IngestionMode",
    "IngestionRun",
    "RunError",
    "RunStatus",
    "TickerOutcome",
    "TickerStatus",
    "Trigger",
]
