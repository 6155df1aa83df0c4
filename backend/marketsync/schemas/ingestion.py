# backend/marketsync/schemas/ingestion.py
"""
Pydantic schemas for the ingestion triggers and scheduler status.

Trigger responses share one envelope:
    {success, message, log, timestamp}
where `log` is the finished run.
"""

import datetime as dt
from typing import Literal

from pydantic import BaseModel, Field


# =============================================================================
# RUN
# =============================================================================

class TickerOutcomeResponse(BaseModel):
    status: Literal["updated", "unchanged", "failed"]
    reason: str | None = None
    samples_written: int = 0


class RunErrorResponse(BaseModel):
    kind: str
    message: str


class IngestionRunResponse(BaseModel):
    run_id: str
    trigger: Literal["cron", "forced", "bulk-backfill"]
    mode: Literal["incremental", "full-backfill"]
    status: Literal["running", "completed", "completed-with-errors", "failed"]
    started_at: dt.datetime
    finished_at: dt.datetime | None = None
    duration_seconds: float | None = None
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    samples_written: int = 0
    per_ticker_results: dict[str, TickerOutcomeResponse] = Field(default_factory=dict)
    error: RunErrorResponse | None = None


class IngestionEnvelope(BaseModel):
    success: bool
    message: str
    log: IngestionRunResponse
    timestamp: dt.datetime


# =============================================================================
# REQUESTS
# =============================================================================

class ForceIngestionRequest(BaseModel):
    """Body of POST /ingestion/force."""

    mode: Literal["incremental", "full-backfill"] = "incremental"
    tickers: list[str] | None = Field(
        default=None,
        description="Tickers to ingest; omitted means every active asset"
    )
    from_date: dt.date | None = Field(default=None, description="Backfill start (default: 20 years ago)")
    to_date: dt.date | None = Field(default=None, description="Backfill end (default: today)")
    replace_existing: bool = Field(
        default=False,
        description="Backfill tickers that already hold a full history"
    )


# =============================================================================
# STATUS
# =============================================================================

class ProviderCircuitResponse(BaseModel):
    name: str
    state: str
    consecutive_failures: int
    retry_in_seconds: float


class SchedulerStatusResponse(BaseModel):
    state: str
    is_running: bool
    current_run_id: str | None = None
    last_run_status: str | None = None
    last_run_finished_at: dt.datetime | None = None
    runs_recorded: int
    provider_circuit: ProviderCircuitResponse | None = None


class IngestionStatusResponse(BaseModel):
    status: SchedulerStatusResponse
    stats: dict
    runs: list[IngestionRunResponse]
