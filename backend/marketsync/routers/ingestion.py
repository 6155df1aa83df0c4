# backend/marketsync/routers/ingestion.py
"""
Ingestion trigger and monitoring endpoints.

- /cron/daily: called by the platform cron with CRON_SECRET
- /ingestion/force: admin-triggered incremental run or backfill
- /ingestion/status: scheduler state, 24h stats and recent runs

Runs are synchronous: the response is sent when the run has finished.
A run that failed as a whole is answered with HTTP 500 and the same
envelope, so cron monitors see the failure.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from marketsync.dependencies import get_scheduler, verify_admin_token, verify_cron_secret
from marketsync.middleware.rate_limit import limiter, RATE_LIMIT_DEFAULT, RATE_LIMIT_INGESTION
from marketsync.schemas.ingestion import (
    ForceIngestionRequest,
    IngestionEnvelope,
    IngestionRunResponse,
    IngestionStatusResponse,
    SchedulerStatusResponse,
)
from marketsync.services.ingestion.types import IngestionRun, RunStatus, Trigger
from marketsync.services.scheduler import IngestionScheduler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Ingestion"])


def _envelope(run: IngestionRun, label: str) -> JSONResponse:
    """Wrap a finished run; failed runs get HTTP 500."""
    success = run.status != RunStatus.FAILED

    if success:
        message = (
            f"{label} completed: {run.updated} updated, "
            f"{run.unchanged} unchanged, {run.failed} failed"
        )
    else:
        message = f"{label} failed: {run.error.message if run.error else 'unknown error'}"

    envelope = IngestionEnvelope(
        success=success,
        message=message,
        log=IngestionRunResponse.model_validate(run.to_dict()),
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if success else status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=envelope.model_dump(mode="json"),
    )


@router.api_route(
    "/cron/daily",
    methods=["GET", "POST"],
    response_model=IngestionEnvelope,
    dependencies=[Depends(verify_cron_secret)],
    summary="Daily incremental update (cron)",
)
@limiter.limit(RATE_LIMIT_INGESTION)
def cron_daily(
        request: Request,
        scheduler: IngestionScheduler = Depends(get_scheduler),
) -> JSONResponse:
    """
    Fetch the latest quote of every active asset.

    Requires `Authorization: Bearer <CRON_SECRET>`. Raises **409** while
    another run is in progress.
    """
    logger.info("Daily cron trigger received")
    run = scheduler.force_update(trigger=Trigger.CRON)
    return _envelope(run, "Daily update")


@router.post(
    "/ingestion/force",
    response_model=IngestionEnvelope,
    dependencies=[Depends(verify_admin_token)],
    summary="Force an ingestion run",
)
@limiter.limit(RATE_LIMIT_INGESTION)
def force_ingestion(
        request: Request,
        body: ForceIngestionRequest = ForceIngestionRequest(),
        scheduler: IngestionScheduler = Depends(get_scheduler),
) -> JSONResponse:
    """
    Run an incremental update or a full backfill now.

    `tickers` omitted means every active asset. For `full-backfill`,
    tickers already holding a full history are skipped unless
    `replace_existing` is true. Raises **409** while another run is in
    progress and **400** for an inverted date range.
    """
    if body.mode == "incremental":
        if body.tickers is None:
            run = scheduler.force_update(trigger=Trigger.FORCED)
        else:
            run = scheduler.run_tickers(body.tickers, trigger=Trigger.FORCED)
        return _envelope(run, "Incremental update")

    run = scheduler.run_backfill(
        tickers=body.tickers,
        from_date=body.from_date,
        to_date=body.to_date,
        replace_existing=body.replace_existing,
        trigger=Trigger.BULK_BACKFILL,
    )
    return _envelope(run, "Backfill")


@router.get(
    "/ingestion/status",
    response_model=IngestionStatusResponse,
    dependencies=[Depends(verify_admin_token)],
    summary="Scheduler status and recent runs",
)
@limiter.limit(RATE_LIMIT_DEFAULT)
def ingestion_status(
        request: Request,
        limit: int = Query(default=20, ge=1, le=100),
        scheduler: IngestionScheduler = Depends(get_scheduler),
) -> IngestionStatusResponse:
    return IngestionStatusResponse(
        status=SchedulerStatusResponse.model_validate(scheduler.status()),
        stats=scheduler.get_stats(),
        runs=[IngestionRunResponse.model_validate(run.to_dict()) for run in scheduler.get_runs(limit)],
    )
