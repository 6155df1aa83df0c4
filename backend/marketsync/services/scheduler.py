# backend/marketsync/services/scheduler.py
"""
Ingestion scheduler: the single coordinator of ingestion runs.

State machine:

    IDLE -> RUNNING -> {COMPLETED, COMPLETED_WITH_ERRORS, FAILED} -> IDLE

At most one run is RUNNING per process. A trigger arriving meanwhile is
rejected with RunInProgressError; it is never queued or retried. Mutual
exclusion is a non-blocking threading.Lock, so the check and the claim are
a single atomic step.

Fatal pipeline errors (storage outage, provider circuit open) are caught
here: the run is marked failed with a structured error, recorded in the
history and returned to the caller like any other finished run. A failed
cron run is also posted to the error webhook.

Usage:
    scheduler = IngestionScheduler(pipeline)
    run = scheduler.force_update()          # daily cron
    run = scheduler.run_backfill(["PETR4"])  # bulk history load
"""

import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any

from marketsync.config import settings
from marketsync.services.circuit_breaker import CircuitBreakerOpen
from marketsync.services.exceptions import RunInProgressError, ServiceError, StorageUnavailableError
from marketsync.services.ingestion.pipeline import IngestionPipeline
from marketsync.services.ingestion.types import (
    BackfillMode,
    IncrementalMode,
    IngestionMode,
    IngestionRun,
    RunStatus,
    Trigger,
)
from marketsync.services.notifications import ErrorNotifier
from marketsync.utils.context import correlation_scope, get_correlation_id

logger = logging.getLogger(__name__)

STATS_WINDOW = timedelta(hours=24)


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed-with-errors"
    FAILED = "failed"


_TERMINAL_STATES = {
    RunStatus.COMPLETED: SchedulerState.COMPLETED,
    RunStatus.COMPLETED_WITH_ERRORS: SchedulerState.COMPLETED_WITH_ERRORS,
    RunStatus.FAILED: SchedulerState.FAILED,
}


class IngestionScheduler:
    """
    Serializes ingestion runs and keeps their recent history.

    Args:
        pipeline: Ingestion pipeline that executes the runs
        notifier: Failed-cron-run notifier (default: from settings)
        history_size: Finished runs kept in memory (default: settings.run_history_size)
        now: UTC clock (injectable for tests)
    """

    def __init__(
            self,
            pipeline: IngestionPipeline,
            notifier: ErrorNotifier | None = None,
            history_size: int | None = None,
            now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._pipeline = pipeline
        self._notifier = notifier or ErrorNotifier(settings.error_webhook_url, app_name=settings.app_name)
        self._now = now

        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = SchedulerState.IDLE
        self._last_outcome: SchedulerState | None = None
        self._current_run: IngestionRun | None = None
        self._last_run_finished_at: datetime | None = None
        self._runs: deque[IngestionRun] = deque(maxlen=history_size or settings.run_history_size)

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    def force_update(self, trigger: Trigger = Trigger.CRON) -> IngestionRun:
        """
        Run an incremental update over every active asset.

        Raises:
            RunInProgressError: Another run is active
        """
        return self._execute(trigger, IncrementalMode(), tickers=None)

    def run_tickers(self, tickers: list[str], trigger: Trigger = Trigger.FORCED) -> IngestionRun:
        """
        Run an incremental update restricted to the given tickers.

        Raises:
            RunInProgressError: Another run is active
        """
        return self._execute(trigger, IncrementalMode(), tickers=tickers)

    def run_backfill(
            self,
            tickers: list[str] | None = None,
            from_date: date | None = None,
            to_date: date | None = None,
            replace_existing: bool = False,
            trigger: Trigger = Trigger.BULK_BACKFILL,
    ) -> IngestionRun:
        """
        Load the daily history of the given tickers (or all active assets).

        Raises:
            ValidationError: from_date after to_date (checked before any run starts)
            RunInProgressError: Another run is active
        """
        mode = BackfillMode(from_date=from_date, to_date=to_date, replace_existing=replace_existing)
        self._pipeline.validate_mode(mode)
        return self._execute(trigger, mode, tickers=tickers)

    def _execute(self, trigger: Trigger, mode: IngestionMode, tickers: list[str] | None) -> IngestionRun:
        if not self._run_lock.acquire(blocking=False):
            current = self._current_run
            logger.warning(f"Rejected {trigger.value} trigger: run {current.run_id if current else '?'} in progress")
            raise RunInProgressError(current.run_id if current else None)

        run = IngestionRun(trigger=trigger, mode=mode.name)
        try:
            with self._state_lock:
                self._state = SchedulerState.RUNNING
                self._current_run = run

            logger.info(f"Starting {trigger.value} run {run.run_id} (requested by {get_correlation_id() or 'internal'})")
            with correlation_scope(run.run_id):
                try:
                    targets = tickers if tickers is not None else self._active_tickers()
                    self._pipeline.run_batch(targets, mode, trigger, run=run)
                except (StorageUnavailableError, CircuitBreakerOpen) as e:
                    logger.error(f"Ingestion run {run.run_id} failed: {e}")
                    run.fail(type(e).__name__, str(e))
                except ServiceError as e:
                    logger.error(f"Ingestion run {run.run_id} failed: {e}")
                    run.fail(type(e).__name__, e.message)
                except Exception as e:
                    logger.exception(f"Ingestion run {run.run_id} failed unexpectedly")
                    run.fail("UnexpectedError", f"Unexpected {type(e).__name__} during ingestion")

            self._publish(run)
            return run
        finally:
            with self._state_lock:
                self._state = SchedulerState.IDLE
                self._current_run = None
            self._run_lock.release()

    def _active_tickers(self) -> list[str]:
        with self._pipeline.session_factory() as db:
            return self._pipeline.registry.list_tickers(db, active_only=True)

    def _publish(self, run: IngestionRun) -> None:
        with self._state_lock:
            self._state = _TERMINAL_STATES[run.status]
            self._last_outcome = self._state
            self._last_run_finished_at = run.finished_at
            self._runs.appendleft(run)

        if run.status == RunStatus.FAILED and run.trigger == Trigger.CRON:
            self._notifier.notify_failed_run(run)

    # =========================================================================
    # MONITORING
    # =========================================================================

    @property
    def state(self) -> SchedulerState:
        with self._state_lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state == SchedulerState.RUNNING

    def status(self) -> dict[str, Any]:
        with self._state_lock:
            status = {
                "state": self._state.value,
                "is_running": self._state == SchedulerState.RUNNING,
                "current_run_id": self._current_run.run_id if self._current_run else None,
                "last_run_status": self._last_outcome.value if self._last_outcome else None,
                "last_run_finished_at": self._last_run_finished_at,
                "runs_recorded": len(self._runs),
            }

        breaker = self._pipeline.provider.breaker
        status["provider_circuit"] = breaker.snapshot() if breaker is not None else None
        return status

    def get_runs(self, limit: int = 20) -> list[IngestionRun]:
        """Most recent finished runs first."""
        with self._state_lock:
            return list(self._runs)[:max(limit, 0)]

    def get_stats(self) -> dict[str, Any]:
        """
        Aggregate the runs started in the last 24 hours.

        Successful runs are completed or completed-with-errors; the average
        duration and updated-ticker total are taken over those.
        """
        cutoff = self._now() - STATS_WINDOW
        with self._state_lock:
            recent = [run for run in self._runs if run.started_at >= cutoff]

        successful = [run for run in recent if run.status != RunStatus.FAILED]
        durations = [run.duration_seconds for run in successful if run.duration_seconds is not None]

        return {
            "last_24h": {
                "total_runs": len(recent),
                "successful_runs": len(successful),
                "failed_runs": len(recent) - len(successful),
                "success_rate": round(len(successful) / len(recent) * 100, 1) if recent else 0.0,
                "average_duration_seconds": round(sum(durations) / len(durations), 3) if durations else 0.0,
                "total_tickers_updated": sum(run.updated for run in successful),
            },
        }
