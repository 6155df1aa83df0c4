# backend/marketsync/services/ingestion/types.py
"""
Value types shared by the ingestion pipeline and the scheduler.

An IngestionRun is in-memory only: the scheduler keeps a bounded history of
finished runs and nothing is persisted.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, ClassVar

from marketsync.services.exceptions import ValidationError


class Trigger(str, Enum):
    """What started a run."""
    CRON = "cron"
    FORCED = "forced"
    BULK_BACKFILL = "bulk-backfill"


class TickerStatus(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed-with-errors"
    FAILED = "failed"


# =============================================================================
# MODES
# =============================================================================

@dataclass(frozen=True)
class IncrementalMode:
    """Fetch the latest quote of each ticker and store one price."""

    name: ClassVar[str] = "incremental"


@dataclass(frozen=True)
class BackfillMode:
    """
    Fetch and store the full daily series of each ticker.

    Attributes:
        from_date: First date (default: `backfill_years` before to_date)
        to_date: Last date (default: today)
        replace_existing: Re-fetch tickers that already hold a full history
    """

    name: ClassVar[str] = "full-backfill"

    from_date: date | None = None
    to_date: date | None = None
    replace_existing: bool = False

    def resolve_range(self, today: date, years: int) -> tuple[date, date]:
        """
        Fill in the default range.

        Raises:
            ValidationError: If from_date is after to_date
        """
        to_date = self.to_date or today
        from_date = self.from_date or _years_before(to_date, years)

        if from_date > to_date:
            raise ValidationError(
                f"from_date ({from_date}) must not be after to_date ({to_date})",
                field="from_date",
            )
        return from_date, to_date


IngestionMode = IncrementalMode | BackfillMode


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return day.replace(year=day.year - years, day=28)


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True)
class TickerOutcome:
    """Result of one ticker within a run."""

    status: TickerStatus
    reason: str | None = None
    samples_written: int = 0

    @classmethod
    def updated(cls, samples_written: int) -> "TickerOutcome":
        return cls(TickerStatus.UPDATED, samples_written=samples_written)

    @classmethod
    def unchanged(cls, reason: str | None = None) -> "TickerOutcome":
        return cls(TickerStatus.UNCHANGED, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "TickerOutcome":
        return cls(TickerStatus.FAILED, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "samples_written": self.samples_written,
        }


@dataclass(frozen=True)
class RunError:
    """Why a run failed as a whole. Never carries raw exception text."""

    kind: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


@dataclass
class IngestionRun:
    """
    One execution of the ingestion pipeline.

    Created in RUNNING state; finish() or fail() moves it to its final
    status exactly once.
    """

    trigger: Trigger
    mode: str
    run_id: str = field(default_factory=lambda: f"run-{uuid.uuid4().hex[:12]}")
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    per_ticker_results: dict[str, TickerOutcome] = field(default_factory=dict)
    status: RunStatus = RunStatus.RUNNING
    error: RunError | None = None

    # -------------------------------------------------------------------------
    # Counters
    # -------------------------------------------------------------------------

    def _count(self, status: TickerStatus) -> int:
        return sum(1 for outcome in self.per_ticker_results.values() if outcome.status == status)

    @property
    def updated(self) -> int:
        return self._count(TickerStatus.UPDATED)

    @property
    def unchanged(self) -> int:
        return self._count(TickerStatus.UNCHANGED)

    @property
    def failed(self) -> int:
        return self._count(TickerStatus.FAILED)

    @property
    def samples_written(self) -> int:
        return sum(outcome.samples_written for outcome in self.per_ticker_results.values())

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return round((self.finished_at - self.started_at).total_seconds(), 3)

    @property
    def is_finished(self) -> bool:
        return self.status != RunStatus.RUNNING

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def record(self, ticker: str, outcome: TickerOutcome) -> None:
        self.per_ticker_results[ticker] = outcome

    def finish(self) -> None:
        """Derive the final status from the per-ticker outcomes."""
        if self.is_finished:
            return

        total = len(self.per_ticker_results)
        failed = self.failed

        if failed == 0:
            self.status = RunStatus.COMPLETED
        elif failed < total:
            self.status = RunStatus.COMPLETED_WITH_ERRORS
        else:
            self.status = RunStatus.FAILED
            self.error = RunError("AllTickersFailed", f"All {total} tickers failed")

        self.finished_at = datetime.now(timezone.utc)

    def fail(self, kind: str, message: str) -> None:
        """Mark the whole run failed (fatal error)."""
        if self.is_finished:
            return
        self.status = RunStatus.FAILED
        self.error = RunError(kind, message)
        self.finished_at = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "trigger": self.trigger.value,
            "mode": self.mode,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "samples_written": self.samples_written,
            "per_ticker_results": {
                ticker: outcome.to_dict() for ticker, outcome in sorted(self.per_ticker_results.items())
            },
            "error": self.error.to_dict() if self.error else None,
        }
