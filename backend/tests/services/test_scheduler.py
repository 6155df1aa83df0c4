# backend/tests/services/test_scheduler.py
"""
Tests for the IngestionScheduler.

This module tests:
- Mutual exclusion of runs
- Fatal errors turning into failed runs
- Failure notifications for cron runs only
- Run history, status and 24h statistics
"""

import threading
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from marketsync.services.circuit_breaker import CircuitBreakerOpen
from marketsync.services.constants import CIRCUIT_FAILURE_THRESHOLD
from marketsync.services.exceptions import (
    ProviderUnavailableError,
    RunInProgressError,
    StorageUnavailableError,
    ValidationError,
)
from marketsync.services.ingestion import IngestionPipeline, RunStatus, Trigger
from marketsync.services.market_data import provider_breaker
from marketsync.services.notifications import ErrorNotifier
from marketsync.services.scheduler import IngestionScheduler, SchedulerState
from marketsync.utils.context import clear_correlation_id, get_correlation_id, set_correlation_id
from tests.conftest import MockMarketDataProvider, create_asset, make_series


class BlockingProvider(MockMarketDataProvider):
    """Holds every quote request until `release` is set."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def _fetch_latest_quote(self, ticker, market):
        self.entered.set()
        self.release.wait(timeout=5)
        return super()._fetch_latest_quote(ticker, market)


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock(spec=ErrorNotifier)


def _scheduler(provider, session_factory, notifier, **kwargs) -> IngestionScheduler:
    pipeline = IngestionPipeline(
        provider=provider,
        session_factory=session_factory,
        max_workers=1,
        today=lambda: date(2024, 10, 15),
    )
    return IngestionScheduler(pipeline, notifier=notifier, **kwargs)


@pytest.fixture
def scheduler(mock_provider, session_factory, notifier) -> IngestionScheduler:
    return _scheduler(mock_provider, session_factory, notifier)


# =============================================================================
# TRIGGERS
# =============================================================================

class TestTriggers:

    def test_force_update_uses_active_assets(self, db, scheduler, mock_provider):
        create_asset(db, ticker="PETR4")
        create_asset(db, ticker="OLD3", is_active=False)
        mock_provider.set_quote("PETR4", "38.50")

        run = scheduler.force_update()

        assert run.trigger == Trigger.CRON
        assert run.status == RunStatus.COMPLETED
        assert list(run.per_ticker_results) == ["PETR4"]

    def test_run_tickers_restricts_batch(self, db, scheduler, mock_provider):
        create_asset(db, ticker="PETR4")
        create_asset(db, ticker="VALE3", name="Vale ON")
        mock_provider.set_quote("VALE3", "62.00")

        run = scheduler.run_tickers(["VALE3"])

        assert run.trigger == Trigger.FORCED
        assert list(run.per_ticker_results) == ["VALE3"]

    def test_run_backfill(self, db, scheduler, mock_provider):
        create_asset(db, ticker="PETR4")
        mock_provider.set_series("PETR4", make_series(date(2024, 10, 1), 5))

        run = scheduler.run_backfill(["PETR4"], from_date=date(2024, 10, 1), to_date=date(2024, 10, 5))

        assert run.trigger == Trigger.BULK_BACKFILL
        assert run.mode == "full-backfill"
        assert run.samples_written == 5

    def test_invalid_backfill_range_rejected_before_run(self, scheduler):
        with pytest.raises(ValidationError):
            scheduler.run_backfill(from_date=date(2024, 10, 5), to_date=date(2024, 10, 1))

        assert scheduler.get_runs() == []
        assert scheduler.state == SchedulerState.IDLE


# =============================================================================
# MUTUAL EXCLUSION
# =============================================================================

class TestMutualExclusion:

    def test_second_trigger_rejected_while_running(self, db, session_factory, notifier):
        create_asset(db, ticker="PETR4")
        provider = BlockingProvider()
        provider.set_quote("PETR4", "38.50")
        scheduler = _scheduler(provider, session_factory, notifier)

        results = []
        worker = threading.Thread(target=lambda: results.append(scheduler.force_update()))
        worker.start()
        assert provider.entered.wait(timeout=5)

        try:
            assert scheduler.is_running
            assert scheduler.status()["current_run_id"] is not None
            with pytest.raises(RunInProgressError) as exc_info:
                scheduler.force_update(trigger=Trigger.FORCED)
            assert exc_info.value.run_id == scheduler.status()["current_run_id"]
        finally:
            provider.release.set()
            worker.join(timeout=5)

        assert results[0].status == RunStatus.COMPLETED
        assert len(scheduler.get_runs()) == 1
        assert not scheduler.is_running

    def test_lock_released_after_failure(self, db, scheduler, mock_provider):
        create_asset(db, ticker="PETR4")
        mock_provider.set_error("PETR4", StorageUnavailableError("OperationalError"))

        scheduler.force_update()
        mock_provider.clear_errors()
        mock_provider.set_quote("PETR4", "38.50")

        assert scheduler.force_update().status == RunStatus.COMPLETED

    def test_run_logs_under_its_run_id(self, db, session_factory, notifier):
        class RecordingProvider(MockMarketDataProvider):
            seen: list = []

            def _fetch_latest_quote(self, ticker, market):
                self.seen.append(get_correlation_id())
                return super()._fetch_latest_quote(ticker, market)

        provider = RecordingProvider()
        provider.set_quote("PETR4", "38.50")
        create_asset(db, ticker="PETR4")
        scheduler = _scheduler(provider, session_factory, notifier)

        set_correlation_id("req-cron-1")
        run = scheduler.force_update()

        assert provider.seen == [run.run_id]
        assert get_correlation_id() == "req-cron-1"
        clear_correlation_id()


# =============================================================================
# FAILED RUNS
# =============================================================================

class TestFailedRuns:

    def test_fatal_error_marks_run_failed(self, db, scheduler, mock_provider):
        create_asset(db, ticker="PETR4")
        mock_provider.set_error("PETR4", CircuitBreakerOpen("mock", 30.0))

        run = scheduler.force_update()

        assert run.status == RunStatus.FAILED
        assert run.error.kind == "CircuitBreakerOpen"
        assert scheduler.status()["last_run_status"] == "failed"

    def test_failed_cron_run_notifies(self, db, scheduler, mock_provider, notifier):
        create_asset(db, ticker="PETR4")
        mock_provider.set_error("PETR4", StorageUnavailableError("OperationalError"))

        run = scheduler.force_update(trigger=Trigger.CRON)

        notifier.notify_failed_run.assert_called_once_with(run)

    def test_failed_forced_run_does_not_notify(self, db, scheduler, notifier):
        create_asset(db, ticker="PETR4")

        run = scheduler.force_update(trigger=Trigger.FORCED)

        assert run.status == RunStatus.FAILED
        notifier.notify_failed_run.assert_not_called()

    def test_partial_failure_does_not_notify(self, db, scheduler, mock_provider, notifier):
        create_asset(db, ticker="PETR4")
        create_asset(db, ticker="VALE3", name="Vale ON")
        mock_provider.set_quote("PETR4", "38.50")

        run = scheduler.force_update()

        assert run.status == RunStatus.COMPLETED_WITH_ERRORS
        notifier.notify_failed_run.assert_not_called()

    def test_unreachable_tickers_with_breaker_attached(self, db, session_factory, notifier):
        provider = MockMarketDataProvider(breaker=provider_breaker("mock"), max_retry_attempts=3)
        for ticker in ("AAAA3", "BBBB3", "CCCC3", "DDDD3"):
            create_asset(db, ticker=ticker)
        provider.set_error("AAAA3", ProviderUnavailableError("mock", "Timeout"))
        provider.set_error("BBBB3", ProviderUnavailableError("mock", "Timeout"))
        provider.set_quote("CCCC3", "10.00")
        provider.set_quote("DDDD3", "20.00")
        scheduler = _scheduler(provider, session_factory, notifier)

        run = scheduler.force_update(trigger=Trigger.CRON)

        assert run.status == RunStatus.COMPLETED_WITH_ERRORS
        assert run.updated == 2
        assert run.failed == 2
        assert scheduler.status()["provider_circuit"]["state"] == "closed"
        notifier.notify_failed_run.assert_not_called()

    def test_failed_run_keeps_per_ticker_results(self, db, session_factory, notifier):
        provider = MockMarketDataProvider(breaker=provider_breaker("mock"))
        for i in range(CIRCUIT_FAILURE_THRESHOLD + 1):
            ticker = f"TK{i:02d}3"
            create_asset(db, ticker=ticker)
            provider.set_error(ticker, ProviderUnavailableError("mock", "Timeout"))
        scheduler = _scheduler(provider, session_factory, notifier)

        run = scheduler.force_update(trigger=Trigger.CRON)

        assert run.status == RunStatus.FAILED
        assert run.error.kind == "CircuitBreakerOpen"
        assert run.failed == CIRCUIT_FAILURE_THRESHOLD
        assert all(outcome.reason for outcome in run.per_ticker_results.values())
        notifier.notify_failed_run.assert_called_once_with(run)


# =============================================================================
# MONITORING
# =============================================================================

class TestMonitoring:

    def test_initial_status(self, scheduler):
        status = scheduler.status()

        assert status["state"] == "idle"
        assert status["is_running"] is False
        assert status["last_run_status"] is None
        assert status["runs_recorded"] == 0
        assert status["provider_circuit"] is None

    def test_history_most_recent_first_and_bounded(self, mock_provider, session_factory, notifier):
        scheduler = _scheduler(mock_provider, session_factory, notifier, history_size=2)

        runs = [scheduler.force_update() for _ in range(3)]

        assert [r.run_id for r in scheduler.get_runs()] == [runs[2].run_id, runs[1].run_id]
        assert len(scheduler.get_runs(limit=1)) == 1

    def test_stats_last_24h(self, db, scheduler, mock_provider):
        create_asset(db, ticker="PETR4")
        mock_provider.set_quote("PETR4", "38.50")
        scheduler.force_update()
        mock_provider.set_error("PETR4", CircuitBreakerOpen("mock", 30.0))
        scheduler.force_update()

        stats = scheduler.get_stats()["last_24h"]

        assert stats["total_runs"] == 2
        assert stats["successful_runs"] == 1
        assert stats["failed_runs"] == 1
        assert stats["success_rate"] == 50.0
        assert stats["total_tickers_updated"] == 1

    def test_stats_ignore_old_runs(self, mock_provider, session_factory, notifier):
        scheduler = _scheduler(
            mock_provider, session_factory, notifier,
            now=lambda: datetime.now(timezone.utc) + timedelta(days=2),
        )
        scheduler.force_update()

        stats = scheduler.get_stats()["last_24h"]

        assert stats["total_runs"] == 0
        assert stats["success_rate"] == 0.0
