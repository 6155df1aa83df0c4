# backend/marketsync/services/ingestion/pipeline.py
"""
Ingestion pipeline: provider -> registry lookup -> price store.

For each ticker of a batch the pipeline runs one sequential
fetch-then-write task in its own database session and commits it on its
own, so one bad ticker never rolls back another.

Failure handling:
- Provider errors and per-ticker write errors are recorded as a failed
  outcome for that ticker; the batch continues
- StorageUnavailableError and CircuitBreakerOpen mean nothing else can
  succeed: pending tickers are cancelled and the error propagates

Usage:
    pipeline = IngestionPipeline(provider=YahooFinanceProvider())
    run = pipeline.run_batch(["PETR4", "VALE3"], IncrementalMode(), Trigger.FORCED)
"""

import contextvars
import logging
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import date

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketsync.config import settings
from marketsync.database import SessionLocal
from marketsync.models import Asset
from marketsync.services.circuit_breaker import CircuitBreakerOpen
from marketsync.services.exceptions import MarketDataError, StorageUnavailableError
from marketsync.services.ingestion.types import (
    BackfillMode,
    IncrementalMode,
    IngestionMode,
    IngestionRun,
    TickerOutcome,
    Trigger,
)
from marketsync.services.market_data.base import MarketDataProvider
from marketsync.services.price_store import HistoricalPriceStore
from marketsync.services.registry import AssetRegistry, normalize_ticker
from marketsync.utils.sql import storage_errors

logger = logging.getLogger(__name__)

FATAL_ERRORS = (StorageUnavailableError, CircuitBreakerOpen)


class IngestionPipeline:
    """
    Runs one batch of tickers through the provider and into the price store.

    Args:
        provider: Market data provider
        registry: Asset registry (default: new AssetRegistry)
        store: Price store (default: new HistoricalPriceStore)
        session_factory: Callable returning a new Session (default: SessionLocal)
        max_workers: Worker threads per run (default: settings.ingestion_max_workers)
        backfill_years: Default backfill depth (default: settings.backfill_years)
        backfill_skip_threshold: Price count at which backfill skips a ticker
        today: Date source (injectable for tests)
    """

    def __init__(
            self,
            provider: MarketDataProvider,
            registry: AssetRegistry | None = None,
            store: HistoricalPriceStore | None = None,
            session_factory: Callable[[], Session] | None = None,
            max_workers: int | None = None,
            backfill_years: int | None = None,
            backfill_skip_threshold: int | None = None,
            today: Callable[[], date] = date.today,
    ) -> None:
        self._provider = provider
        self._registry = registry or AssetRegistry()
        self._store = store or HistoricalPriceStore()
        self._session_factory = session_factory or SessionLocal
        self._max_workers = max_workers or settings.ingestion_max_workers
        self._backfill_years = backfill_years or settings.backfill_years
        self._skip_threshold = (
            settings.backfill_skip_threshold if backfill_skip_threshold is None else backfill_skip_threshold
        )
        self._today = today

    @property
    def provider(self) -> MarketDataProvider:
        return self._provider

    @property
    def registry(self) -> AssetRegistry:
        return self._registry

    def validate_mode(self, mode: IngestionMode) -> None:
        """Raise ValidationError now for a mode run_batch would reject."""
        if isinstance(mode, BackfillMode):
            mode.resolve_range(self._today(), self._backfill_years)

    @property
    def session_factory(self) -> Callable[[], Session]:
        return self._session_factory

    # =========================================================================
    # BATCH
    # =========================================================================

    def run_batch(
            self,
            tickers: Iterable[str],
            mode: IngestionMode,
            trigger: Trigger,
            run: IngestionRun | None = None,
    ) -> IngestionRun:
        """
        Ingest every ticker once and return the finished run.

        Args:
            tickers: Tickers to ingest; duplicates and case variants collapse
            mode: IncrementalMode() or BackfillMode(...)
            trigger: What started the run
            run: Pre-created run to fill in (the scheduler passes its own)

        Returns:
            The run, with its final status derived from the outcomes

        Raises:
            ValidationError: Backfill range with from_date after to_date
            StorageUnavailableError: Database unreachable (run left RUNNING)
            CircuitBreakerOpen: Provider unreachable (run left RUNNING)
        """
        date_range = None
        if isinstance(mode, BackfillMode):
            date_range = mode.resolve_range(self._today(), self._backfill_years)

        run = run or IngestionRun(trigger=trigger, mode=mode.name)
        unique = list(dict.fromkeys(t for t in map(normalize_ticker, tickers) if t))

        logger.info(
            f"Ingestion run {run.run_id} started: trigger={trigger.value}, mode={mode.name}, "
            f"tickers={len(unique)}"
            + (f", range={date_range[0]}..{date_range[1]}" if date_range else "")
        )

        if unique:
            self._run_tickers(run, unique, mode, date_range)

        run.finish()
        logger.info(
            f"Ingestion run {run.run_id} finished: status={run.status.value}, "
            f"updated={run.updated}, unchanged={run.unchanged}, failed={run.failed}, "
            f"duration={run.duration_seconds}s"
        )
        return run

    def _run_tickers(
            self,
            run: IngestionRun,
            tickers: list[str],
            mode: IngestionMode,
            date_range: tuple[date, date] | None,
    ) -> None:
        executor = ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(tickers)),
            thread_name_prefix="ingest",
        )
        futures: dict[Future, str] = {}
        recorded: set[Future] = set()
        try:
            futures = {
                # Each worker gets a copy of the caller's context (correlation ID)
                executor.submit(contextvars.copy_context().run, self._ingest_ticker, ticker, mode, date_range): ticker
                for ticker in tickers
            }
            for future in as_completed(futures):
                recorded.add(future)
                run.record(futures[future], future.result())
        except FATAL_ERRORS as e:
            logger.error(f"Ingestion run {run.run_id} aborted: {type(e).__name__}")
            executor.shutdown(wait=True, cancel_futures=True)
            # Tickers already in flight may have committed rows; keep their outcomes
            for future, ticker in futures.items():
                if future in recorded or future.cancelled() or future.exception() is not None:
                    continue
                run.record(ticker, future.result())
            raise
        finally:
            executor.shutdown(wait=True)

    # =========================================================================
    # PER TICKER
    # =========================================================================

    def _ingest_ticker(
            self,
            ticker: str,
            mode: IngestionMode,
            date_range: tuple[date, date] | None,
    ) -> TickerOutcome:
        """Fetch-then-write one ticker in its own session. Only fatal errors escape."""
        try:
            with self._session_factory() as db:
                asset = self._registry.find_by_ticker(db, ticker)
                if asset is None:
                    return TickerOutcome.failed("asset not registered")
                if not asset.is_active:
                    return TickerOutcome.failed("asset is deactivated")

                if isinstance(mode, IncrementalMode):
                    outcome = self._ingest_latest(db, asset)
                else:
                    outcome = self._ingest_history(db, asset, mode, date_range)

        except FATAL_ERRORS:
            raise
        except MarketDataError as e:
            logger.warning(f"{ticker}: {e}")
            return TickerOutcome.failed(e.message)
        except SQLAlchemyError as e:
            logger.error(f"{ticker}: price write failed ({type(e).__name__})")
            return TickerOutcome.failed(f"storage write failed: {type(e).__name__}")
        except Exception as e:
            logger.exception(f"{ticker}: unexpected ingestion error")
            return TickerOutcome.failed(f"unexpected error: {type(e).__name__}")

        logger.info(f"{ticker}: {outcome.status.value} ({outcome.samples_written} written)")
        return outcome

    def _ingest_latest(self, db: Session, asset: Asset) -> TickerOutcome:
        sample = self._provider.fetch_latest_quote(asset.ticker, asset.market)

        if sample.currency != asset.currency:
            logger.warning(
                f"{asset.ticker}: provider currency {sample.currency} differs from registered {asset.currency}"
            )

        existing = self._store.get_price(db, asset, sample.date)
        if existing is not None and existing.close == sample.close:
            return TickerOutcome.unchanged("price already current")

        self._store.upsert_price(db, asset, sample, provider=self._provider.name)
        self._commit(db)
        return TickerOutcome.updated(1)

    def _ingest_history(
            self,
            db: Session,
            asset: Asset,
            mode: BackfillMode,
            date_range: tuple[date, date],
    ) -> TickerOutcome:
        if not mode.replace_existing and self._skip_threshold > 0:
            existing = self._store.count_prices(db, asset)
            if existing >= self._skip_threshold:
                return TickerOutcome.unchanged(f"history already loaded ({existing} prices)")

        from_date, to_date = date_range
        samples = self._provider.fetch_historical_series(asset.ticker, from_date, to_date, market=asset.market)
        if not samples:
            return TickerOutcome.unchanged("no data in range")

        written = self._store.upsert_prices(db, asset, samples, provider=self._provider.name)
        self._commit(db)
        return TickerOutcome.updated(written)

    @staticmethod
    def _commit(db: Session) -> None:
        with storage_errors():
            db.commit()
