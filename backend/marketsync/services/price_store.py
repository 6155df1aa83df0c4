# backend/marketsync/services/price_store.py
"""
Historical price store.

One row per (asset, calendar date). Writes are idempotent upserts on that
natural key, so re-ingesting a date overwrites the previous values and two
runs that race on the same date converge to the last write.

Reads answer point-in-time questions: "what was the close of X as of D"
is the latest stored row with date <= D.

The store never commits; the ingestion pipeline owns the transaction of each
ticker.
"""

import logging
from collections.abc import Iterable
from datetime import date, datetime, timezone

from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from marketsync.models import Asset, HistoricalPrice
from marketsync.services.constants import PRICE_HISTORY_MAX_ROWS
from marketsync.services.market_data.base import PriceSample
from marketsync.services.registry import normalize_ticker
from marketsync.utils.sql import storage_errors

logger = logging.getLogger(__name__)

# Rows per INSERT statement; keeps bound parameters under SQLite's limit
UPSERT_CHUNK_SIZE = 500

_UPDATED_COLUMNS = ("open", "high", "low", "close", "volume", "provider", "updated_at")


def _dialect_insert(db: Session):
    """Return the dialect-specific insert() that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Price upsert is not supported on dialect '{dialect}'")


def _to_sample(price: HistoricalPrice, asset: Asset) -> PriceSample:
    return PriceSample(
        date=price.date,
        close=price.close,
        currency=asset.currency,
        display_name=asset.name,
        open=price.open,
        high=price.high,
        low=price.low,
        volume=price.volume,
    )


class HistoricalPriceStore:
    """Point-in-time price storage keyed by (asset_id, date)."""

    # =========================================================================
    # WRITES
    # =========================================================================

    def upsert_price(self, db: Session, asset: Asset, sample: PriceSample, provider: str = "yahoo") -> None:
        """Insert or overwrite the price of `asset` on `sample.date`."""
        self.upsert_prices(db, asset, [sample], provider=provider)

    def upsert_prices(
            self,
            db: Session,
            asset: Asset,
            samples: Iterable[PriceSample],
            provider: str = "yahoo",
    ) -> int:
        """
        Insert or overwrite many prices of one asset.

        When the batch holds the same date more than once, the last sample
        for that date wins.

        Args:
            db: Database session (caller commits)
            asset: Asset the samples belong to
            samples: Price samples in any order
            provider: Lineage recorded on each row

        Returns:
            Number of distinct dates written

        Raises:
            StorageUnavailableError: Database unreachable
        """
        by_date: dict[date, PriceSample] = {}
        for sample in samples:
            by_date[sample.date] = sample

        if not by_date:
            return 0

        now = datetime.now(timezone.utc)
        rows = [
            {
                "asset_id": asset.id,
                "date": sample.date,
                "open": sample.open,
                "high": sample.high,
                "low": sample.low,
                "close": sample.close,
                "volume": sample.volume,
                "provider": provider,
                "created_at": now,
                "updated_at": now,
            }
            for sample in sorted(by_date.values(), key=lambda s: s.date)
        ]

        insert = _dialect_insert(db)

        with storage_errors():
            for start in range(0, len(rows), UPSERT_CHUNK_SIZE):
                stmt = insert(HistoricalPrice).values(rows[start:start + UPSERT_CHUNK_SIZE])
                stmt = stmt.on_conflict_do_update(
                    index_elements=["asset_id", "date"],
                    set_={column: stmt.excluded[column] for column in _UPDATED_COLUMNS},
                )
                db.execute(stmt)

        logger.debug(f"Upserted {len(rows)} prices for {asset.ticker}")
        return len(rows)

    # =========================================================================
    # READS
    # =========================================================================

    def get_price(self, db: Session, asset: Asset, price_date: date) -> HistoricalPrice | None:
        """Stored row for exactly this date, if any."""
        with storage_errors():
            return db.scalar(
                select(HistoricalPrice)
                .where(HistoricalPrice.asset_id == asset.id)
                .where(HistoricalPrice.date == price_date)
            )

    def price_as_of(self, db: Session, ticker: str, as_of: date) -> PriceSample | None:
        """
        Latest known price of `ticker` on or before `as_of`.

        Returns:
            PriceSample of the most recent row with date <= as_of, or None
            when the asset is unknown or has no price that early.
        """
        with storage_errors():
            row = db.execute(
                select(HistoricalPrice, Asset)
                .join(Asset, HistoricalPrice.asset_id == Asset.id)
                .where(Asset.ticker == normalize_ticker(ticker))
                .where(HistoricalPrice.date <= as_of)
                .order_by(HistoricalPrice.date.desc())
                .limit(1)
            ).first()

        if row is None:
            return None
        price, asset = row
        return _to_sample(price, asset)

    def latest_price(self, db: Session, ticker: str, today: date | None = None) -> PriceSample | None:
        """price_as_of(ticker, today)."""
        return self.price_as_of(db, ticker, today or date.today())

    def count_prices(self, db: Session, asset: Asset) -> int:
        with storage_errors():
            return db.scalar(
                select(func.count(HistoricalPrice.id)).where(HistoricalPrice.asset_id == asset.id)
            ) or 0

    def get_price_history(
            self,
            db: Session,
            asset: Asset,
            start_date: date | None = None,
            end_date: date | None = None,
            limit: int = PRICE_HISTORY_MAX_ROWS,
    ) -> list[HistoricalPrice]:
        """
        Stored prices of one asset in ascending date order.

        Both bounds are inclusive. At most `limit` rows, counted from the
        start of the range.
        """
        query = select(HistoricalPrice).where(HistoricalPrice.asset_id == asset.id)
        if start_date is not None:
            query = query.where(HistoricalPrice.date >= start_date)
        if end_date is not None:
            query = query.where(HistoricalPrice.date <= end_date)

        with storage_errors():
            return list(db.scalars(query.order_by(HistoricalPrice.date.asc()).limit(limit)))

    def latest_dates(self, db: Session) -> dict[int, date]:
        """Most recent stored date per asset id (assets without prices are absent)."""
        with storage_errors():
            rows = db.execute(
                select(HistoricalPrice.asset_id, func.max(HistoricalPrice.date))
                .group_by(HistoricalPrice.asset_id)
            ).all()
        return {asset_id: latest for asset_id, latest in rows}
