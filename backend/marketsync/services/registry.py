# backend/marketsync/services/registry.py
"""
Asset registry service.

The registry is the authoritative list of tradable instruments. Ingestion
reads it; only explicit admin operations write it.

Rules:
1. Tickers are stored uppercase, so lookups are case-insensitive
2. Creating an existing ticker returns the stored record unchanged
3. Assets are never hard-deleted; deactivation hides them from ingestion
   and search while their price history stays in place

Usage:
    from marketsync.services.registry import AssetRegistry

    registry = AssetRegistry()
    asset, created = registry.upsert_asset(db, "PETR4", "Petrobras PN", "BRL", "B3")
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketsync.models import Asset
from marketsync.services.exceptions import AssetNotFoundError, ValidationError
from marketsync.utils.sql import escape_like_pattern, storage_errors

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "currency", "market", "decimals", "min_lot_size")


def normalize_ticker(ticker: str | None) -> str:
    """Strip and uppercase a ticker; empty input normalizes to ''."""
    return (ticker or "").strip().upper()


def _is_unique_constraint_violation(integrity_error: IntegrityError) -> bool:
    # PostgreSQL error code 23505 = unique_violation
    if hasattr(integrity_error.orig, "pgcode"):
        return integrity_error.orig.pgcode == "23505"
    return "unique constraint" in str(integrity_error.orig).lower()


class AssetRegistry:
    """
    Create, look up, search and maintain registered assets.

    Write operations commit their own transaction. Read operations never
    write.
    """

    # =========================================================================
    # VALIDATION
    # =========================================================================

    @staticmethod
    def _require_text(value: Any, field: str) -> str:
        if value is None or not str(value).strip():
            raise ValidationError(f"{field} is required", field=field)
        return str(value).strip()

    @staticmethod
    def _validate_decimals(decimals: Any) -> int:
        if isinstance(decimals, bool) or not isinstance(decimals, int) or decimals < 0:
            raise ValidationError("decimals must be a non-negative integer", field="decimals")
        return decimals

    @staticmethod
    def _validate_min_lot_size(min_lot_size: Any) -> Decimal:
        try:
            value = Decimal(str(min_lot_size))
        except (InvalidOperation, ValueError):
            raise ValidationError("min_lot_size must be a number", field="min_lot_size")
        if not value.is_finite() or value <= 0:
            raise ValidationError("min_lot_size must be positive", field="min_lot_size")
        return value

    def _normalize_fields(self, **fields: Any) -> dict[str, Any]:
        """Validate and normalize the metadata fields that are present."""
        normalized: dict[str, Any] = {}
        if "name" in fields:
            normalized["name"] = self._require_text(fields["name"], "name")
        if "currency" in fields:
            normalized["currency"] = self._require_text(fields["currency"], "currency").upper()
        if "market" in fields:
            normalized["market"] = self._require_text(fields["market"], "market").upper()
        if "decimals" in fields:
            normalized["decimals"] = self._validate_decimals(fields["decimals"])
        if "min_lot_size" in fields:
            normalized["min_lot_size"] = self._validate_min_lot_size(fields["min_lot_size"])
        return normalized

    # =========================================================================
    # WRITE OPERATIONS
    # =========================================================================

    def upsert_asset(
            self,
            db: Session,
            ticker: str,
            name: str,
            currency: str,
            market: str,
            decimals: int = 2,
            min_lot_size: Decimal | int | str = 1,
    ) -> tuple[Asset, bool]:
        """
        Register an asset, or return the existing one.

        Args:
            db: Database session
            ticker: Ticker symbol, any case (e.g., "petr4")
            name: Display name
            currency: Trading currency (e.g., "BRL")
            market: Venue code (e.g., "B3")
            decimals: Presentation precision, >= 0
            min_lot_size: Minimum tradable quantity, > 0

        Returns:
            (asset, created). When the ticker already exists the stored
            record is returned unchanged and created is False.

        Raises:
            ValidationError: Empty field, negative decimals or non-positive
                lot size. Nothing is written.
        """
        ticker = self._require_text(normalize_ticker(ticker), "ticker")
        fields = self._normalize_fields(
            name=name,
            currency=currency,
            market=market,
            decimals=decimals,
            min_lot_size=min_lot_size,
        )

        existing = self.find_by_ticker(db, ticker)
        if existing is not None:
            logger.debug(f"Asset {ticker} already registered (id={existing.id})")
            return existing, False

        asset = Asset(ticker=ticker, is_active=True, **fields)
        db.add(asset)

        with storage_errors():
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                if not _is_unique_constraint_violation(e):
                    raise

                logger.info(f"Asset {ticker} created by concurrent request, fetching existing")
                existing = self.find_by_ticker(db, ticker)
                if existing is None:
                    raise
                return existing, False

            db.refresh(asset)

        logger.info(f"Registered asset {ticker} ({asset.market}, {asset.currency})")
        return asset, True

    def update_asset(self, db: Session, ticker: str, **fields: Any) -> Asset:
        """
        Correct asset metadata (admin only).

        Only name, currency, market, decimals and min_lot_size can change;
        the ticker is the asset's identity.

        Raises:
            AssetNotFoundError: Unknown ticker
            ValidationError: Unknown or invalid field
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        changes = self._normalize_fields(**fields)
        asset = self.get_by_ticker(db, ticker)

        for field, value in changes.items():
            setattr(asset, field, value)

        with storage_errors():
            db.commit()
            db.refresh(asset)

        if changes:
            logger.info(f"Updated asset {asset.ticker}: {', '.join(sorted(changes))}")
        return asset

    def deactivate_asset(self, db: Session, ticker: str) -> Asset:
        """
        Soft-delete an asset. Its price history is kept.

        Raises:
            AssetNotFoundError: Unknown ticker
        """
        asset = self.get_by_ticker(db, ticker)
        if asset.is_active:
            asset.is_active = False
            with storage_errors():
                db.commit()
                db.refresh(asset)
            logger.info(f"Deactivated asset {asset.ticker}")
        return asset

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    def find_by_ticker(self, db: Session, ticker: str) -> Asset | None:
        """Return the asset with this ticker (any case), active or not."""
        ticker = normalize_ticker(ticker)
        if not ticker:
            return None
        with storage_errors():
            return db.scalar(select(Asset).where(Asset.ticker == ticker))

    def get_by_ticker(self, db: Session, ticker: str) -> Asset:
        """Like find_by_ticker, but raises AssetNotFoundError."""
        asset = self.find_by_ticker(db, ticker)
        if asset is None:
            raise AssetNotFoundError(normalize_ticker(ticker))
        return asset

    def search_by_text(self, db: Session, query: str, limit: int = 10) -> list[Asset]:
        """
        Find active assets by ticker prefix or name substring.

        Ticker-prefix matches come first (ordered by ticker), then name
        matches (ordered by name). Each asset appears at most once.

        Args:
            db: Database session
            query: Search text, matched case-insensitively
            limit: Maximum number of assets returned

        Returns:
            Up to `limit` assets
        """
        text = (query or "").strip()
        if not text or limit <= 0:
            return []

        ticker_prefix = escape_like_pattern(text.upper())
        # Lowered here so non-ASCII input matches on SQLite, whose lower() is ASCII-only
        name_part = escape_like_pattern(text.lower())

        with storage_errors():
            by_ticker = list(db.scalars(
                select(Asset)
                .where(Asset.is_active.is_(True))
                .where(Asset.ticker.like(f"{ticker_prefix}%", escape="\\"))
                .order_by(Asset.ticker)
                .limit(limit)
            ))

            remaining = limit - len(by_ticker)
            if remaining <= 0:
                return by_ticker

            seen_ids = [asset.id for asset in by_ticker]
            name_query = (
                select(Asset)
                .where(Asset.is_active.is_(True))
                .where(Asset.name.ilike(f"%{name_part}%", escape="\\"))
                .order_by(Asset.name)
                .limit(remaining)
            )
            if seen_ids:
                name_query = name_query.where(Asset.id.not_in(seen_ids))

            return by_ticker + list(db.scalars(name_query))

    def list_tickers(self, db: Session, active_only: bool = True) -> list[str]:
        """All registered tickers, sorted."""
        query = select(Asset.ticker).order_by(Asset.ticker)
        if active_only:
            query = query.where(Asset.is_active.is_(True))
        with storage_errors():
            return list(db.scalars(query))

    def list_assets(self, db: Session, active_only: bool = True) -> list[Asset]:
        """All registered assets, sorted by ticker."""
        query = select(Asset).order_by(Asset.ticker)
        if active_only:
            query = query.where(Asset.is_active.is_(True))
        with storage_errors():
            return list(db.scalars(query))
