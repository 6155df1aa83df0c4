# backend/marketsync/models.py
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import String, Date, DateTime, ForeignKey, Integer, Numeric, UniqueConstraint, Boolean, BigInteger, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class Asset(Base):
    """
    Registry of tradable instruments shared by the whole application.

    An asset is uniquely identified by its ticker. Rows are never hard-deleted;
    deactivation sets is_active=False so price history stays attached.
    """
    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    ticker: Mapped[str] = mapped_column(String(20), unique=True, index=True)  # e.g. "PETR4"
    name: Mapped[str] = mapped_column(String(255))
    currency: Mapped[str] = mapped_column(String(3))  # e.g. "BRL", "USD"
    market: Mapped[str] = mapped_column(String(20), index=True)  # e.g. "B3", "NASDAQ"

    # Presentation precision for prices; the price store keeps full precision
    decimals: Mapped[int] = mapped_column(Integer, default=2)
    min_lot_size: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal(1))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    prices: Mapped[list["HistoricalPrice"]] = relationship(
        back_populates="asset",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class HistoricalPrice(Base):
    """
    One asset's daily price on one calendar date.

    At most one row per (asset_id, date); ingestion upserts on that key so a
    re-ingested date overwrites the previous values.

    All prices use Numeric(18, 8) and are stored exactly as received.
    """
    __tablename__ = "historical_prices"
    __table_args__ = (
        UniqueConstraint("asset_id", "date", name="uq_historical_price_asset_date"),
        # Point-in-time lookups scan this index backwards:
        # "latest row for asset X with date <= D"
        Index("ix_historical_price_asset_date", "asset_id", "date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id", ondelete="CASCADE"), index=True)
    date: Mapped[date] = mapped_column(Date)  # Daily data - no time component

    open: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    high: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    low: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    close: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    volume: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    provider: Mapped[str] = mapped_column(String(50), default="yahoo")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    asset: Mapped["Asset"] = relationship(back_populates="prices")
