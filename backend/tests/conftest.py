# backend/tests/conftest.py
"""
Pytest configuration and fixtures.

This module provides shared fixtures for all tests:
- Database engine, session and session factory (in-memory SQLite)
- Mock market data provider
- Sample data factories
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")

from datetime import date, timedelta
from decimal import Decimal
from typing import Iterator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from marketsync.models import Base, Asset
from marketsync.services.exceptions import TickerNotFoundError
from marketsync.services.market_data.base import MarketDataProvider, PriceSample
from marketsync.services.price_store import HistoricalPriceStore


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def session_factory(db_engine) -> sessionmaker:
    """Session factory bound to the test engine (what the pipeline opens per ticker)."""
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db(session_factory) -> Iterator[Session]:
    """Create a database session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# =============================================================================
# MOCK MARKET DATA PROVIDER
# =============================================================================

class MockMarketDataProvider(MarketDataProvider):
    """
    In-memory MarketDataProvider for testing.

    Quotes and series are configured per ticker; anything not configured
    raises TickerNotFoundError. Errors can be injected per ticker.
    """

    RETRY_MIN_WAIT = 0
    RETRY_MAX_WAIT = 0

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._quotes: dict[str, PriceSample] = {}
        self._series: dict[str, list[PriceSample]] = {}
        self._errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "mock"

    def set_quote(self, ticker: str, close: str, price_date: date | None = None, currency: str = "BRL") -> None:
        self._quotes[ticker.upper()] = PriceSample(
            date=price_date or date.today(),
            close=Decimal(close),
            currency=currency,
        )

    def set_series(self, ticker: str, samples: list[PriceSample]) -> None:
        self._series[ticker.upper()] = samples

    def set_error(self, ticker: str, error: Exception) -> None:
        self._errors[ticker.upper()] = error

    def clear_errors(self) -> None:
        self._errors.clear()

    def _fetch_latest_quote(self, ticker, market):
        self.calls.append(("quote", ticker.upper()))
        if ticker.upper() in self._errors:
            raise self._errors[ticker.upper()]
        if ticker.upper() in self._quotes:
            return self._quotes[ticker.upper()]
        raise TickerNotFoundError(ticker=ticker, provider=self.name)

    def _fetch_historical_series(self, ticker, market, from_date, to_date):
        self.calls.append(("series", ticker.upper()))
        if ticker.upper() in self._errors:
            raise self._errors[ticker.upper()]
        if ticker.upper() not in self._series:
            raise TickerNotFoundError(ticker=ticker, provider=self.name)
        return [s for s in self._series[ticker.upper()] if from_date <= s.date <= to_date]


@pytest.fixture
def mock_provider() -> MockMarketDataProvider:
    """Create a fresh mock provider for each test."""
    return MockMarketDataProvider()


# =============================================================================
# SAMPLE DATA FACTORIES
# =============================================================================

def create_asset(
        db: Session,
        ticker: str = "PETR4",
        name: str = "Petrobras PN",
        currency: str = "BRL",
        market: str = "B3",
        is_active: bool = True,
) -> Asset:
    """Factory function for creating Asset entities in the database."""
    asset = Asset(
        ticker=ticker,
        name=name,
        currency=currency,
        market=market,
        decimals=2,
        min_lot_size=Decimal(1),
        is_active=is_active,
    )
    db.add(asset)
    db.commit()
    db.refresh(asset)
    return asset


def make_sample(price_date: date, close: str, currency: str = "BRL") -> PriceSample:
    """Factory function for PriceSample test data."""
    return PriceSample(date=price_date, close=Decimal(close), currency=currency)


def make_series(start: date, days: int, close: str = "10.00", currency: str = "BRL") -> list[PriceSample]:
    """Consecutive daily samples starting at `start` with increasing closes."""
    base = Decimal(close)
    return [
        PriceSample(date=start + timedelta(days=i), close=base + i, currency=currency)
        for i in range(days)
    ]


def store_prices(db: Session, asset: Asset, samples: list[PriceSample]) -> None:
    """Write samples through the price store and commit."""
    HistoricalPriceStore().upsert_prices(db, asset, samples)
    db.commit()
