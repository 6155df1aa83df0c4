# backend/marketsync/services/search.py
"""
Asset search for the portfolio simulator.

Returns matching assets together with their price "as of" the simulated
date, so a simulation set in 2015 never sees a 2024 price. Read-only: a
search never triggers ingestion.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from marketsync.services.constants import SEARCH_MAX_RESULTS, SEARCH_MIN_QUERY_LENGTH
from marketsync.services.price_store import HistoricalPriceStore
from marketsync.services.registry import AssetRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetQuote:
    """An asset with its price as of the requested date (0 when unknown)."""

    ticker: str
    name: str
    currency: str
    market: str
    decimals: int
    min_lot_size: Decimal
    price: Decimal


class SearchService:
    """Ticker/name search joined with point-in-time prices."""

    def __init__(
            self,
            registry: AssetRegistry | None = None,
            store: HistoricalPriceStore | None = None,
    ) -> None:
        self._registry = registry or AssetRegistry()
        self._store = store or HistoricalPriceStore()

    def search(
            self,
            db: Session,
            query_text: str,
            min_length: int = SEARCH_MIN_QUERY_LENGTH,
            simulation_date: date | None = None,
    ) -> list[AssetQuote]:
        """
        Search active assets and price them as of `simulation_date`.

        Args:
            db: Database session
            query_text: Ticker prefix or name fragment
            min_length: Shorter (stripped) queries return no results
            simulation_date: Pricing date (default: today)

        Returns:
            Up to 10 quotes, ticker matches before name matches
        """
        text = (query_text or "").strip()
        if len(text) < min_length:
            return []

        as_of = simulation_date or date.today()
        assets = self._registry.search_by_text(db, text, limit=SEARCH_MAX_RESULTS)

        quotes = []
        for asset in assets:
            sample = self._store.price_as_of(db, asset.ticker, as_of)
            quotes.append(AssetQuote(
                ticker=asset.ticker,
                name=asset.name,
                currency=asset.currency,
                market=asset.market,
                decimals=asset.decimals,
                min_lot_size=asset.min_lot_size,
                price=sample.close if sample is not None else Decimal(0),
            ))

        logger.debug(f"Search '{text}' as of {as_of}: {len(quotes)} result(s)")
        return quotes
