# backend/marketsync/services/market_data/yahoo.py
"""
Yahoo Finance market data provider implementation.

Implements MarketDataProvider with the yfinance library.

Key features:
- Market code mapping (our venue codes -> Yahoo symbol suffixes)
- B3 ticker detection ("PETR4" -> "PETR4.SA" when no market is given)
- Error classification into the MarketDataError hierarchy
- Retry, circuit breaker and throttling inherited from the base class

Limitations:
- Rate limits exist but are not documented
- Quotes may be delayed 15-20 minutes for some markets
"""

import logging
import math
import re
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

import yfinance as yf

from marketsync.services.constants import PRICE_QUANTIZE_PLACES
from marketsync.services.exceptions import (
    MarketDataError,
    MalformedResponseError,
    ProviderUnavailableError,
    TickerNotFoundError,
    RateLimitError,
)
from marketsync.services.market_data.base import MarketDataProvider, PriceSample

logger = logging.getLogger(__name__)

_QUANTUM = Decimal(1).scaleb(-PRICE_QUANTIZE_PLACES)

# Brazilian B3 tickers: four letters plus a share-class number (PETR4, TAEE11)
B3_TICKER_PATTERN = re.compile(r"^[A-Z]{4}\d{1,2}$")

# Window used to find the latest daily bar; covers weekends and holidays
LATEST_QUOTE_PERIOD = "5d"


class YahooFinanceProvider(MarketDataProvider):
    """
    Yahoo Finance implementation of MarketDataProvider.

    Configuration:
        timeout: Per-request timeout in seconds (default: 10)

    Example:
        provider = YahooFinanceProvider(timeout=15)

        quote = provider.fetch_latest_quote("PETR4", "B3")
        series = provider.fetch_historical_series(
            "PETR4", date(2024, 1, 1), date(2024, 12, 31), market="B3"
        )
    """

    # =========================================================================
    # MARKET MAPPING
    # =========================================================================
    # US venues use no suffix. Unknown codes fall back to no suffix.

    MARKET_SUFFIXES: dict[str, str] = {
        # US
        "NASDAQ": "",
        "NYSE": "",
        "NYSEARCA": "",
        "AMEX": "",

        # Latin America
        "B3": ".SA",
        "BOVESPA": ".SA",
        "BMV": ".MX",
        "BCBA": ".BA",

        # Europe
        "XETRA": ".DE",
        "FRA": ".F",
        "LSE": ".L",
        "EURONEXT": ".PA",
        "AMS": ".AS",
        "BIT": ".MI",
        "BME": ".MC",
        "SWX": ".SW",

        # Asia-Pacific
        "TSE": ".T",
        "HKEX": ".HK",
        "ASX": ".AX",
        "NSE": ".NS",

        # Canada
        "TSX": ".TO",
    }

    def __init__(self, timeout: int = 10, **kwargs: Any) -> None:
        """
        Initialize the Yahoo Finance provider.

        Args:
            timeout: Request timeout in seconds
            **kwargs: throttle, breaker, max_retry_attempts (see base class)
        """
        super().__init__(**kwargs)
        self._timeout = timeout
        logger.info(f"YahooFinanceProvider initialized (timeout={timeout}s)")

    @property
    def name(self) -> str:
        return "yahoo"

    # =========================================================================
    # PROVIDER CALLS
    # =========================================================================

    def _fetch_latest_quote(self, ticker: str, market: str | None) -> PriceSample:
        symbol = self._build_yahoo_symbol(ticker, market)
        logger.debug(f"Fetching latest quote for {symbol}")

        try:
            yf_ticker = yf.Ticker(symbol)
            df = yf_ticker.history(
                period=LATEST_QUOTE_PERIOD,
                interval="1d",
                auto_adjust=False,
                timeout=self._timeout,
            )
        except Exception as e:
            raise self._classify_error(e, ticker) from e

        if df is None or df.empty:
            self._raise_for_empty(yf_ticker, ticker, "no quote in the last 5 days")

        samples = self._dataframe_to_samples(df, ticker, self._read_metadata(yf_ticker, ticker))
        if not samples:
            raise MalformedResponseError(self.name, "no row with a usable close price", ticker=ticker)

        return samples[-1]

    def _fetch_historical_series(
            self,
            ticker: str,
            market: str | None,
            from_date: date,
            to_date: date,
    ) -> list[PriceSample]:
        symbol = self._build_yahoo_symbol(ticker, market)
        logger.debug(f"Fetching historical prices for {symbol}: {from_date} to {to_date}")

        try:
            yf_ticker = yf.Ticker(symbol)
            # Yahoo's end date is exclusive
            df = yf_ticker.history(
                start=from_date.isoformat(),
                end=(to_date + timedelta(days=1)).isoformat(),
                interval="1d",
                auto_adjust=False,
                timeout=self._timeout,
            )
        except Exception as e:
            raise self._classify_error(e, ticker) from e

        if df is None or df.empty:
            self._raise_for_empty(yf_ticker, ticker, None)
            logger.warning(f"No price data for {symbol} between {from_date} and {to_date}")
            return []

        samples = self._dataframe_to_samples(df, ticker, self._read_metadata(yf_ticker, ticker))
        logger.debug(f"Fetched {len(samples)} days for {symbol}")
        return samples

    # =========================================================================
    # RESPONSE PARSING
    # =========================================================================

    def _raise_for_empty(self, yf_ticker: Any, ticker: str, reason: str | None) -> None:
        """
        Decide what an empty history frame means.

        Unknown ticker -> TickerNotFoundError. Known ticker -> MalformedResponseError
        when `reason` is given, otherwise the caller treats it as "no data".
        """
        try:
            info = yf_ticker.info
        except Exception as e:
            raise self._classify_error(e, ticker) from e

        if not self._is_valid_ticker_info(info):
            raise TickerNotFoundError(ticker=ticker, provider=self.name)
        if reason:
            raise MalformedResponseError(self.name, reason, ticker=ticker)

    def _read_metadata(self, yf_ticker: Any, ticker: str) -> tuple[str, str | None]:
        """Return (currency, display_name) from the history metadata."""
        try:
            metadata = yf_ticker.history_metadata or {}
        except Exception as e:
            raise self._classify_error(e, ticker) from e

        if not isinstance(metadata, dict):
            raise MalformedResponseError(self.name, "history metadata is not a mapping", ticker=ticker)

        currency = metadata.get("currency")
        if not currency or not isinstance(currency, str):
            raise MalformedResponseError(self.name, "missing currency", ticker=ticker)

        display_name = metadata.get("longName") or metadata.get("shortName")
        return currency.upper(), display_name

    def _dataframe_to_samples(
            self,
            df: Any,
            ticker: str,
            metadata: tuple[str, str | None],
    ) -> list[PriceSample]:
        """
        Convert a yfinance history frame into PriceSample objects.

        Rows without a positive close are skipped. A frame without a Close
        column is malformed.
        """
        if "Close" not in df.columns:
            raise MalformedResponseError(self.name, "missing Close column", ticker=ticker)

        currency, display_name = metadata
        samples = []

        for idx, row in df.iterrows():
            price_date = idx.date() if hasattr(idx, "date") else idx
            close = self._to_decimal(row.get("Close"))

            if close is None or close <= 0:
                logger.warning(f"Skipping {ticker} {price_date}: missing close price")
                continue

            samples.append(PriceSample(
                date=price_date,
                close=close,
                currency=currency,
                display_name=display_name,
                open=self._to_decimal(row.get("Open")),
                high=self._to_decimal(row.get("High")),
                low=self._to_decimal(row.get("Low")),
                volume=self._to_int(row.get("Volume")),
            ))

        return samples

    @staticmethod
    def _to_decimal(value: Any) -> Decimal | None:
        """Convert a value to Decimal, returning None for NaN/None."""
        if value is None:
            return None
        try:
            if math.isnan(float(value)):
                return None
            return Decimal(str(value)).quantize(_QUANTUM)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _to_int(value: Any) -> int | None:
        """Convert a value to int, returning None for NaN/None."""
        if value is None:
            return None
        try:
            if math.isnan(float(value)):
                return None
            return int(value)
        except (TypeError, ValueError):
            return None

    # =========================================================================
    # HELPER METHODS
    # =========================================================================

    def _classify_error(self, error: Exception, ticker: str) -> MarketDataError:
        """Map a yfinance/network exception onto the MarketDataError hierarchy."""
        if isinstance(error, MarketDataError):
            return error

        error_str = str(error).lower()

        if "rate limit" in error_str or "too many requests" in error_str or "429" in error_str:
            return RateLimitError(provider=self.name, ticker=ticker)

        if "not found" in error_str or "delisted" in error_str or "no data" in error_str:
            return TickerNotFoundError(ticker=ticker, provider=self.name)

        logger.error(f"Yahoo Finance error for {ticker}: {error}")
        return ProviderUnavailableError(provider=self.name, reason=type(error).__name__, ticker=ticker)

    def _build_yahoo_symbol(self, ticker: str, market: str | None) -> str:
        """
        Build the Yahoo Finance symbol for a ticker.

        Args:
            ticker: Application ticker (e.g., "PETR4", "AAPL")
            market: Venue code (e.g., "B3"); None triggers B3 detection

        Returns:
            Yahoo symbol (e.g., "PETR4.SA" or "AAPL")
        """
        ticker = ticker.strip().upper()
        if "." in ticker:
            return ticker

        if market:
            return f"{ticker}{self.MARKET_SUFFIXES.get(market.strip().upper(), '')}"

        if B3_TICKER_PATTERN.match(ticker):
            return f"{ticker}.SA"
        return ticker

    @staticmethod
    def _is_valid_ticker_info(info: dict | None) -> bool:
        """Yahoo returns an info dict even for invalid tickers, just an empty-ish one."""
        if not info or not isinstance(info, dict):
            return False
        return bool(
            info.get("regularMarketPrice")
            or info.get("shortName")
            or info.get("longName")
        )
