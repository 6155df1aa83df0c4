# backend/marketsync/services/market_data/base.py
"""
Abstract interface for market data providers.

Every provider returns PriceSample objects, so the rest of the application
never sees provider field names. The base class owns the request policy that
is identical for all providers:

    circuit breaker  ->  retry (tenacity)  ->  throttle slot  ->  provider call

The breaker sees one outcome per call, after retries: a ticker whose
attempts are all exhausted counts as a single failure, and any successful
call resets the count. Each attempt takes a fresh throttle slot, so
retries are rate limited too.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import TypeVar, Callable, Any

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from marketsync.services.circuit_breaker import CircuitBreaker
from marketsync.services.exceptions import (
    ProviderUnavailableError,
    RateLimitError,
)
from marketsync.services.market_data.throttle import RequestThrottle

logger = logging.getLogger(__name__)

T = TypeVar('T')


def provider_breaker(name: str) -> CircuitBreaker:
    """Breaker counting retry-exhausted transient and rate-limit failures."""
    return CircuitBreaker(name=name, counted_exceptions=(ProviderUnavailableError, RateLimitError))


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class PriceSample:
    """
    One observed price for one ticker on one trading date.

    Attributes:
        date: Market date the price belongs to (no time component)
        close: Closing (or latest) price, strictly positive
        currency: Trading currency reported by the provider (e.g., "BRL")
        display_name: Instrument name, when the provider returned one
        open: Opening price (optional)
        high: Highest price during the day (optional)
        low: Lowest price during the day (optional)
        volume: Traded volume (optional)
    """

    date: date
    close: Decimal
    currency: str
    display_name: str | None = None
    open: Decimal | None = None
    high: Decimal | None = None
    low: Decimal | None = None
    volume: int | None = None

    def __post_init__(self) -> None:
        if self.close is None or self.close <= 0:
            raise ValueError(f"close price must be positive, got {self.close}")
        if not self.currency:
            raise ValueError("currency is required")


# =============================================================================
# ABSTRACT BASE CLASS
# =============================================================================

class MarketDataProvider(ABC):
    """
    Abstract base class for market data providers.

    Retry Behavior:
        `_execute_with_retry` retries with exponential backoff. Subclasses
        (and tests) tune it through class attributes:

        - MAX_RETRY_ATTEMPTS: Total attempts (default: 3)
        - RETRY_MIN_WAIT: Minimum wait in seconds (default: 1)
        - RETRY_MAX_WAIT: Maximum wait in seconds (default: 10)
        - RETRY_MULTIPLIER: Exponential multiplier (default: 1)

    Retryable Exceptions:
        - ProviderUnavailableError: Network issues, timeouts, server errors
        - RateLimitError: Provider rejection or throttle acquire timeout

    Non-Retryable Exceptions:
        - TickerNotFoundError, MalformedResponseError
        - CircuitBreakerOpen (fatal for an ingestion run)

    Args:
        throttle: Shared request throttle (None disables throttling)
        breaker: Shared circuit breaker (None disables it)
        max_retry_attempts: Instance override of MAX_RETRY_ATTEMPTS
    """

    MAX_RETRY_ATTEMPTS: int = 3
    RETRY_MIN_WAIT: float = 1
    RETRY_MAX_WAIT: float = 10
    RETRY_MULTIPLIER: float = 1

    def __init__(
            self,
            throttle: RequestThrottle | None = None,
            breaker: CircuitBreaker | None = None,
            max_retry_attempts: int | None = None,
    ) -> None:
        self._throttle = throttle
        self._breaker = breaker
        if max_retry_attempts is not None:
            self.MAX_RETRY_ATTEMPTS = max_retry_attempts

    @property
    def breaker(self) -> CircuitBreaker | None:
        return self._breaker

    # =========================================================================
    # ABSTRACT PROPERTIES AND METHODS
    # =========================================================================

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier used in logs and errors (e.g., "yahoo")."""

    @abstractmethod
    def _fetch_latest_quote(self, ticker: str, market: str | None) -> PriceSample:
        """Single provider call for the latest quote; no retry, no throttle."""

    @abstractmethod
    def _fetch_historical_series(
            self,
            ticker: str,
            market: str | None,
            from_date: date,
            to_date: date,
    ) -> list[PriceSample]:
        """Single provider call for a daily series; no retry, no throttle."""

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def fetch_latest_quote(self, ticker: str, market: str | None = None) -> PriceSample:
        """
        Fetch the most recent price for a ticker.

        Args:
            ticker: Application ticker (e.g., "PETR4")
            market: Venue code used for symbol mapping (e.g., "B3")

        Returns:
            PriceSample dated at the provider's market date

        Raises:
            TickerNotFoundError: Unknown ticker (not retried)
            MalformedResponseError: Unparseable payload (not retried)
            RateLimitError: Still rate limited after all attempts
            ProviderUnavailableError: Still unavailable after all attempts
            CircuitBreakerOpen: Provider breaker is open
        """
        return self._execute_with_retry(self._fetch_latest_quote, ticker, market, ticker=ticker)

    def fetch_historical_series(
            self,
            ticker: str,
            from_date: date,
            to_date: date,
            market: str | None = None,
    ) -> list[PriceSample]:
        """
        Fetch daily samples in [from_date, to_date], ascending by date.

        An empty list means the provider knows the ticker but has no data in
        the range. Raises the same errors as fetch_latest_quote.
        """
        if from_date > to_date:
            raise ValueError(f"from_date ({from_date}) is after to_date ({to_date})")

        samples = self._execute_with_retry(
            self._fetch_historical_series, ticker, market, from_date, to_date, ticker=ticker
        )
        return sorted(samples, key=lambda s: s.date)

    # =========================================================================
    # RETRY HELPER METHOD
    # =========================================================================

    def _execute_with_retry(
            self,
            func: Callable[..., T],
            *args: Any,
            ticker: str | None = None,
    ) -> T:
        """
        Execute a provider call with retry, circuit breaker and throttling.

        Args:
            func: Provider call to execute
            *args: Positional arguments for func
            ticker: Ticker for error attribution

        Returns:
            Return value of func

        Raises:
            The last exception if all retries fail
        """

        @retry(
            stop=stop_after_attempt(self.MAX_RETRY_ATTEMPTS),
            wait=wait_exponential(
                multiplier=self.RETRY_MULTIPLIER,
                min=self.RETRY_MIN_WAIT,
                max=self.RETRY_MAX_WAIT,
            ),
            retry=retry_if_exception_type((ProviderUnavailableError, RateLimitError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        def _inner() -> T:
            return self._throttled_call(func, *args, ticker=ticker)

        if self._breaker is None:
            return _inner()
        with self._breaker:
            return _inner()

    def _throttled_call(self, func: Callable[..., T], *args: Any, ticker: str | None) -> T:
        if self._throttle is None:
            return func(*args)
        with self._throttle.slot(ticker):
            return func(*args)

    def is_available(self) -> bool:
        """False while the provider circuit breaker is open."""
        return self._breaker is None or not self._breaker.is_open
