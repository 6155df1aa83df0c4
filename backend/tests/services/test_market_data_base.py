# backend/tests/services/test_market_data_base.py
"""
Tests for the provider request policy shared by all providers:
retry, circuit breaker and request throttling.
"""

import threading
from datetime import date
from decimal import Decimal

import pytest

from marketsync.services.circuit_breaker import CircuitBreaker, CircuitBreakerOpen
from marketsync.services.constants import CIRCUIT_FAILURE_THRESHOLD
from marketsync.services.exceptions import (
    MalformedResponseError,
    ProviderUnavailableError,
    RateLimitError,
    TickerNotFoundError,
)
from marketsync.services.market_data import PriceSample, RequestThrottle, provider_breaker
from tests.conftest import MockMarketDataProvider, make_series


class FlakyProvider(MockMarketDataProvider):
    """Fails the first `failures` quote requests with `error`."""

    def __init__(self, failures: int, error: Exception, **kwargs):
        super().__init__(**kwargs)
        self._remaining = failures
        self._error = error
        self.set_quote("PETR4", "38.50")

    def _fetch_latest_quote(self, ticker, market):
        self.calls.append(("quote", ticker))
        if self._remaining > 0:
            self._remaining -= 1
            raise self._error
        return self._quotes[ticker]


class TestPriceSample:

    def test_rejects_non_positive_close(self):
        with pytest.raises(ValueError, match="positive"):
            PriceSample(date=date(2024, 1, 2), close=Decimal(0), currency="BRL")

    def test_requires_currency(self):
        with pytest.raises(ValueError, match="currency"):
            PriceSample(date=date(2024, 1, 2), close=Decimal("1.0"), currency="")


class TestRetry:

    def test_transient_error_retried(self):
        provider = FlakyProvider(2, ProviderUnavailableError("mock", "Timeout"))

        sample = provider.fetch_latest_quote("PETR4")

        assert sample.close == Decimal("38.50")
        assert len(provider.calls) == 3

    def test_rate_limit_retried(self):
        provider = FlakyProvider(1, RateLimitError("mock"))

        provider.fetch_latest_quote("PETR4")

        assert len(provider.calls) == 2

    def test_gives_up_after_max_attempts(self):
        provider = FlakyProvider(10, ProviderUnavailableError("mock", "Timeout"), max_retry_attempts=2)

        with pytest.raises(ProviderUnavailableError):
            provider.fetch_latest_quote("PETR4")

        assert len(provider.calls) == 2

    def test_malformed_response_not_retried(self):
        provider = FlakyProvider(1, MalformedResponseError("mock", "missing currency"))

        with pytest.raises(MalformedResponseError):
            provider.fetch_latest_quote("PETR4")

        assert len(provider.calls) == 1


class TestBreakerIntegration:

    def test_exhausted_retries_count_as_one_failure(self):
        breaker = CircuitBreaker("mock", failure_threshold=2, counted_exceptions=(ProviderUnavailableError,))
        provider = FlakyProvider(10, ProviderUnavailableError("mock", "Timeout"), breaker=breaker)

        with pytest.raises(ProviderUnavailableError):
            provider.fetch_latest_quote("PETR4")

        assert len(provider.calls) == 3
        assert breaker.consecutive_failures == 1
        assert provider.is_available() is True

    def test_opens_after_threshold_calls_then_rejects(self):
        breaker = provider_breaker("mock")
        provider = FlakyProvider(100, ProviderUnavailableError("mock", "Timeout"), breaker=breaker)

        for _ in range(CIRCUIT_FAILURE_THRESHOLD):
            with pytest.raises(ProviderUnavailableError):
                provider.fetch_latest_quote("PETR4")
        calls_before = len(provider.calls)

        with pytest.raises(CircuitBreakerOpen):
            provider.fetch_latest_quote("PETR4")

        assert calls_before == CIRCUIT_FAILURE_THRESHOLD * 3
        assert len(provider.calls) == calls_before
        assert provider.is_available() is False

    def test_success_after_retries_resets_count(self):
        breaker = provider_breaker("mock")
        provider = FlakyProvider(3, ProviderUnavailableError("mock", "Timeout"), breaker=breaker)

        with pytest.raises(ProviderUnavailableError):
            provider.fetch_latest_quote("PETR4")
        assert breaker.consecutive_failures == 1

        provider._remaining = 2
        sample = provider.fetch_latest_quote("PETR4")

        assert sample.close == Decimal("38.50")
        assert breaker.consecutive_failures == 0

    def test_not_found_does_not_count(self):
        breaker = provider_breaker("mock")
        provider = MockMarketDataProvider(breaker=breaker)

        with pytest.raises(TickerNotFoundError):
            provider.fetch_latest_quote("XXXX3")

        assert breaker.consecutive_failures == 0


class TestHistoricalSeries:

    def test_sorted_ascending(self, mock_provider):
        mock_provider.set_series("PETR4", list(reversed(make_series(date(2024, 1, 1), 3))))

        samples = mock_provider.fetch_historical_series("PETR4", date(2024, 1, 1), date(2024, 1, 31))

        assert [s.date.day for s in samples] == [1, 2, 3]

    def test_inverted_range(self, mock_provider):
        with pytest.raises(ValueError):
            mock_provider.fetch_historical_series("PETR4", date(2024, 2, 1), date(2024, 1, 1))


# =============================================================================
# THROTTLE
# =============================================================================

class FakeTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TestRequestThrottle:

    def test_spaces_request_starts(self):
        fake = FakeTime()
        throttle = RequestThrottle("mock", min_interval=0.5, clock=fake.clock, sleep=fake.sleep)

        for _ in range(3):
            with throttle.slot():
                pass

        assert fake.sleeps == [0.5, 0.5]

    def test_no_wait_when_interval_elapsed(self):
        fake = FakeTime()
        throttle = RequestThrottle("mock", min_interval=0.5, clock=fake.clock, sleep=fake.sleep)

        with throttle.slot():
            pass
        fake.now += 2
        with throttle.slot():
            pass

        assert fake.sleeps == []

    def test_wait_beyond_deadline_raises(self):
        fake = FakeTime()
        throttle = RequestThrottle("mock", min_interval=10, acquire_timeout=1, clock=fake.clock, sleep=fake.sleep)

        with throttle.slot():
            pass
        with pytest.raises(RateLimitError):
            with throttle.slot(ticker="PETR4"):
                pass

    def test_concurrency_limit(self):
        throttle = RequestThrottle("mock", min_interval=0, max_concurrency=1, acquire_timeout=0.05)
        holding = threading.Event()
        release = threading.Event()

        def hold_slot():
            with throttle.slot():
                holding.set()
                release.wait(timeout=5)

        worker = threading.Thread(target=hold_slot)
        worker.start()
        assert holding.wait(timeout=5)

        try:
            with pytest.raises(RateLimitError):
                with throttle.slot():
                    pass
        finally:
            release.set()
            worker.join(timeout=5)

        with throttle.slot():
            pass

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            RequestThrottle("mock", max_concurrency=0)
        with pytest.raises(ValueError):
            RequestThrottle("mock", min_interval=-1)
