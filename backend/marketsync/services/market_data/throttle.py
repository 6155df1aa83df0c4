# backend/marketsync/services/market_data/throttle.py
"""
Client-side request throttle for the market data provider.

Yahoo Finance does not document its limits but starts answering
"Too Many Requests" once a client bursts. The throttle keeps a run below
that by enforcing two limits shared by every worker thread:

- a minimum interval between two request starts
- a cap on the number of requests in flight

A caller that cannot get a slot within `acquire_timeout` seconds gets a
RateLimitError, the same error a provider-side rejection produces, so the
retry policy handles both uniformly.
"""

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Callable

from marketsync.services.exceptions import RateLimitError

logger = logging.getLogger(__name__)


class RequestThrottle:
    """
    Thread-safe start-interval and concurrency limiter.

    Args:
        provider: Provider name reported in RateLimitError
        min_interval: Minimum seconds between two request starts
        max_concurrency: Maximum requests in flight
        acquire_timeout: Maximum seconds a caller waits for a slot
        clock: Monotonic time source (injectable for tests)
        sleep: Sleep function (injectable for tests)
    """

    def __init__(
            self,
            provider: str,
            min_interval: float = 0.4,
            max_concurrency: int = 5,
            acquire_timeout: float = 30.0,
            clock: Callable[[], float] = time.monotonic,
            sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval cannot be negative")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self.provider = provider
        self.min_interval = min_interval
        self.max_concurrency = max_concurrency
        self.acquire_timeout = acquire_timeout
        self._clock = clock
        self._sleep = sleep

        self._slots = threading.BoundedSemaphore(max_concurrency)
        self._start_lock = threading.Lock()
        self._next_start = 0.0

    @contextmanager
    def slot(self, ticker: str | None = None) -> Iterator[None]:
        """
        Hold one request slot for the duration of the block.

        Raises:
            RateLimitError: If no slot frees up within acquire_timeout
        """
        deadline = self._clock() + self.acquire_timeout

        if not self._slots.acquire(timeout=self.acquire_timeout):
            logger.warning(f"No {self.provider} request slot within {self.acquire_timeout}s")
            raise RateLimitError(provider=self.provider, ticker=ticker)

        try:
            self._wait_for_start(deadline, ticker)
            yield
        finally:
            self._slots.release()

    def _wait_for_start(self, deadline: float, ticker: str | None) -> None:
        # Starts are serialized so two threads never claim the same instant
        with self._start_lock:
            now = self._clock()
            wait = self._next_start - now

            if wait > 0:
                if now + wait > deadline:
                    raise RateLimitError(provider=self.provider, ticker=ticker)
                logger.debug(f"Throttling {self.provider} request for {wait:.2f}s")
                self._sleep(wait)
                now += wait

            self._next_start = now + self.min_interval
