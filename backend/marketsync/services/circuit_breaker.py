# backend/marketsync/services/circuit_breaker.py
"""
Circuit breaker guarding calls to the market data provider.

When Yahoo Finance is down, every ticker of a run would otherwise burn its
full retry budget against a dead endpoint. The provider wraps each retried
call in the breaker, so one failure is one ticker whose attempts were all
exhausted. After `failure_threshold` such failures in a row (no successful
call in between) the breaker opens and calls fail fast with
CircuitBreakerOpen, which the ingestion pipeline treats as fatal for the run.

States:
    CLOSED    - Normal operation, requests pass through
    OPEN      - Requests rejected immediately until the recovery timeout expires
    HALF_OPEN - One probe request allowed; success closes, failure re-opens

Only exceptions listed in `counted_exceptions` are failures. Anything else
(an unknown ticker, a malformed payload) proves the provider answered and
counts as a success.

Usage:
    breaker = CircuitBreaker(
        name="yahoo",
        counted_exceptions=(ProviderUnavailableError, RateLimitError),
    )

    with breaker:
        provider_call()
"""

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable

from marketsync.services.constants import CIRCUIT_FAILURE_THRESHOLD, CIRCUIT_RECOVERY_TIMEOUT

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """
    Raised when the circuit breaker is open.

    Attributes:
        breaker_name: Name of the circuit breaker
        time_remaining: Seconds until the next probe is allowed
    """

    def __init__(self, breaker_name: str, time_remaining: float) -> None:
        self.breaker_name = breaker_name
        self.time_remaining = time_remaining
        super().__init__(
            f"Circuit breaker '{breaker_name}' is open. "
            f"Retry in {time_remaining:.1f} seconds."
        )


class CircuitBreaker:
    """
    Thread-safe consecutive-failure circuit breaker.

    Args:
        name: Identifier used in logs and CircuitBreakerOpen
        failure_threshold: Consecutive counted failures before opening
        recovery_timeout: Seconds to stay open before allowing a probe
        counted_exceptions: Exception types that count as failures
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
            self,
            name: str,
            failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout: float = CIRCUIT_RECOVERY_TIMEOUT,
            counted_exceptions: tuple[type[BaseException], ...] = (Exception,),
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if recovery_timeout < 0:
            raise ValueError("recovery_timeout cannot be negative")

        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.counted_exceptions = counted_exceptions
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh_state()
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def _refresh_state(self) -> None:
        # Caller holds the lock
        if self._state == CircuitState.OPEN and self._time_until_recovery() <= 0:
            self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state

        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.CLOSED:
            self._consecutive_failures = 0
        self._probe_in_flight = False

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(f"CircuitBreaker '{self.name}' state change: {old_state.value} -> {new_state.value}")

    def _time_until_recovery(self) -> float:
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitBreakerOpen: If the circuit is open, or a half-open probe
                is already in flight
        """
        with self._lock:
            self._refresh_state()

            if self._state == CircuitState.CLOSED:
                return
            if self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return

            raise CircuitBreakerOpen(self.name, self._time_until_recovery())

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)
            else:
                self._consecutive_failures = 0

    def record_failure(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
                return

            self._consecutive_failures += 1
            if self._state == CircuitState.CLOSED and self._consecutive_failures >= self.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    def __enter__(self) -> "CircuitBreaker":
        self.before_call()
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: Any) -> bool:
        if exc_val is not None and isinstance(exc_val, self.counted_exceptions):
            self.record_failure()
        else:
            self.record_success()
        return False

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)

    def snapshot(self) -> dict[str, Any]:
        """Current state for the ingestion status endpoint."""
        with self._lock:
            self._refresh_state()
            return {
                "name": self.name,
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "retry_in_seconds": round(self._time_until_recovery(), 1)
                if self._state == CircuitState.OPEN else 0.0,
            }
