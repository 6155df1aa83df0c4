# backend/marketsync/services/exceptions.py
"""
Service layer exceptions.

These exceptions represent domain-specific errors and contain NO HTTP knowledge.
The application layer (main.py) maps them to HTTP responses.

Exception Hierarchy:
    ServiceError (base)
    ├── ValidationError
    ├── NotFoundError
    │   └── AssetNotFoundError
    ├── MarketDataError
    │   ├── TickerNotFoundError        (not retried)
    │   ├── RateLimitError             (retried with backoff)
    │   ├── ProviderUnavailableError   (retried with backoff)
    │   └── MalformedResponseError     (not retried)
    ├── RunInProgressError
    ├── StorageUnavailableError
    └── AuthError

    CircuitBreakerOpen (from circuit_breaker module)
        - Raised when the provider circuit breaker is blocking requests

Inside an ingestion run, MarketDataError subclasses are recorded against the
ticker and the run continues. StorageUnavailableError and CircuitBreakerOpen
abort the run.
"""


class ServiceError(Exception):
    """
    Base exception for all service layer errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(ServiceError):
    """
    Raised when input validation fails in the service layer.

    Attributes:
        field: The field that failed validation (optional)
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


# =============================================================================
# NOT FOUND ERRORS
# =============================================================================


class NotFoundError(ServiceError):
    """
    Base exception for resource not found errors.

    Attributes:
        resource_type: Type of resource (e.g., "Asset")
        resource_id: Identifier of the resource
    """

    def __init__(
            self,
            message: str,
            resource_type: str | None = None,
            resource_id: int | str | None = None,
    ) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(message)


class AssetNotFoundError(NotFoundError):
    """Raised when no registered asset has the given ticker."""

    def __init__(self, ticker: str) -> None:
        self.ticker = ticker
        super().__init__(
            f"Asset '{ticker}' not found",
            resource_type="Asset",
            resource_id=ticker,
        )


# =============================================================================
# MARKET DATA PROVIDER ERRORS
# =============================================================================


class MarketDataError(ServiceError):
    """
    Base exception for market data provider failures.

    Attributes:
        provider: Name of the provider that failed
        ticker: Ticker being fetched, when known
    """

    def __init__(
            self,
            message: str,
            provider: str | None = None,
            ticker: str | None = None,
    ) -> None:
        self.provider = provider
        self.ticker = ticker
        super().__init__(message)


class ProviderUnavailableError(MarketDataError):
    """
    Raised when a market data provider is temporarily unavailable.

    Examples:
    - Network timeout
    - Server errors (500, 502, 503)
    - Connection refused

    This is a retryable error.
    """

    def __init__(self, provider: str, reason: str, ticker: str | None = None) -> None:
        super().__init__(f"Provider '{provider}' is unavailable: {reason}", provider=provider, ticker=ticker)
        self.reason = reason


class TickerNotFoundError(MarketDataError):
    """
    Raised when the provider does not know the ticker symbol.

    This is NOT a retryable error.
    """

    def __init__(self, ticker: str, provider: str) -> None:
        super().__init__(f"Ticker '{ticker}' not found by {provider}", provider=provider, ticker=ticker)


class RateLimitError(MarketDataError):
    """
    Raised when the provider's rate limit has been exceeded, or when no
    request slot became free within the throttle's acquire timeout.

    This is a retryable error (with backoff).

    Attributes:
        retry_after: Seconds to wait before retrying (if known)
    """

    def __init__(self, provider: str, retry_after: int | None = None, ticker: str | None = None) -> None:
        message = f"Rate limit exceeded for provider '{provider}'"
        if retry_after:
            message += f" (retry after {retry_after}s)"
        super().__init__(message, provider=provider, ticker=ticker)
        self.retry_after = retry_after


class MalformedResponseError(MarketDataError):
    """
    Raised when a provider payload cannot be parsed into price samples.

    This is NOT a retryable error; asking again returns the same payload.
    """

    def __init__(self, provider: str, reason: str, ticker: str | None = None) -> None:
        super().__init__(f"Malformed response from '{provider}': {reason}", provider=provider, ticker=ticker)
        self.reason = reason


# =============================================================================
# INGESTION / INFRASTRUCTURE ERRORS
# =============================================================================


class RunInProgressError(ServiceError):
    """
    Raised when an ingestion trigger arrives while another run is active.

    The trigger is rejected immediately; it is never queued.
    """

    def __init__(self, run_id: str | None = None) -> None:
        self.run_id = run_id
        message = "An ingestion run is already in progress"
        if run_id:
            message += f" (run {run_id})"
        super().__init__(message)


class StorageUnavailableError(ServiceError):
    """Raised when the database cannot be reached; fatal for an ingestion run."""

    def __init__(self, reason: str = "database connection failed") -> None:
        self.reason = reason
        super().__init__(f"Storage unavailable: {reason}")


class AuthError(ServiceError):
    """Raised when a trigger or admin call presents a missing or wrong bearer token."""

    def __init__(self, message: str = "Invalid or missing credentials") -> None:
        super().__init__(message)
