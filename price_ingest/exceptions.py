"""
Price Ingest Exceptions
=======================

Domain-specific exceptions for the ingestion worker.

All exceptions inherit from PriceIngestError. Per-asset failures are caught
inside the ingestion run and recorded in its RunOutcome; ConfigError is the
only one expected to terminate the worker process.
"""


class PriceIngestError(Exception):
    """Base exception for all price ingest errors."""
    pass


class ConfigError(PriceIngestError):
    """Raised when the scheduler cadence or a tuning parameter is invalid.

    Fatal at startup, never retried.
    """
    pass


class TransientFetchError(PriceIngestError):
    """Retryable network/upstream fault (connection reset, timeout, 5xx, 429).

    Attributes:
        status_code: HTTP status when the upstream answered, else None
        retry_after: Seconds requested by the upstream before retrying
    """

    def __init__(self, message: str, status_code: int = None, retry_after: float = None):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class NonRetryableFetchError(PriceIngestError):
    """Upstream rejected the request (4xx other than 429, unknown asset)."""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


class ValidationError(PriceIngestError):
    """Upstream payload is malformed or incomplete. Never retried.

    Examples:
    - price missing or not positive
    - market cap missing or negative
    - 24h change missing
    """
    pass


class AssetFetchFailed(PriceIngestError):
    """Terminal failure fetching one asset.

    Carries the classification of the last error, the number of attempts
    made and the underlying exception.
    """

    def __init__(self, asset_id: str, kind, attempts: int, last_error: Exception):
        self.asset_id = asset_id
        self.kind = kind
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Fetch failed for {asset_id} after {attempts} attempt(s) "
            f"[{getattr(kind, 'value', kind)}]: {last_error}"
        )


class CircuitOpenError(PriceIngestError):
    """Run aborted pre-flight because the circuit breaker is OPEN."""
    pass


class HealthCheckError(PriceIngestError):
    """Run aborted pre-flight because a dependency failed its health check."""

    def __init__(self, components):
        self.components = tuple(components)
        super().__init__(f"Health check failed: {', '.join(self.components)}")


class RunTimeoutError(PriceIngestError):
    """Run exceeded its wall-clock budget."""

    def __init__(self, timeout: float, unresolved: int):
        self.timeout = timeout
        self.unresolved = unresolved
        super().__init__(f"Run exceeded {timeout}s with {unresolved} unresolved asset(s)")


class StoreWriteError(PriceIngestError):
    """Persisting a sample failed. The asset counts as failed for the run."""
    pass


class StoreReadError(PriceIngestError):
    """Reading samples back from the store failed."""
    pass


class PublishError(PriceIngestError):
    """Publishing to the message bus failed. Logged only, best-effort channel."""
    pass


class InsufficientDataException(PriceIngestError):
    """Raised when statistics are requested over an empty sample sequence."""
    pass
