"""
Price Ingest v1.0

Resilient scheduled ingestion of crypto market prices.

Fetches current price, market cap and 24h change for each tracked asset
from CoinGecko, persists validated samples, and announces them on a
message bus. Runs are single-flight, bounded by a wall-clock timeout, and
gated by a run-level circuit breaker.

Version: 1.0.0
"""

__version__ = "1.0.0"

from price_ingest.models import (
    CircuitState,
    FetchErrorKind,
    FailureReason,
    TrackedAsset,
    DEFAULT_ASSETS,
    Sample,
    RunOutcome,
    Deviation,
    SchedulerStatus,
)

from price_ingest.cadence import (
    Cadence,
    parse_cadence,
)

from price_ingest.config import (
    WorkerConfig,
    build_config,
    load_config,
    parse_assets,
)

from price_ingest.statistics import (
    deviation,
    price_deviation,
    deviation_level,
)

from price_ingest.fetcher import (
    CoinGeckoFetcher,
    retry_with_backoff,
    parse_market_payload,
)

from price_ingest.store import (
    SampleStore,
    InMemorySampleStore,
    PostgresSampleStore,
)

from price_ingest.publisher import (
    Publisher,
    InMemoryPublisher,
    RedisPublisher,
)

from price_ingest.circuit_breaker import (
    CircuitBreakerConfig,
    RunCircuitBreaker,
)

from price_ingest.state import WorkerState

from price_ingest.run import (
    IngestionPipeline,
    IngestionRun,
)

from price_ingest.scheduler import IngestionScheduler

from price_ingest.triggers import TriggerListener

from price_ingest.worker import IngestionWorker

from price_ingest.exceptions import (
    PriceIngestError,
    ConfigError,
    TransientFetchError,
    NonRetryableFetchError,
    ValidationError,
    AssetFetchFailed,
    CircuitOpenError,
    HealthCheckError,
    RunTimeoutError,
    StoreWriteError,
    StoreReadError,
    PublishError,
    InsufficientDataException,
)

__all__ = [
    # Models
    "CircuitState",
    "FetchErrorKind",
    "FailureReason",
    "TrackedAsset",
    "DEFAULT_ASSETS",
    "Sample",
    "RunOutcome",
    "Deviation",
    "SchedulerStatus",
    # Cadence & config
    "Cadence",
    "parse_cadence",
    "WorkerConfig",
    "build_config",
    "load_config",
    "parse_assets",
    # Statistics
    "deviation",
    "price_deviation",
    "deviation_level",
    # Fetching
    "CoinGeckoFetcher",
    "retry_with_backoff",
    "parse_market_payload",
    # Storage & publishing
    "SampleStore",
    "InMemorySampleStore",
    "PostgresSampleStore",
    "Publisher",
    "InMemoryPublisher",
    "RedisPublisher",
    # Circuit breaker & state
    "CircuitBreakerConfig",
    "RunCircuitBreaker",
    "WorkerState",
    # Runs & scheduling
    "IngestionPipeline",
    "IngestionRun",
    "IngestionScheduler",
    "TriggerListener",
    "IngestionWorker",
    # Exceptions
    "PriceIngestError",
    "ConfigError",
    "TransientFetchError",
    "NonRetryableFetchError",
    "ValidationError",
    "AssetFetchFailed",
    "CircuitOpenError",
    "HealthCheckError",
    "RunTimeoutError",
    "StoreWriteError",
    "StoreReadError",
    "PublishError",
    "InsufficientDataException",
]
