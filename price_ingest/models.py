"""
Price Ingest Data Models
========================

Pydantic v2 models for samples, run outcomes, statistics and status.

All records are frozen: a Sample is never mutated after the fetcher
creates it, and a RunOutcome is written once per run.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"        # Normal operation
    OPEN = "OPEN"            # Runs skipped entirely
    HALF_OPEN = "HALF_OPEN"  # Next run is a trial


class FetchErrorKind(str, Enum):
    """Classification of a fetch failure, decided where the error is raised."""
    RETRYABLE = "RETRYABLE"
    NON_RETRYABLE = "NON_RETRYABLE"
    VALIDATION = "VALIDATION"


class FailureReason(str, Enum):
    """Reason an asset is listed under RunOutcome.failed_assets."""
    CIRCUIT_OPEN = "CircuitOpen"
    HEALTH_CHECK_FAILED = "HealthCheckFailed"
    RUN_TIMEOUT = "RunTimeout"
    FETCH_FAILED = "FetchFailed"
    VALIDATION_FAILED = "ValidationFailed"
    STORE_WRITE_FAILED = "StoreWriteFailed"
    UNEXPECTED_ERROR = "UnexpectedError"


# ============================================================================
# ASSETS & SAMPLES
# ============================================================================

class TrackedAsset(BaseModel):
    """A tracked asset and its upstream identifier."""
    model_config = ConfigDict(frozen=True)

    asset_id: str = Field(..., min_length=1)
    name: str
    symbol: str
    upstream_id: str = Field(..., min_length=1, description="CoinGecko coin id")


DEFAULT_ASSETS = (
    TrackedAsset(asset_id="bitcoin", name="Bitcoin", symbol="BTC", upstream_id="bitcoin"),
    TrackedAsset(asset_id="ethereum", name="Ethereum", symbol="ETH", upstream_id="ethereum"),
    TrackedAsset(
        asset_id="matic-network", name="Polygon", symbol="MATIC", upstream_id="matic-network"
    ),
)


class Sample(BaseModel):
    """
    One validated price observation for one asset.

    observed_at is the moment the upstream response passed validation,
    not the moment the first attempt was made.
    """
    model_config = ConfigDict(frozen=True)

    asset_id: str = Field(..., min_length=1)
    price: float = Field(..., ge=0.0)
    market_cap: float = Field(..., ge=0.0)
    change_24h: float
    observed_at: datetime
    source: str = "CoinGecko"

    @property
    def volatility(self) -> float:
        """Absolute 24h change, published alongside each sample."""
        return abs(self.change_24h)


# ============================================================================
# RUN OUTCOMES
# ============================================================================

class RunOutcome(BaseModel):
    """
    Result of one ingestion run.

    succeeded_assets and failed_assets partition the dispatched asset set.
    """
    model_config = ConfigDict(frozen=True)

    run_id: str
    trigger: str = "timer"
    started_at: datetime
    duration_ms: float = Field(..., ge=0.0)
    succeeded_assets: FrozenSet[str] = Field(default_factory=frozenset)
    failed_assets: Dict[str, FailureReason] = Field(default_factory=dict)
    failure_details: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_partition(self) -> "RunOutcome":
        overlap = self.succeeded_assets & set(self.failed_assets)
        if overlap:
            raise ValueError(f"assets both succeeded and failed: {sorted(overlap)}")
        return self

    @property
    def success(self) -> bool:
        """A run succeeds for circuit purposes when any asset succeeded."""
        return len(self.succeeded_assets) > 0

    @property
    def asset_count(self) -> int:
        return len(self.succeeded_assets) + len(self.failed_assets)

    def completion_payload(self) -> Dict:
        return {
            "succeededAssets": sorted(self.succeeded_assets),
            "failedAssets": {k: v.value for k, v in sorted(self.failed_assets.items())},
            "durationMs": round(self.duration_ms, 3),
            "runId": self.run_id,
        }


# ============================================================================
# STATISTICS & STATUS
# ============================================================================

class Deviation(BaseModel):
    """Population standard deviation of recent prices for one asset."""
    model_config = ConfigDict(frozen=True)

    value: float = Field(..., ge=0.0)
    sample_size: int = Field(..., gt=0)
    mean: float


class SchedulerStatus(BaseModel):
    """Snapshot returned by IngestionScheduler.status()."""
    model_config = ConfigDict(frozen=True)

    running: bool
    in_flight: bool
    last_run: Optional[RunOutcome] = None
    next_run_at: Optional[datetime] = None
    history: List[RunOutcome] = Field(default_factory=list)
    circuit_state: CircuitState
    consecutive_failures: int = Field(..., ge=0)
    totals: Dict[str, float] = Field(default_factory=dict)
