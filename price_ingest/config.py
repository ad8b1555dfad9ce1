"""
Worker configuration.

Values come from the environment (optionally seeded from a .env file) and
are validated once at startup. Any invalid value surfaces as ConfigError.
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from price_ingest.cadence import parse_cadence
from price_ingest.exceptions import ConfigError
from price_ingest.models import DEFAULT_ASSETS, TrackedAsset

# env var -> WorkerConfig field
ENV_FIELDS = {
    "PRICE_INGEST_CADENCE": "cadence",
    "PRICE_INGEST_BATCH_SIZE": "batch_size",
    "PRICE_INGEST_MAX_ATTEMPTS": "max_attempts",
    "PRICE_INGEST_RETRY_INITIAL_DELAY": "retry_initial_delay",
    "PRICE_INGEST_RETRY_MAX_DELAY": "retry_max_delay",
    "PRICE_INGEST_REQUEST_TIMEOUT": "request_timeout",
    "PRICE_INGEST_MIN_REQUEST_INTERVAL": "min_request_interval",
    "PRICE_INGEST_RUN_TIMEOUT": "run_timeout",
    "PRICE_INGEST_BREAKER_THRESHOLD": "breaker_failure_threshold",
    "PRICE_INGEST_BREAKER_RESET_TIMEOUT": "breaker_reset_timeout",
    "PRICE_INGEST_HISTORY_SIZE": "history_size",
    "PRICE_INGEST_HEARTBEAT_INTERVAL": "heartbeat_interval",
    "PRICE_INGEST_SHUTDOWN_GRACE": "shutdown_grace",
    "COINGECKO_BASE_URL": "coingecko_base_url",
    "COINGECKO_API_KEY": "coingecko_api_key",
    "DATABASE_URL": "database_url",
    "REDIS_URL": "redis_url",
    "PRICE_INGEST_TRIGGER_TOPIC": "trigger_topic",
    "PRICE_INGEST_PRICE_TOPIC": "price_topic",
    "PRICE_INGEST_COMPLETED_TOPIC": "completed_topic",
    "PRICE_INGEST_METRICS_TOPIC": "metrics_topic",
    "PRICE_INGEST_LOG_DIR": "log_dir",
    "PRICE_INGEST_LOCK_DIR": "lock_dir",
    "LOG_LEVEL": "log_level",
}


class WorkerConfig(BaseModel):
    """Validated worker settings."""
    model_config = ConfigDict(frozen=True)

    # Scheduling
    cadence: str = Field(default="*/15 * * * *", description="Interval or minute-step cron")
    history_size: int = Field(default=100, ge=1)
    heartbeat_interval: float = Field(default=60.0, gt=0.0)
    shutdown_grace: float = Field(default=10.0, ge=0.0)

    # Assets and batching
    assets: Tuple[TrackedAsset, ...] = Field(default=DEFAULT_ASSETS, min_length=1)
    batch_size: int = Field(default=5, gt=0)
    run_timeout: float = Field(default=30.0, gt=0.0)

    # Fetch retry/backoff
    max_attempts: int = Field(default=3, ge=1, le=20)
    retry_initial_delay: float = Field(default=1.0, gt=0.0)
    retry_max_delay: float = Field(default=30.0, gt=0.0)
    request_timeout: float = Field(default=10.0, gt=0.0)
    min_request_interval: float = Field(default=0.0, ge=0.0)

    # Circuit breaker
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_reset_timeout: float = Field(default=60.0, gt=0.0)

    # Collaborators
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    coingecko_api_key: Optional[str] = None
    database_url: Optional[str] = None
    redis_url: str = "redis://localhost:6379/0"

    # Topics
    trigger_topic: str = "crypto.update"
    price_topic: str = "crypto.price"
    completed_topic: str = "crypto.ingestion.completed"
    metrics_topic: str = "worker.metrics"

    # Logging
    log_dir: Path = Path("logs")
    lock_dir: Path = Path(".locks")
    log_level: str = "INFO"

    @field_validator("cadence")
    @classmethod
    def validate_cadence(cls, v: str) -> str:
        try:
            parse_cadence(v)
        except ConfigError as e:
            raise ValueError(str(e)) from e
        return v

    @field_validator("assets")
    @classmethod
    def validate_unique_assets(cls, v: Tuple[TrackedAsset, ...]) -> Tuple[TrackedAsset, ...]:
        ids = [a.asset_id for a in v]
        if len(set(ids)) != len(ids):
            raise ValueError(f"duplicate asset ids: {ids}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {v}")
        return v

    @model_validator(mode="after")
    def check_delays(self) -> "WorkerConfig":
        if self.retry_max_delay < self.retry_initial_delay:
            raise ValueError(
                f"retry_max_delay ({self.retry_max_delay}) < "
                f"retry_initial_delay ({self.retry_initial_delay})"
            )
        return self

    @property
    def asset_ids(self) -> Tuple[str, ...]:
        return tuple(a.asset_id for a in self.assets)

    def asset(self, asset_id: str) -> Optional[TrackedAsset]:
        for a in self.assets:
            if a.asset_id == asset_id:
                return a
        return None


def parse_assets(raw: str) -> Tuple[TrackedAsset, ...]:
    """
    Parse "bitcoin,ethereum" or "btc=bitcoin" entries into tracked assets.

    Known ids keep their name and symbol from the default set.
    """
    known = {a.asset_id: a for a in DEFAULT_ASSETS}
    assets = []
    for entry in (e.strip() for e in raw.split(",")):
        if not entry:
            continue
        asset_id, _, upstream_id = entry.partition("=")
        asset_id = asset_id.strip()
        upstream_id = upstream_id.strip() or asset_id
        if asset_id in known and upstream_id == known[asset_id].upstream_id:
            assets.append(known[asset_id])
        else:
            assets.append(TrackedAsset(
                asset_id=asset_id,
                name=asset_id,
                symbol=asset_id.upper(),
                upstream_id=upstream_id,
            ))
    return tuple(assets)


def build_config(values: Mapping[str, Any]) -> WorkerConfig:
    """Construct a WorkerConfig, translating validation failures to ConfigError."""
    try:
        return WorkerConfig(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid worker configuration: {e}") from e


def load_config(
    env: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[Path] = None,
    **overrides: Any,
) -> WorkerConfig:
    """
    Load configuration from environment variables.

    Args:
        env: Mapping to read instead of os.environ
        dotenv_path: .env file to load into os.environ first
        **overrides: Field values that win over the environment

    Raises:
        ConfigError: On any invalid value
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    values: Dict[str, Any] = {}
    for var, field_name in ENV_FIELDS.items():
        raw = env.get(var)
        if raw is not None and raw != "":
            values[field_name] = raw

    # CRON_SCHEDULE is the name older deployments use
    if "cadence" not in values and env.get("CRON_SCHEDULE"):
        values["cadence"] = env["CRON_SCHEDULE"]

    if env.get("TRACKED_ASSETS"):
        try:
            values["assets"] = parse_assets(env["TRACKED_ASSETS"])
        except ValidationError as e:
            raise ConfigError(f"Invalid TRACKED_ASSETS: {e}") from e

    values.update(overrides)
    return build_config(values)
