"""
Event payloads published on the message bus.

crypto.price                 one per stored sample
crypto.ingestion.completed   once per run with at least one success
worker.metrics               run_completed / run_failed / run_skipped / circuit_opened
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

from price_ingest.models import CircuitState, Sample

TRIGGER_UPDATE = "update"

EVENT_RUN_COMPLETED = "run_completed"
EVENT_RUN_FAILED = "run_failed"
EVENT_RUN_SKIPPED = "run_skipped"
EVENT_CIRCUIT_OPENED = "circuit_opened"


@dataclass(frozen=True)
class Topics:
    trigger: str = "crypto.update"
    price: str = "crypto.price"
    completed: str = "crypto.ingestion.completed"
    metrics: str = "worker.metrics"

    @classmethod
    def from_config(cls, config) -> "Topics":
        return cls(
            trigger=config.trigger_topic,
            price=config.price_topic,
            completed=config.completed_topic,
            metrics=config.metrics_topic,
        )


def sample_payload(sample: Sample, run_id: str) -> Dict[str, Any]:
    return {
        "asset_id": sample.asset_id,
        "price": sample.price,
        "market_cap": sample.market_cap,
        "change_24h": sample.change_24h,
        "volatility": sample.volatility,
        "observed_at": sample.observed_at.isoformat(),
        "source": sample.source,
        "run_id": run_id,
    }


def metrics_payload(
    event: str,
    circuit_state: CircuitState,
    consecutive_failures: int,
    **extra: Any,
) -> Dict[str, Any]:
    payload = {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "consecutiveFailures": consecutive_failures,
        "circuitState": CircuitState(circuit_state).value,
    }
    payload.update(extra)
    return payload
