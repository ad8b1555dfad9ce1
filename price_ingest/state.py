"""
Shared worker state.

One object owns the circuit breaker, the bounded run history and the
cumulative counters. It is passed by reference to the scheduler and the
ingestion pipeline; a single RLock guards all of it.
"""

import threading
from collections import deque
from datetime import datetime
from typing import Dict, List, Optional

from price_ingest.circuit_breaker import CircuitBreakerConfig, RunCircuitBreaker
from price_ingest.models import RunOutcome


class WorkerState:

    def __init__(
        self,
        breaker_config: CircuitBreakerConfig = None,
        history_size: int = 100,
        breaker: Optional[RunCircuitBreaker] = None,
    ):
        self.lock = threading.RLock()
        self.breaker = breaker or RunCircuitBreaker(breaker_config, lock=self.lock)
        self._history = deque(maxlen=history_size)
        self._last_successful_run: Optional[datetime] = None
        self._totals = {
            "runs": 0,
            "assets_processed": 0,
            "assets_succeeded": 0,
            "assets_failed": 0,
            "total_duration_ms": 0.0,
        }

    @classmethod
    def from_config(cls, config) -> "WorkerState":
        return cls(
            CircuitBreakerConfig(
                failure_threshold=config.breaker_failure_threshold,
                reset_timeout=config.breaker_reset_timeout,
            ),
            history_size=config.history_size,
        )

    def record_run(self, outcome: RunOutcome) -> None:
        """Append one outcome, evicting the oldest beyond the bound."""
        with self.lock:
            self._history.append(outcome)
            self._totals["runs"] += 1
            self._totals["assets_processed"] += outcome.asset_count
            self._totals["assets_succeeded"] += len(outcome.succeeded_assets)
            self._totals["assets_failed"] += len(outcome.failed_assets)
            self._totals["total_duration_ms"] += outcome.duration_ms
            if outcome.success:
                self._last_successful_run = outcome.started_at

    def history(self) -> List[RunOutcome]:
        """Outcomes ordered by completion, oldest first."""
        with self.lock:
            return list(self._history)

    def last_run(self) -> Optional[RunOutcome]:
        with self.lock:
            return self._history[-1] if self._history else None

    @property
    def last_successful_run(self) -> Optional[datetime]:
        with self.lock:
            return self._last_successful_run

    def totals(self) -> Dict[str, float]:
        with self.lock:
            return dict(self._totals)

    def close(self) -> None:
        self.breaker.close()
