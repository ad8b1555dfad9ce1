"""
RUN CIRCUIT BREAKER
===================

Gates ingestion runs after sustained total upstream failure.

State Machine: CLOSED -> OPEN -> HALF_OPEN -> CLOSED

- CLOSED:    runs execute; consecutive fully-failed runs are counted
- OPEN:      runs are skipped entirely; a timer moves the breaker to
             HALF_OPEN after reset_timeout
- HALF_OPEN: the next run is a trial; success closes, failure re-opens

A run is "failed" only when zero assets succeeded. Partial success counts
as success because the pipeline is still functioning.

record_outcome() drives every run-driven transition. The reset timer is
owned by the breaker and cancelled by close().
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from price_ingest.models import CircuitState

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration"""
    failure_threshold: int = 5     # Consecutive failed runs before OPEN
    reset_timeout: float = 60.0    # Seconds before HALF_OPEN
    name: str = "ingestion_breaker"
    max_transitions: int = 100     # Transition log length


class RunCircuitBreaker:
    """
    Run-level circuit breaker.

    The lock may be shared with the owning WorkerState so breaker and run
    history are guarded by one mutex.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig = None,
        lock: Optional[threading.RLock] = None,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Optional[Callable[[Dict[str, Any]], None]] = None,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._lock = lock or threading.RLock()
        self._clock = clock
        self._timer_factory = timer_factory
        self._timer: Optional[threading.Timer] = None
        self._closed = False
        self.on_transition = on_transition

        # Statistics
        self._stats = {
            'recorded_runs': 0,
            'successful_runs': 0,
            'failed_runs': 0,
            'rejected_runs': 0,
        }
        self._transitions = deque(maxlen=self.config.max_transitions)

    @property
    def state(self) -> CircuitState:
        """Current state, moving an expired OPEN to HALF_OPEN."""
        pending = []
        with self._lock:
            if self._state == CircuitState.OPEN and self._should_attempt_reset():
                pending.append(self._transition_to(CircuitState.HALF_OPEN, "reset_timeout_elapsed"))
            state = self._state
        self._notify(pending)
        return state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def _should_attempt_reset(self) -> bool:
        if self._opened_at is None:
            return True
        return self._clock() - self._opened_at >= self.config.reset_timeout

    def allow_run(self) -> bool:
        """False while OPEN: the run must be skipped, not attempted."""
        if self.state == CircuitState.OPEN:
            with self._lock:
                self._stats['rejected_runs'] += 1
            return False
        return True

    def record_outcome(self, success: bool) -> CircuitState:
        """
        Feed one run classification into the state machine.

        Returns:
            State after the transition (if any)
        """
        pending = []
        current = self.state

        with self._lock:
            self._stats['recorded_runs'] += 1

            if success:
                self._stats['successful_runs'] += 1
                self._consecutive_failures = 0
                if current != CircuitState.CLOSED:
                    pending.append(self._transition_to(CircuitState.CLOSED, "trial_run_succeeded"))
            else:
                self._stats['failed_runs'] += 1
                self._consecutive_failures += 1
                if current == CircuitState.HALF_OPEN:
                    pending.append(self._transition_to(CircuitState.OPEN, "trial_run_failed"))
                elif (current == CircuitState.CLOSED
                      and self._consecutive_failures >= self.config.failure_threshold):
                    pending.append(self._transition_to(
                        CircuitState.OPEN,
                        f"threshold_exceeded: {self._consecutive_failures} failed runs",
                    ))

            state = self._state

        self._notify(pending)
        return state

    def _transition_to(self, new_state: CircuitState, reason: str) -> Dict[str, Any]:
        """Apply a transition. Caller holds the lock."""
        old_state = self._state
        self._state = new_state

        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._arm_timer()
        else:
            self._opened_at = None
            self._cancel_timer()

        transition = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'breaker': self.config.name,
            'from_state': old_state.value,
            'to_state': new_state.value,
            'reason': reason,
            'consecutive_failures': self._consecutive_failures,
        }
        self._transitions.append(transition)

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(f"[{self.config.name}] {old_state.value} -> {new_state.value} ({reason})")
        return transition

    def _arm_timer(self) -> None:
        self._cancel_timer()
        if self._closed:
            return
        self._timer = self._timer_factory(self.config.reset_timeout, self._on_reset_timer)
        self._timer.daemon = True
        self._timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_reset_timer(self) -> None:
        pending = []
        with self._lock:
            self._timer = None
            if self._state == CircuitState.OPEN:
                pending.append(self._transition_to(CircuitState.HALF_OPEN, "reset_timeout_elapsed"))
        self._notify(pending)

    def _notify(self, transitions: List[Dict[str, Any]]) -> None:
        if not self.on_transition:
            return
        for transition in transitions:
            try:
                self.on_transition(transition)
            except Exception as e:
                logger.error(f"[{self.config.name}] transition listener failed: {e}")

    def force_open(self, reason: str = "manual"):
        """Manually open the circuit"""
        with self._lock:
            transition = self._transition_to(CircuitState.OPEN, f"forced: {reason}")
        self._notify([transition])

    def force_close(self, reason: str = "manual"):
        """Manually close the circuit (use with caution)"""
        with self._lock:
            self._consecutive_failures = 0
            transition = self._transition_to(CircuitState.CLOSED, f"forced: {reason}")
        self._notify([transition])

    def get_stats(self) -> Dict:
        """Get circuit breaker statistics"""
        state = self.state
        with self._lock:
            return {
                'name': self.config.name,
                'state': state.value,
                'consecutive_failures': self._consecutive_failures,
                'config': {
                    'failure_threshold': self.config.failure_threshold,
                    'reset_timeout': self.config.reset_timeout,
                },
                **self._stats,
                'state_transitions': list(self._transitions),
            }

    def close(self) -> None:
        """Cancel the reset timer; no timer is armed afterwards."""
        with self._lock:
            self._closed = True
            self._cancel_timer()
