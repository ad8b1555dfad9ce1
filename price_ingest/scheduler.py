"""
Ingestion Scheduler
===================

Fires ingestion runs on a cadence, on bus triggers and on demand.

Guarantees:
- At most one run in flight. A tick that arrives while a run holds the
  single-flight lock is dropped and logged, never queued.
- Missed ticks are skipped. After a slow run the next fire time is computed
  from the current time, so there is no catch-up burst.
- stop() stops the timer first, then waits for the in-flight run to drain.
  No new run starts after stop() returns.
- The tick loop never dies on an exception; errors are logged.

A heartbeat line with breaker state and totals is logged every
heartbeat_interval seconds while the scheduler is running.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from price_ingest.cadence import Cadence, parse_cadence
from price_ingest.locks import single_flight, single_flight_lock
from price_ingest.models import RunOutcome, SchedulerStatus
from price_ingest.state import WorkerState

logger = logging.getLogger(__name__)

SCHEDULER_IDENTITY = "price_ingest.scheduler"

# Upper bound on a single wait in the tick loop
MAX_TICK_WAIT = 1.0


class IngestionScheduler:
    """
    Drives the ingestion pipeline.

    execute_run is called with the trigger source ("timer", "message",
    "manual") and must return a RunOutcome. Each completed run appends
    exactly one outcome to the shared WorkerState history.
    """

    def __init__(
        self,
        execute_run: Callable[[str], RunOutcome],
        state: WorkerState,
        run_timeout: float = 30.0,
        heartbeat_interval: float = 60.0,
        shutdown_grace: float = 10.0,
        identity: str = SCHEDULER_IDENTITY,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.execute_run = execute_run
        self.state = state
        self.run_timeout = run_timeout
        self.heartbeat_interval = heartbeat_interval
        self.shutdown_grace = shutdown_grace
        self.identity = identity
        self._now = now

        self._flight = single_flight_lock(identity)
        self._control = threading.Lock()
        self._stop_event = threading.Event()
        self._running = False
        self._cadence: Optional[Cadence] = None
        self._next_run_at: Optional[datetime] = None
        self._tick_thread: Optional[threading.Thread] = None
        self._run_thread: Optional[threading.Thread] = None

        self.dropped_ticks = 0

    @classmethod
    def from_config(cls, config, execute_run, state, **kwargs) -> "IngestionScheduler":
        return cls(
            execute_run,
            state,
            run_timeout=config.run_timeout,
            heartbeat_interval=config.heartbeat_interval,
            shutdown_grace=config.shutdown_grace,
            **kwargs,
        )

    @property
    def running(self) -> bool:
        with self._control:
            return self._running

    @property
    def in_flight(self) -> bool:
        return self._flight.locked()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self, cadence: Union[str, int, float, Cadence]) -> None:
        """
        Start firing on `cadence`. Calling start() while running is a no-op.

        Raises:
            ConfigError: If the cadence is invalid
        """
        parsed = parse_cadence(cadence)

        with self._control:
            if self._running:
                logger.warning("Scheduler already running; start() ignored")
                return
            self._cadence = parsed
            self._stop_event.clear()
            self._running = True
            self._next_run_at = parsed.next_fire(self._now())
            self._tick_thread = threading.Thread(
                target=self._tick_loop, name="price-ingest-ticks", daemon=True
            )
            self._tick_thread.start()

        logger.info("=" * 60)
        logger.info("PRICE INGEST SCHEDULER STARTED")
        logger.info(f"  Cadence:  {parsed.expression}")
        logger.info(f"  Next run: {self._next_run_at.isoformat()}")
        logger.info("=" * 60)

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop the timer and wait for the in-flight run to finish.

        Idempotent. timeout defaults to run_timeout + shutdown_grace.
        """
        with self._control:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()
            tick_thread = self._tick_thread
            run_thread = self._run_thread

        if tick_thread is not None and tick_thread is not threading.current_thread():
            tick_thread.join()

        if run_thread is not None and run_thread.is_alive():
            drain = timeout if timeout is not None else self.run_timeout + self.shutdown_grace
            logger.info(f"Waiting up to {drain:.1f}s for in-flight run to finish...")
            run_thread.join(drain)
            if run_thread.is_alive():
                logger.error("In-flight run did not finish within the shutdown window")

        with self._control:
            self._next_run_at = None
            self._tick_thread = None

        totals = self.state.totals()
        logger.info(
            f"Scheduler stopped. Runs: {totals['runs']:.0f}, "
            f"assets ok/failed: {totals['assets_succeeded']:.0f}/{totals['assets_failed']:.0f}"
        )

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    def trigger(self, source: str = "manual") -> bool:
        """
        Start a run in the background unless one is already in flight.

        Returns:
            True if a run was started, False if the tick was dropped
        """
        with self._control:
            if not self._running:
                logger.warning(f"Trigger from {source} ignored: scheduler not running")
                return False

            if not self._flight.acquire(blocking=False):
                self.dropped_ticks += 1
                logger.warning(f"Tick from {source} dropped: previous run still in flight")
                return False

            try:
                thread = threading.Thread(
                    target=self._run_and_release,
                    args=(source,),
                    name=f"price-ingest-run-{source}",
                    daemon=True,
                )
                thread.start()
            except BaseException:
                self._flight.release()
                raise
            self._run_thread = thread
        return True

    def run_now(self, source: str = "manual") -> Optional[RunOutcome]:
        """
        Execute one run synchronously. Works whether or not the timer is started.

        Returns:
            The outcome, or None if a run was already in flight
        """
        with single_flight(self.identity) as acquired:
            if not acquired:
                self.dropped_ticks += 1
                logger.warning(f"Run from {source} dropped: previous run still in flight")
                return None
            return self._execute(source)

    def _run_and_release(self, source: str) -> None:
        try:
            self._execute(source)
        finally:
            self._flight.release()

    def _execute(self, source: str) -> Optional[RunOutcome]:
        try:
            outcome = self.execute_run(source)
        except Exception:
            logger.exception(f"Run from {source} crashed")
            return None
        self.state.record_run(outcome)
        return outcome

    # =========================================================================
    # TICK LOOP
    # =========================================================================

    def _tick_loop(self) -> None:
        last_heartbeat = time.monotonic()

        while not self._stop_event.is_set():
            try:
                with self._control:
                    next_run_at = self._next_run_at
                if next_run_at is None:
                    break

                wait = (next_run_at - self._now()).total_seconds()
                if wait > 0:
                    if self._stop_event.wait(min(wait, MAX_TICK_WAIT)):
                        break
                else:
                    with self._control:
                        # Schedule from now: ticks missed while busy are skipped
                        self._next_run_at = self._cadence.next_fire(self._now())
                    self.trigger("timer")

                if time.monotonic() - last_heartbeat >= self.heartbeat_interval:
                    last_heartbeat = time.monotonic()
                    self._heartbeat()
            except Exception:
                logger.exception("Tick loop error")
                self._stop_event.wait(MAX_TICK_WAIT)

    def _heartbeat(self) -> None:
        s = self.status()
        last = s.last_run
        last_desc = (
            f"{len(last.succeeded_assets)}/{last.asset_count} ok at {last.started_at.isoformat()}"
            if last else "none"
        )
        logger.info(
            f"Heartbeat: circuit={s.circuit_state.value} "
            f"failures={s.consecutive_failures} in_flight={s.in_flight} "
            f"last_run={last_desc} runs={s.totals.get('runs', 0):.0f}"
        )

    # =========================================================================
    # STATUS
    # =========================================================================

    def status(self) -> SchedulerStatus:
        breaker = self.state.breaker
        with self._control:
            running = self._running
            next_run_at = self._next_run_at
        return SchedulerStatus(
            running=running,
            in_flight=self.in_flight,
            last_run=self.state.last_run(),
            next_run_at=next_run_at,
            history=self.state.history(),
            circuit_state=breaker.state,
            consecutive_failures=breaker.consecutive_failures,
            totals=self.state.totals(),
        )
