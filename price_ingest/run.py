"""
Ingestion Run
=============

One execution of the pipeline over every tracked asset.

Flow:
    1. Pre-flight: if the breaker is OPEN the run is skipped. Every asset is
       marked CircuitOpen and nothing is fed back to the breaker.
       Then the store and publisher health checks run. If either fails the
       run is aborted with every asset marked HealthCheckFailed, and that
       counts as a failed run for the breaker.
    2. Assets are split into batches of batch_size. Batches run one after
       another; the assets inside a batch are fetched concurrently.
    3. For each fetched sample the store write and the price event are
       attempted concurrently. Only the store result decides the asset.
    4. At the run deadline every unresolved asset is marked RunTimeout,
       including assets whose batch never started.
    5. The outcome is fed to the breaker exactly once, then announced.

Per-asset failures never escape the run; the run always yields an outcome.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from price_ingest.events import (
    EVENT_CIRCUIT_OPENED,
    EVENT_RUN_COMPLETED,
    EVENT_RUN_FAILED,
    EVENT_RUN_SKIPPED,
    Topics,
    metrics_payload,
    sample_payload,
)
from price_ingest.exceptions import (
    AssetFetchFailed,
    CircuitOpenError,
    HealthCheckError,
    PublishError,
    RunTimeoutError,
    StoreWriteError,
)
from price_ingest.models import CircuitState, FailureReason, FetchErrorKind, RunOutcome, Sample

logger = logging.getLogger(__name__)

# Batches are not started with less than this much run time left
MIN_BATCH_WINDOW = 0.01

# (reason, detail); reason None means the asset succeeded
AssetResult = Tuple[Optional[FailureReason], Optional[str]]


class IngestionPipeline:
    """
    Long-lived collaborators shared by every run.

    Registers itself as the breaker's transition listener so circuit_opened
    is announced on the metrics topic.
    """

    def __init__(
        self,
        fetcher,
        store,
        publisher,
        state,
        asset_ids: Sequence[str],
        topics: Topics = None,
        batch_size: int = 5,
        run_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.fetcher = fetcher
        self.store = store
        self.publisher = publisher
        self.state = state
        self.asset_ids = tuple(asset_ids)
        self.topics = topics or Topics()
        self.batch_size = batch_size
        self.run_timeout = run_timeout
        self.clock = clock
        self.now = now

        self.state.breaker.on_transition = self.on_circuit_transition

    @classmethod
    def from_config(cls, config, fetcher, store, publisher, state, **kwargs) -> "IngestionPipeline":
        return cls(
            fetcher,
            store,
            publisher,
            state,
            asset_ids=config.asset_ids,
            topics=Topics.from_config(config),
            batch_size=config.batch_size,
            run_timeout=config.run_timeout,
            **kwargs,
        )

    def execute(self, trigger: str = "timer") -> RunOutcome:
        return IngestionRun(self, trigger).execute()

    def publish(self, topic: str, payload: Dict) -> bool:
        """Best-effort publish. Failures are logged and reported as False."""
        try:
            return self.publisher.publish(topic, payload)
        except PublishError as e:
            logger.warning(f"Publish to {topic} failed: {e}")
            return False

    def on_circuit_transition(self, transition: Dict) -> None:
        if transition["to_state"] != CircuitState.OPEN.value:
            return
        self.publish(self.topics.metrics, metrics_payload(
            EVENT_CIRCUIT_OPENED,
            CircuitState(transition["to_state"]),
            transition["consecutive_failures"],
            reason=transition["reason"],
            breaker=transition["breaker"],
        ))


class IngestionRun:
    """A single run. Create a new instance per trigger."""

    def __init__(self, pipeline: IngestionPipeline, trigger: str = "timer", run_id: str = None):
        self.pipeline = pipeline
        self.trigger = trigger
        self.run_id = run_id or str(uuid.uuid4())
        self._expired = threading.Event()
        self._io_pool: Optional[ThreadPoolExecutor] = None
        self._deadline = 0.0

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def execute(self) -> RunOutcome:
        p = self.pipeline
        started_at = p.now()
        t0 = p.clock()
        self._deadline = t0 + p.run_timeout

        if not p.state.breaker.allow_run():
            return self._skip(started_at, t0)

        unhealthy = self._unhealthy_components()
        if unhealthy:
            return self._abort(started_at, t0, HealthCheckError(unhealthy))

        logger.info(f"[{self.run_id}] Run started ({self.trigger}): {len(p.asset_ids)} asset(s)")

        results: Dict[str, AssetResult] = {}
        self._io_pool = ThreadPoolExecutor(max_workers=p.batch_size, thread_name_prefix="ingest-io")
        try:
            for batch in self._batches():
                remaining = self._deadline - p.clock()
                if remaining < MIN_BATCH_WINDOW:
                    break
                results.update(self._run_batch(batch, remaining))
        finally:
            self._expired.set()
            self._io_pool.shutdown(wait=False, cancel_futures=True)

        unresolved = [a for a in p.asset_ids if a not in results]
        if unresolved:
            err = RunTimeoutError(p.run_timeout, len(unresolved))
            logger.warning(f"[{self.run_id}] {err}: {', '.join(unresolved)}")
            for asset_id in unresolved:
                results[asset_id] = (FailureReason.RUN_TIMEOUT, str(err))

        outcome = self._outcome(started_at, t0, results)
        p.state.breaker.record_outcome(outcome.success)
        self._announce(outcome)
        return outcome

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    def _batches(self) -> List[Tuple[str, ...]]:
        ids = self.pipeline.asset_ids
        size = self.pipeline.batch_size
        return [ids[i:i + size] for i in range(0, len(ids), size)]

    def _run_batch(self, batch: Sequence[str], remaining: float) -> Dict[str, AssetResult]:
        """Run one batch; only assets that finished before `remaining` are returned."""
        executor = ThreadPoolExecutor(
            max_workers=len(batch), thread_name_prefix=f"ingest-{self.run_id[:8]}"
        )
        try:
            futures = {executor.submit(self._process_asset, a): a for a in batch}
            done, _ = wait(futures, timeout=remaining)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        resolved: Dict[str, AssetResult] = {}
        for future in done:
            asset_id = futures[future]
            try:
                resolved[asset_id] = future.result()
            except Exception as e:
                logger.exception(f"[{self.run_id}] Unexpected error processing {asset_id}")
                resolved[asset_id] = (FailureReason.UNEXPECTED_ERROR, f"{type(e).__name__}: {e}")
        return resolved

    # -------------------------------------------------------------------------
    # Per asset
    # -------------------------------------------------------------------------

    def _process_asset(self, asset_id: str) -> AssetResult:
        p = self.pipeline
        try:
            sample = p.fetcher.fetch(asset_id)
        except AssetFetchFailed as e:
            if e.kind == FetchErrorKind.VALIDATION:
                reason = FailureReason.VALIDATION_FAILED
            else:
                reason = FailureReason.FETCH_FAILED
            logger.error(f"[{self.run_id}] {e}")
            return reason, str(e)

        # Past the deadline the asset is already counted as RunTimeout
        if self._expired.is_set():
            return FailureReason.RUN_TIMEOUT, "sample arrived after run deadline"

        publish_future = self._io_pool.submit(self._publish_sample, sample)

        store_error: Optional[Exception] = None
        try:
            p.store.append(sample)
        except StoreWriteError as e:
            store_error = e
            logger.error(f"[{self.run_id}] {e}")

        self._await_publish(publish_future, asset_id)

        if store_error is not None:
            return FailureReason.STORE_WRITE_FAILED, str(store_error)
        return None, None

    def _publish_sample(self, sample: Sample) -> bool:
        return self.pipeline.publish(self.pipeline.topics.price, sample_payload(sample, self.run_id))

    def _await_publish(self, future, asset_id: str) -> None:
        remaining = max(0.0, self._deadline - self.pipeline.clock())
        try:
            future.result(timeout=remaining)
        except FutureTimeout:
            logger.warning(f"[{self.run_id}] Price event for {asset_id} still pending at deadline")
        except Exception as e:
            logger.warning(f"[{self.run_id}] Price event for {asset_id} failed: {e}")

    # -------------------------------------------------------------------------
    # Outcome
    # -------------------------------------------------------------------------

    def _outcome(self, started_at: datetime, t0: float, results: Dict[str, AssetResult]) -> RunOutcome:
        succeeded = frozenset(a for a, (reason, _) in results.items() if reason is None)
        failed = {a: reason for a, (reason, _) in results.items() if reason is not None}
        details = {
            a: detail for a, (reason, detail) in results.items()
            if reason is not None and detail
        }
        return RunOutcome(
            run_id=self.run_id,
            trigger=self.trigger,
            started_at=started_at,
            duration_ms=max(0.0, (self.pipeline.clock() - t0) * 1000.0),
            succeeded_assets=succeeded,
            failed_assets=failed,
            failure_details=details,
        )

    def _unhealthy_components(self) -> List[str]:
        p = self.pipeline
        unhealthy = []
        for name, component in (("store", p.store), ("publisher", p.publisher)):
            try:
                healthy = component.health_check()
            except Exception:
                logger.exception(f"[{self.run_id}] {name} health check raised")
                healthy = False
            if not healthy:
                unhealthy.append(name)
        return unhealthy

    def _abort(self, started_at: datetime, t0: float, err: HealthCheckError) -> RunOutcome:
        """Fail every asset without fetching. Counts against the breaker."""
        p = self.pipeline
        logger.error(f"[{self.run_id}] {err}, run aborted")

        results = {a: (FailureReason.HEALTH_CHECK_FAILED, str(err)) for a in p.asset_ids}
        outcome = self._outcome(started_at, t0, results)
        p.state.breaker.record_outcome(outcome.success)
        self._announce(outcome)
        return outcome

    def _skip(self, started_at: datetime, t0: float) -> RunOutcome:
        p = self.pipeline
        err = CircuitOpenError(f"Circuit {CircuitState.OPEN.value}, run skipped")
        logger.warning(f"[{self.run_id}] {err}")

        results = {a: (FailureReason.CIRCUIT_OPEN, str(err)) for a in p.asset_ids}
        outcome = self._outcome(started_at, t0, results)

        p.publish(p.topics.metrics, metrics_payload(
            EVENT_RUN_SKIPPED,
            CircuitState.OPEN,
            p.state.breaker.consecutive_failures,
            runId=self.run_id,
            trigger=self.trigger,
        ))
        return outcome

    def _announce(self, outcome: RunOutcome) -> None:
        p = self.pipeline
        breaker = p.state.breaker

        n_ok = len(outcome.succeeded_assets)
        n_failed = len(outcome.failed_assets)
        summary = (
            f"[{self.run_id}] Run finished in {outcome.duration_ms:.0f}ms: "
            f"{n_ok} succeeded, {n_failed} failed"
        )
        if outcome.success:
            logger.info(summary)
        else:
            logger.error(summary)

        p.publish(p.topics.metrics, metrics_payload(
            EVENT_RUN_COMPLETED if outcome.success else EVENT_RUN_FAILED,
            breaker.state,
            breaker.consecutive_failures,
            runId=self.run_id,
            trigger=self.trigger,
            processed=outcome.asset_count,
            succeeded=n_ok,
            failed=n_failed,
            durationMs=round(outcome.duration_ms, 3),
        ))

        if outcome.success:
            p.publish(p.topics.completed, outcome.completion_payload())
