"""
Ingestion Run Tests

Partitioning of assets into succeeded/failed, batching, run timeout,
circuit-open skips, health checks and event publication.
"""

import threading
import time

import pytest

from conftest import StubFetcher, fetch_failure, make_sample
from price_ingest import (
    CircuitState,
    FailureReason,
    FetchErrorKind,
    InMemoryPublisher,
    InMemorySampleStore,
    RunOutcome,
)

ASSETS = ("bitcoin", "ethereum", "matic-network")


def assert_partition(outcome: RunOutcome, assets):
    """succeeded and failed are disjoint and cover exactly the dispatched set."""
    assert not (outcome.succeeded_assets & set(outcome.failed_assets))
    assert outcome.succeeded_assets | set(outcome.failed_assets) == set(assets)


class TestSuccessfulRun:

    def test_all_assets_succeed(self, make_pipeline, store, publisher, state):
        outcome = make_pipeline().execute()

        assert outcome.succeeded_assets == frozenset(ASSETS)
        assert outcome.failed_assets == {}
        assert outcome.success
        assert outcome.trigger == "timer"
        assert outcome.duration_ms >= 0
        assert store.count() == 3
        assert state.breaker.state == CircuitState.CLOSED

    def test_price_events_published(self, make_pipeline, publisher):
        outcome = make_pipeline().execute()

        events = publisher.on("crypto.price")
        assert sorted(e["asset_id"] for e in events) == sorted(ASSETS)
        event = events[0]
        assert set(event) >= {
            "asset_id", "price", "market_cap", "change_24h", "volatility", "observed_at", "run_id"
        }
        assert event["run_id"] == outcome.run_id
        assert event["volatility"] == pytest.approx(2.5)

    def test_completion_event(self, make_pipeline, publisher):
        outcome = make_pipeline().execute("message")

        completed = publisher.on("crypto.ingestion.completed")
        assert len(completed) == 1
        assert completed[0]["runId"] == outcome.run_id
        assert completed[0]["succeededAssets"] == sorted(ASSETS)
        assert completed[0]["failedAssets"] == {}
        assert "durationMs" in completed[0]
        assert outcome.trigger == "message"

    def test_metrics_event(self, make_pipeline, publisher):
        make_pipeline().execute()

        metrics = publisher.on("worker.metrics")
        assert metrics[-1]["event"] == "run_completed"
        assert metrics[-1]["circuitState"] == "CLOSED"
        assert metrics[-1]["consecutiveFailures"] == 0
        assert metrics[-1]["processed"] == 3


class TestPartialFailure:

    def test_mixed_failures_classified(self, make_pipeline, publisher):
        fetcher = StubFetcher({
            "ethereum": fetch_failure("ethereum", FetchErrorKind.RETRYABLE),
            "matic-network": fetch_failure("matic-network", FetchErrorKind.VALIDATION, attempts=1),
        })

        outcome = make_pipeline(fetcher).execute()

        assert_partition(outcome, ASSETS)
        assert outcome.succeeded_assets == frozenset({"bitcoin"})
        assert outcome.failed_assets == {
            "ethereum": FailureReason.FETCH_FAILED,
            "matic-network": FailureReason.VALIDATION_FAILED,
        }
        assert "ethereum" in outcome.failure_details
        # Partial success still counts as success
        assert outcome.success
        assert publisher.on("crypto.ingestion.completed")[0]["failedAssets"] == {
            "ethereum": "FetchFailed",
            "matic-network": "ValidationFailed",
        }

    def test_store_failure(self, make_pipeline, publisher):
        store = InMemorySampleStore(fail_assets={"ethereum"})

        outcome = make_pipeline(store=store).execute()

        assert outcome.failed_assets == {"ethereum": FailureReason.STORE_WRITE_FAILED}
        assert store.count("ethereum") == 0
        # Publish is attempted even though the store write failed
        assert "ethereum" in [e["asset_id"] for e in publisher.on("crypto.price")]

    def test_publish_failure_does_not_fail_asset(self, make_pipeline, store):
        publisher = InMemoryPublisher(fail_topics={"crypto.price", "worker.metrics"})

        outcome = make_pipeline(publisher=publisher).execute()

        assert outcome.succeeded_assets == frozenset(ASSETS)
        assert store.count() == 3

    def test_unexpected_error(self, make_pipeline):
        fetcher = StubFetcher({"bitcoin": KeyError("boom")})

        outcome = make_pipeline(fetcher).execute()

        assert outcome.failed_assets["bitcoin"] == FailureReason.UNEXPECTED_ERROR
        assert_partition(outcome, ASSETS)

    def test_total_failure_feeds_breaker(self, make_pipeline, publisher, state):
        fetcher = StubFetcher({
            a: fetch_failure(a, FetchErrorKind.RETRYABLE) for a in ASSETS
        })

        outcome = make_pipeline(fetcher).execute()

        assert not outcome.success
        assert state.breaker.consecutive_failures == 1
        assert publisher.on("crypto.ingestion.completed") == []
        assert publisher.on("worker.metrics")[-1]["event"] == "run_failed"


class TestCircuitOpen:

    def test_open_circuit_skips_run(self, make_pipeline, state, publisher):
        fetcher = StubFetcher()
        state.breaker.force_open("test")

        outcome = make_pipeline(fetcher).execute()

        assert fetcher.calls == []
        assert outcome.failed_assets == {a: FailureReason.CIRCUIT_OPEN for a in ASSETS}
        assert outcome.succeeded_assets == frozenset()
        assert publisher.on("worker.metrics")[-1]["event"] == "run_skipped"

    def test_skip_not_fed_to_breaker(self, make_pipeline, state):
        state.breaker.force_open("test")
        before = state.breaker.get_stats()["recorded_runs"]

        make_pipeline().execute()

        assert state.breaker.get_stats()["recorded_runs"] == before
        assert state.breaker.state == CircuitState.OPEN

    def test_threshold_opens_and_publishes(self, make_pipeline, state, publisher):
        fetcher = StubFetcher({
            a: fetch_failure(a, FetchErrorKind.RETRYABLE) for a in ASSETS
        })
        pipeline = make_pipeline(fetcher)

        for _ in range(3):
            pipeline.execute()

        assert state.breaker.state == CircuitState.OPEN
        opened = [m for m in publisher.on("worker.metrics") if m["event"] == "circuit_opened"]
        assert len(opened) == 1
        assert opened[0]["circuitState"] == "OPEN"
        assert opened[0]["consecutiveFailures"] == 3

        # Fourth run is skipped without touching upstream
        calls_before = len(fetcher.calls)
        outcome = pipeline.execute()
        assert len(fetcher.calls) == calls_before
        assert set(outcome.failed_assets.values()) == {FailureReason.CIRCUIT_OPEN}


class TestHealthChecks:

    def test_unhealthy_store_aborts_run(self, make_pipeline, state, publisher):
        fetcher = StubFetcher()

        outcome = make_pipeline(fetcher, store=InMemorySampleStore(healthy=False)).execute()

        assert fetcher.calls == []
        assert outcome.failed_assets == {a: FailureReason.HEALTH_CHECK_FAILED for a in ASSETS}
        assert "store" in outcome.failure_details["bitcoin"]
        assert not outcome.success
        assert state.breaker.consecutive_failures == 1
        assert publisher.on("worker.metrics")[-1]["event"] == "run_failed"

    def test_unhealthy_publisher_aborts_run(self, make_pipeline, store, state):
        publisher = InMemoryPublisher(healthy=False)

        outcome = make_pipeline(publisher=publisher).execute()

        assert set(outcome.failed_assets.values()) == {FailureReason.HEALTH_CHECK_FAILED}
        assert "publisher" in outcome.failure_details["ethereum"]
        assert store.count() == 0
        assert state.breaker.consecutive_failures == 1

    def test_raising_health_check_counts_as_unhealthy(self, make_pipeline, state):
        store = InMemorySampleStore()
        store.health_check = lambda: 1 / 0

        outcome = make_pipeline(store=store).execute()

        assert set(outcome.failed_assets.values()) == {FailureReason.HEALTH_CHECK_FAILED}

    def test_repeated_failures_open_circuit(self, make_pipeline, state):
        pipeline = make_pipeline(store=InMemorySampleStore(healthy=False))

        for _ in range(3):
            pipeline.execute()

        assert state.breaker.state == CircuitState.OPEN
        outcome = pipeline.execute()
        assert set(outcome.failed_assets.values()) == {FailureReason.CIRCUIT_OPEN}

    def test_recovered_dependency_runs_normally(self, make_pipeline, state):
        store = InMemorySampleStore(healthy=False)
        pipeline = make_pipeline(store=store)
        pipeline.execute()

        store.healthy = True
        outcome = pipeline.execute()

        assert outcome.succeeded_assets == frozenset(ASSETS)
        assert state.breaker.consecutive_failures == 0


class TestBatching:

    def test_concurrency_bounded_by_batch_size(self, make_pipeline):
        assets = tuple(f"coin-{i}" for i in range(7))

        def slow(asset_id):
            def _fetch():
                time.sleep(0.05)
                return make_sample(asset_id)
            return _fetch

        fetcher = StubFetcher({a: slow(a) for a in assets})
        outcome = make_pipeline(fetcher, assets=assets, batch_size=3).execute()

        assert outcome.succeeded_assets == frozenset(assets)
        assert fetcher.max_active <= 3
        assert len(fetcher.calls) == 7

    def test_batch_size_one_is_sequential(self, make_pipeline):
        fetcher = StubFetcher()
        make_pipeline(fetcher, batch_size=1).execute()
        assert fetcher.max_active == 1
        assert fetcher.calls == list(ASSETS)

    def test_invalid_batch_size(self, make_pipeline):
        with pytest.raises(ValueError):
            make_pipeline(batch_size=0)


class TestRunTimeout:

    def test_hung_asset_marked_run_timeout(self, make_pipeline, store):
        release = threading.Event()

        def hang():
            release.wait(5.0)
            return make_sample("ethereum")

        fetcher = StubFetcher({"ethereum": hang})
        try:
            outcome = make_pipeline(fetcher, run_timeout=0.3).execute()
        finally:
            release.set()

        assert outcome.failed_assets == {"ethereum": FailureReason.RUN_TIMEOUT}
        assert outcome.succeeded_assets == frozenset({"bitcoin", "matic-network"})
        assert_partition(outcome, ASSETS)

    def test_unstarted_batches_marked_run_timeout(self, make_pipeline):
        release = threading.Event()

        def hang():
            release.wait(5.0)
            return make_sample("bitcoin")

        fetcher = StubFetcher({"bitcoin": hang})
        try:
            outcome = make_pipeline(fetcher, batch_size=1, run_timeout=0.2).execute()
        finally:
            release.set()

        # bitcoin hangs in the first batch, the others never start
        assert outcome.failed_assets == {a: FailureReason.RUN_TIMEOUT for a in ASSETS}
        assert "ethereum" not in fetcher.calls
        assert not outcome.success

    def test_late_sample_not_stored(self, make_pipeline, store):
        release = threading.Event()

        def hang():
            release.wait(5.0)
            return make_sample("ethereum")

        fetcher = StubFetcher({"ethereum": hang})
        pipeline = make_pipeline(fetcher, run_timeout=0.2)
        outcome = pipeline.execute()

        release.set()
        # Give the abandoned worker thread a moment to finish
        time.sleep(0.2)

        assert outcome.failed_assets == {"ethereum": FailureReason.RUN_TIMEOUT}
        assert store.count("ethereum") == 0
