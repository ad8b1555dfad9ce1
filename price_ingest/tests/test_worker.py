"""
Worker assembly, locks and daemon entry point tests.
"""

import logging
import os
from unittest.mock import MagicMock

import pytest

from conftest import StubFetcher, fetch_failure
from price_ingest import (
    ConfigError,
    FetchErrorKind,
    InMemoryPublisher,
    InMemorySampleStore,
    IngestionWorker,
    WorkerConfig,
)
from price_ingest import daemon
from price_ingest.fetcher import CoinGeckoFetcher
from price_ingest.locks import acquire_lock, release_lock, single_flight, single_flight_lock
from price_ingest.worker import STORE_POOL_HEADROOM


@pytest.fixture
def isolated_logging():
    logger = logging.getLogger("price_ingest")
    before = list(logger.handlers)
    yield
    for handler in logger.handlers[:]:
        if handler not in before:
            logger.removeHandler(handler)
            handler.close()


@pytest.fixture
def stub_fetcher(monkeypatch):
    fetcher = StubFetcher()
    monkeypatch.setattr(CoinGeckoFetcher, "from_config", classmethod(lambda cls, config, **kw: fetcher))
    return fetcher


class TestSingleFlightLock:

    def test_same_key_same_lock(self):
        assert single_flight_lock("k1") is single_flight_lock("k1")
        assert single_flight_lock("k1") is not single_flight_lock("k2")

    def test_context_manager(self):
        with single_flight("k3") as first:
            assert first
            with single_flight("k3") as second:
                assert not second
        assert not single_flight_lock("k3").locked()


class TestPidLock:

    def test_acquire_and_release(self, tmp_path):
        assert acquire_lock("worker", tmp_path)
        assert (tmp_path / "worker.pid").read_text() == str(os.getpid())

        release_lock("worker", tmp_path)
        assert not (tmp_path / "worker.pid").exists()

    def test_stale_lock_reclaimed(self, tmp_path):
        # PIDs this large are never live on Linux
        (tmp_path / "worker.pid").write_text("999999999")
        assert acquire_lock("worker", tmp_path)
        release_lock("worker", tmp_path)

    def test_live_lock_blocks(self, tmp_path):
        (tmp_path / "worker.pid").write_text(str(os.getppid()))
        assert not acquire_lock("worker", tmp_path)
        # Not ours, so left in place
        release_lock("worker", tmp_path)
        assert (tmp_path / "worker.pid").exists()


class TestIngestionWorker:

    def test_dry_run_once(self, stub_fetcher):
        with IngestionWorker.build(WorkerConfig(), dry_run=True) as worker:
            assert isinstance(worker.store, InMemorySampleStore)
            assert isinstance(worker.publisher, InMemoryPublisher)
            assert worker.listener is None

            outcome = worker.run_once()

            assert outcome.success
            assert worker.store.count() == 3
            assert worker.state.last_run() == outcome

        assert stub_fetcher.closed

    def test_missing_database_url(self, stub_fetcher):
        with pytest.raises(ConfigError):
            IngestionWorker.build(WorkerConfig(), dry_run=False)

    def test_store_pool_sized_above_batch(self, stub_fetcher, monkeypatch):
        store_cls = MagicMock()
        monkeypatch.setattr("price_ingest.worker.PostgresSampleStore", store_cls)
        monkeypatch.setattr("price_ingest.worker.RedisPublisher", MagicMock())
        config = WorkerConfig(database_url="postgresql://localhost/prices", batch_size=4)

        with IngestionWorker.build(config) as worker:
            assert worker.listener is not None

        assert store_cls.call_args.kwargs["max_connections"] == 4 + STORE_POOL_HEADROOM
        store_cls.return_value.ensure_schema.assert_called_once()

    def test_start_stop(self, stub_fetcher):
        worker = IngestionWorker.build(WorkerConfig(cadence="1h"), dry_run=True)
        worker.start()
        assert worker.scheduler.running

        worker.close()
        assert not worker.scheduler.running
        # Second close is a no-op
        worker.close()


class TestDaemonMain:

    @pytest.fixture(autouse=True)
    def env(self, tmp_path, monkeypatch, isolated_logging):
        monkeypatch.setenv("PRICE_INGEST_LOG_DIR", str(tmp_path / "logs"))
        monkeypatch.setenv("PRICE_INGEST_LOCK_DIR", str(tmp_path / "locks"))
        monkeypatch.delenv("PRICE_INGEST_CADENCE", raising=False)
        monkeypatch.delenv("CRON_SCHEDULE", raising=False)
        self.tmp_path = tmp_path

    def test_bad_cadence_exits_2(self):
        assert daemon.main(["--cadence", "every tuesday"]) == daemon.EXIT_CONFIG_ERROR

    def test_missing_database_exits_2(self, monkeypatch, stub_fetcher):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert daemon.main(["--once"]) == daemon.EXIT_CONFIG_ERROR
        assert not (self.tmp_path / "locks" / "price_ingest.pid").exists()

    def test_dry_run_once(self, stub_fetcher):
        assert daemon.main(["--dry-run", "--once"]) == daemon.EXIT_OK
        assert stub_fetcher.calls
        assert list((self.tmp_path / "logs").glob("price_ingest_*.log"))

    def test_dry_run_once_all_failed(self, stub_fetcher):
        for asset_id in ("bitcoin", "ethereum", "matic-network"):
            stub_fetcher.behaviors[asset_id] = fetch_failure(asset_id, FetchErrorKind.RETRYABLE)

        assert daemon.main(["--dry-run", "--once"]) == daemon.EXIT_RUN_FAILED
