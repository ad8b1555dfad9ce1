"""
Worker assembly.

Wires config, state, fetcher, store, publisher, pipeline, scheduler and the
bus trigger listener together, and tears them down in order:

    1. trigger listener   (no new bus triggers)
    2. scheduler          (timer stopped, in-flight run drained)
    3. circuit breaker    (reset timer cancelled)
    4. fetcher, publisher, store
"""

import logging
from typing import Optional

from price_ingest.config import WorkerConfig
from price_ingest.exceptions import ConfigError
from price_ingest.fetcher import CoinGeckoFetcher
from price_ingest.publisher import InMemoryPublisher, Publisher, RedisPublisher
from price_ingest.run import IngestionPipeline
from price_ingest.scheduler import IngestionScheduler
from price_ingest.state import WorkerState
from price_ingest.store import InMemorySampleStore, PostgresSampleStore, SampleStore
from price_ingest.triggers import TriggerListener

logger = logging.getLogger(__name__)

# Pool connections beyond batch_size, for statistics readers and writes
# still finishing after a run deadline
STORE_POOL_HEADROOM = 2


class IngestionWorker:

    def __init__(
        self,
        config: WorkerConfig,
        store: SampleStore,
        publisher: Publisher,
        fetcher: Optional[CoinGeckoFetcher] = None,
        state: Optional[WorkerState] = None,
        listener: Optional[TriggerListener] = None,
        scheduler_identity: Optional[str] = None,
    ):
        self.config = config
        self.store = store
        self.publisher = publisher
        self.fetcher = fetcher or CoinGeckoFetcher.from_config(config)
        self.state = state or WorkerState.from_config(config)
        self.pipeline = IngestionPipeline.from_config(
            config, self.fetcher, self.store, self.publisher, self.state
        )
        kwargs = {"identity": scheduler_identity} if scheduler_identity else {}
        self.scheduler = IngestionScheduler.from_config(
            config, self.pipeline.execute, self.state, **kwargs
        )
        self.listener = listener
        self._closed = False

    @classmethod
    def build(cls, config: WorkerConfig, dry_run: bool = False) -> "IngestionWorker":
        """
        Build a worker with real collaborators, or in-memory ones for dry runs.

        Raises:
            ConfigError: If DATABASE_URL is missing outside dry-run mode
        """
        if dry_run:
            logger.info("Dry run: in-memory store and publisher, no bus triggers")
            return cls(config, InMemorySampleStore(), InMemoryPublisher())

        if not config.database_url:
            raise ConfigError("DATABASE_URL is required (use --dry-run to run without a database)")

        store = PostgresSampleStore(
            config.database_url, max_connections=config.batch_size + STORE_POOL_HEADROOM
        )
        store.ensure_schema()
        publisher = RedisPublisher(config.redis_url)
        worker = cls(config, store, publisher)
        worker.listener = TriggerListener(
            worker.scheduler.trigger, topic=config.trigger_topic, client=publisher.client
        )
        return worker

    def start(self) -> None:
        self.scheduler.start(self.config.cadence)
        if self.listener is not None:
            self.listener.start()

    def run_once(self, source: str = "manual"):
        return self.scheduler.run_now(source)

    def stop(self) -> None:
        if self.listener is not None:
            self.listener.stop()
        self.scheduler.stop()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.stop()
        self.state.close()
        self.fetcher.close()
        self.publisher.close()
        self.store.close()
        logger.info("Worker resources released")

    def __enter__(self) -> "IngestionWorker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
