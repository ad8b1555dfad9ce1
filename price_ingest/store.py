"""
Sample Store
============

Append-only persistence of samples and lookup of the most recent N
samples per asset.

The worker never needs a transaction spanning more than one sample.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import PoolError, ThreadedConnectionPool

from price_ingest.exceptions import StoreReadError, StoreWriteError
from price_ingest.models import Sample

logger = logging.getLogger(__name__)


class SampleStore(ABC):
    """Store contract used by the ingestion run and statistics readers."""

    @abstractmethod
    def append(self, sample: Sample) -> None:
        """Persist one sample. Raises StoreWriteError on failure."""

    @abstractmethod
    def recent_samples(self, asset_id: str, limit: int) -> List[Sample]:
        """Up to `limit` samples for one asset, newest first."""

    def latest_sample(self, asset_id: str) -> Optional[Sample]:
        samples = self.recent_samples(asset_id, 1)
        return samples[0] if samples else None

    def health_check(self) -> bool:
        """True when the backing database is reachable."""
        return True

    def close(self) -> None:
        pass


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemorySampleStore(SampleStore):
    """Process-local store, used for dry runs and tests."""

    def __init__(self, fail_assets: Iterable[str] = (), healthy: bool = True):
        self._samples: Dict[str, List[Sample]] = defaultdict(list)
        self._lock = threading.Lock()
        self.fail_assets = set(fail_assets)
        self.healthy = healthy

    def append(self, sample: Sample) -> None:
        if sample.asset_id in self.fail_assets:
            raise StoreWriteError(f"Simulated write failure for {sample.asset_id}")
        with self._lock:
            self._samples[sample.asset_id].append(sample)

    def recent_samples(self, asset_id: str, limit: int) -> List[Sample]:
        with self._lock:
            samples = list(self._samples.get(asset_id, ()))
        samples.sort(key=lambda s: s.observed_at, reverse=True)
        return samples[:limit]

    def count(self, asset_id: Optional[str] = None) -> int:
        with self._lock:
            if asset_id is not None:
                return len(self._samples.get(asset_id, ()))
            return sum(len(v) for v in self._samples.values())

    def health_check(self) -> bool:
        return self.healthy


# =============================================================================
# POSTGRES
# =============================================================================

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS price_samples (
        id BIGSERIAL PRIMARY KEY,
        asset_id TEXT NOT NULL,
        price DOUBLE PRECISION NOT NULL CHECK (price >= 0),
        market_cap DOUBLE PRECISION NOT NULL CHECK (market_cap >= 0),
        change_24h DOUBLE PRECISION NOT NULL,
        observed_at TIMESTAMPTZ NOT NULL,
        source TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    CREATE INDEX IF NOT EXISTS idx_price_samples_asset_observed
        ON price_samples (asset_id, observed_at DESC);
"""


class PostgresSampleStore(SampleStore):
    """
    PostgreSQL-backed store.

    Uses a threaded connection pool so samples from one batch can be
    written concurrently. ThreadedConnectionPool raises as soon as it is
    exhausted, so checkouts are gated by a semaphore and wait up to
    acquire_timeout for a free connection.
    """

    def __init__(
        self,
        dsn: str,
        min_connections: int = 1,
        max_connections: int = 5,
        acquire_timeout: float = 10.0,
    ):
        self.dsn = dsn
        self.acquire_timeout = acquire_timeout
        self._slots = threading.BoundedSemaphore(max_connections)
        self._pool = ThreadedConnectionPool(
            min_connections, max_connections, dsn, options="-c client_encoding=UTF8"
        )
        logger.info(f"Database pool ready (max {max_connections} connections)")

    @contextmanager
    def connection(self):
        """
        Check out a pooled connection, waiting for one to free up.

        Raises:
            PoolError: If no connection is free within acquire_timeout
        """
        if not self._slots.acquire(timeout=self.acquire_timeout):
            raise PoolError(f"no connection free within {self.acquire_timeout}s")
        try:
            conn = self._pool.getconn()
            try:
                yield conn
            finally:
                self._pool.putconn(conn)
        finally:
            self._slots.release()

    def ensure_schema(self) -> None:
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()

    def append(self, sample: Sample) -> None:
        try:
            with self.connection() as conn:
                try:
                    with conn.cursor() as cur:
                        cur.execute("""
                            INSERT INTO price_samples
                                (asset_id, price, market_cap, change_24h, observed_at, source)
                            VALUES (%s, %s, %s, %s, %s, %s)
                        """, (
                            sample.asset_id,
                            sample.price,
                            sample.market_cap,
                            sample.change_24h,
                            sample.observed_at,
                            sample.source,
                        ))
                    conn.commit()
                except psycopg2.Error:
                    conn.rollback()
                    raise
        except psycopg2.Error as e:
            raise StoreWriteError(f"Failed to store sample for {sample.asset_id}: {e}") from e

    def recent_samples(self, asset_id: str, limit: int) -> List[Sample]:
        try:
            with self.connection() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute("""
                        SELECT asset_id, price, market_cap, change_24h, observed_at, source
                        FROM price_samples
                        WHERE asset_id = %s
                        ORDER BY observed_at DESC
                        LIMIT %s
                    """, (asset_id, limit))
                    rows = cur.fetchall()
        except psycopg2.Error as e:
            raise StoreReadError(f"Failed to read samples for {asset_id}: {e}") from e

        return [Sample(**row) for row in rows]

    def health_check(self) -> bool:
        try:
            with self.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
                conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Database health check failed: {e}")
            return False
        return True

    def close(self) -> None:
        self._pool.closeall()
        logger.info("Database pool closed")
