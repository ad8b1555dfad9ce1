"""Pytest fixtures for price ingest tests."""
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from price_ingest.circuit_breaker import CircuitBreakerConfig
from price_ingest.exceptions import AssetFetchFailed
from price_ingest.models import Sample
from price_ingest.publisher import InMemoryPublisher
from price_ingest.run import IngestionPipeline
from price_ingest.state import WorkerState
from price_ingest.store import InMemorySampleStore

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_sample(asset_id="bitcoin", price=45000.0, minutes=0, change_24h=2.5, market_cap=9.0e11):
    return Sample(
        asset_id=asset_id,
        price=price,
        market_cap=market_cap,
        change_24h=change_24h,
        observed_at=BASE_TIME + timedelta(minutes=minutes),
    )


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, json_error=False):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self._json_error = json_error

    def json(self):
        if self._json_error:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """Replays queued responses or exceptions, in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self):
        self.closed = True


def market_entry(upstream_id="bitcoin", price=45000.0, market_cap=9.0e11, change=2.5):
    return {
        "id": upstream_id,
        "current_price": price,
        "market_cap": market_cap,
        "price_change_percentage_24h": change,
    }


class StubFetcher:
    """
    Fetcher double keyed by asset id.

    A behavior is a Sample, an exception to raise, or a callable returning
    one of those. Assets with no behavior get a default sample.
    """

    def __init__(self, behaviors=None):
        self.behaviors = dict(behaviors or {})
        self.calls = []
        self.closed = False
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def fetch(self, asset_id):
        with self._lock:
            self.calls.append(asset_id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            behavior = self.behaviors.get(asset_id)
            if callable(behavior):
                behavior = behavior()
            if behavior is None:
                behavior = make_sample(asset_id)
            if isinstance(behavior, BaseException):
                raise behavior
            return behavior
        finally:
            with self._lock:
                self.active -= 1

    def close(self):
        self.closed = True


def fetch_failure(asset_id, kind, attempts=3, message="upstream down"):
    return AssetFetchFailed(asset_id, kind, attempts, RuntimeError(message))


@pytest.fixture
def store():
    return InMemorySampleStore()


@pytest.fixture
def publisher():
    return InMemoryPublisher()


@pytest.fixture
def state():
    s = WorkerState(CircuitBreakerConfig(failure_threshold=3, reset_timeout=60.0), history_size=10)
    yield s
    s.close()


@pytest.fixture
def make_pipeline(store, publisher, state):
    """Factory building a pipeline over in-memory collaborators."""

    def _make(fetcher=None, assets=("bitcoin", "ethereum", "matic-network"), **kwargs):
        return IngestionPipeline(
            fetcher or StubFetcher(),
            kwargs.pop("store", store),
            kwargs.pop("publisher", publisher),
            kwargs.pop("state", state),
            asset_ids=assets,
            **kwargs,
        )

    return _make


@pytest.fixture
def scheduler_identity():
    """Unique single-flight key so schedulers in different tests never share a lock."""
    return f"test.scheduler.{uuid.uuid4()}"


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()

