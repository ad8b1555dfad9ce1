"""
Event Publisher
===============

Best-effort, at-least-once announcements over a message bus.

publish() returns True when the bus acknowledged the message and raises
PublishError otherwise. Callers in the ingestion run log the error and move
on; a publish failure never changes an asset's classification.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Tuple

import redis

from price_ingest.exceptions import PublishError

logger = logging.getLogger(__name__)


def encode_payload(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, default=str, sort_keys=True)


class Publisher(ABC):
    """Publisher contract."""

    @abstractmethod
    def publish(self, topic: str, payload: Dict[str, Any]) -> bool:
        """Publish one message. Raises PublishError on failure."""

    def health_check(self) -> bool:
        """True when the bus is reachable."""
        return True

    def close(self) -> None:
        pass


class InMemoryPublisher(Publisher):
    """Records published messages; can be told to fail on given topics."""

    def __init__(self, fail_topics: Iterable[str] = (), healthy: bool = True):
        self.messages: List[Tuple[str, Dict[str, Any]]] = []
        self.fail_topics = set(fail_topics)
        self.healthy = healthy
        self._lock = threading.Lock()

    def publish(self, topic: str, payload: Dict[str, Any]) -> bool:
        if topic in self.fail_topics:
            raise PublishError(f"Simulated publish failure on {topic}")
        # Round-trip through JSON so tests see what subscribers would see
        decoded = json.loads(encode_payload(payload))
        with self._lock:
            self.messages.append((topic, decoded))
        return True

    def health_check(self) -> bool:
        return self.healthy

    def on(self, topic: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [p for t, p in self.messages if t == topic]


class RedisPublisher(Publisher):
    """Publishes JSON payloads over Redis pub/sub."""

    def __init__(self, url: str = "redis://localhost:6379/0", client: redis.Redis = None):
        self.url = url
        self.client = client or redis.Redis.from_url(url, socket_timeout=5, socket_connect_timeout=5)

    def publish(self, topic: str, payload: Dict[str, Any]) -> bool:
        try:
            receivers = self.client.publish(topic, encode_payload(payload))
        except redis.RedisError as e:
            raise PublishError(f"Failed to publish to {topic}: {e}") from e

        logger.debug(f"Published to {topic} ({receivers} receiver(s))")
        return True

    def health_check(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    def close(self) -> None:
        try:
            self.client.close()
        except redis.RedisError as e:
            logger.warning(f"Redis close error: {e}")
