"""
Bus trigger listener.

Subscribes to the trigger topic and asks the scheduler for a run when a
{"trigger": "update"} message arrives. Any other payload is logged and
ignored. Triggers go through the scheduler's single-flight gate, so a
message received during a run is dropped like any other tick.
"""

import json
import logging
import threading
from typing import Callable, Optional, Union

import redis

from price_ingest.events import TRIGGER_UPDATE

logger = logging.getLogger(__name__)

RECONNECT_DELAY = 5.0
POLL_TIMEOUT = 1.0


class TriggerListener:

    def __init__(
        self,
        on_trigger: Callable[[str], bool],
        topic: str = "crypto.update",
        client: Optional[redis.Redis] = None,
        url: str = "redis://localhost:6379/0",
    ):
        self.on_trigger = on_trigger
        self.topic = topic
        self.client = client or redis.Redis.from_url(url, socket_connect_timeout=5)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.received = 0
        self.ignored = 0

    def handle_message(self, raw: Union[bytes, str]) -> bool:
        """
        Handle one raw message body.

        Returns:
            True if a run was requested (whether or not it was dropped)
        """
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")

        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            self.ignored += 1
            logger.warning(f"Ignoring non-JSON message on {self.topic}: {raw!r:.200}")
            return False

        if not isinstance(data, dict) or data.get("trigger") != TRIGGER_UPDATE:
            self.ignored += 1
            logger.info(f"Ignoring unrecognized message on {self.topic}: {data!r:.200}")
            return False

        self.received += 1
        logger.info(f"Update trigger received on {self.topic}")
        self.on_trigger("message")
        return True

    # =========================================================================
    # SUBSCRIPTION THREAD
    # =========================================================================

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._listen, name="price-ingest-triggers", daemon=True)
        self._thread.start()

    def _listen(self) -> None:
        while not self._stop_event.is_set():
            pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            try:
                pubsub.subscribe(self.topic)
                logger.info(f"Subscribed to {self.topic}")
                while not self._stop_event.is_set():
                    message = pubsub.get_message(timeout=POLL_TIMEOUT)
                    if message and message.get("type") == "message":
                        self._dispatch(message["data"])
            except redis.RedisError as e:
                logger.error(f"Trigger subscription error: {e}. Reconnecting in {RECONNECT_DELAY}s")
                self._stop_event.wait(RECONNECT_DELAY)
            finally:
                pubsub.close()

    def _dispatch(self, raw) -> None:
        # A failing handler must not end the subscription
        try:
            self.handle_message(raw)
        except Exception:
            logger.exception(f"Error handling message on {self.topic}")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info(f"Trigger listener stopped ({self.received} trigger(s), {self.ignored} ignored)")
