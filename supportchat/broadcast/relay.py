"""Cross-process event relay over Redis pub/sub.

Jobs run in the Celery worker, while live connections are held by the API
process. The worker's hub forwards every published event to a Redis channel;
the API process listens on that channel and republishes into its own hub.
"""

from __future__ import annotations

import json
import logging
import threading

import redis

from .events import Event

logger = logging.getLogger(__name__)

CHANNEL = "supportchat:events"


class RedisEventRelay:
    def __init__(self, client: redis.Redis, *, channel: str = CHANNEL) -> None:
        self._redis = client
        self._channel = channel
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_url(cls, url: str, *, channel: str = CHANNEL) -> "RedisEventRelay":
        client = redis.Redis.from_url(
            url, decode_responses=True, retry_on_timeout=True, health_check_interval=30
        )
        return cls(client, channel=channel)

    def forward(self, topic: str, event: Event) -> None:
        payload = json.dumps({"topic": topic, "event": event}, default=str)
        self._redis.publish(self._channel, payload)

    def handle(self, raw: str, hub) -> int:
        try:
            envelope = json.loads(raw)
            topic, event = envelope["topic"], envelope["event"]
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed relay message: %.200s", raw)
            return 0
        return hub.publish_topic(topic, event, relay=False)

    def start(self, hub) -> None:
        """Listen in a daemon thread and republish into ``hub``."""

        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._listen, args=(hub,), name="event-relay", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _listen(self, hub) -> None:
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(self._channel)
        logger.info("Event relay listening on %s", self._channel)
        try:
            while not self._stop.is_set():
                try:
                    message = pubsub.get_message(timeout=1.0)
                except redis.exceptions.ConnectionError:
                    logger.warning("Event relay lost its Redis connection; retrying", exc_info=True)
                    self._stop.wait(1.0)
                    continue
                if message and message.get("type") == "message":
                    try:
                        self.handle(message["data"], hub)
                    except ValueError:
                        logger.warning("Relay message with unknown event type dropped")
        finally:
            pubsub.close()
