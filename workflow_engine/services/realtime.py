"""
Real-time notification channel.

Pushes freshly persisted notifications to connected clients, keyed by user:

  - RedisChannel: PUBLISH to ``notifications:<user_id>`` (production)
  - InMemoryChannel: per-user subscriber callbacks + history (dev/testing)

``build_channel(url)`` picks the implementation from REALTIME_URL and
falls back to memory when Redis cannot be reached at startup.
"""

import json
import logging
import threading
from collections import defaultdict
from typing import Callable, Protocol

import redis

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "notifications:"


class RealtimeChannel(Protocol):
    def publish(self, user_id: str, payload: dict) -> None:
        ...


def channel_name(user_id: str) -> str:
    return f"{CHANNEL_PREFIX}{user_id}"


class InMemoryChannel:
    """Thread-safe in-process channel."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Callable[[dict], None]]] = defaultdict(list)
        self.published: list[tuple[str, dict]] = []

    def subscribe(self, user_id: str, callback: Callable[[dict], None]) -> None:
        with self._lock:
            self._subscribers[user_id].append(callback)

    def publish(self, user_id: str, payload: dict) -> None:
        with self._lock:
            self.published.append((user_id, payload))
            callbacks = list(self._subscribers.get(user_id, ()))
        for cb in callbacks:
            cb(payload)

    def messages_for(self, user_id: str) -> list[dict]:
        with self._lock:
            return [p for uid, p in self.published if uid == user_id]

    def clear(self) -> None:
        with self._lock:
            self.published.clear()
            self._subscribers.clear()


class RedisChannel:
    """Redis pub/sub channel."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    def publish(self, user_id: str, payload: dict) -> None:
        receivers = self._client.publish(channel_name(user_id), json.dumps(payload, default=str))
        logger.debug("Published notification to %s (%s receivers)", channel_name(user_id), receivers,
                     extra={"user_id": user_id})


def build_channel(url: str | None):
    """Redis when REALTIME_URL is a redis:// URL, memory otherwise."""
    if url and not url.startswith("memory://"):
        try:
            client = redis.from_url(url, decode_responses=True)
            client.ping()
            logger.info("Realtime: using Redis at %s", url.split("@")[-1])
            return RedisChannel(client)
        except redis.RedisError as exc:
            logger.warning("Redis unavailable (%s), falling back to in-memory channel", exc)
    return InMemoryChannel()
