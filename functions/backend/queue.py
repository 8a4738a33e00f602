"""
Queue abstraction for delivering profile events to the worker pool.

Supports an in-memory fallback for tests/local runs and a Redis-backed
implementation for production. Delivery is at-least-once: consumers must
tolerate the same DeliveryEvent more than once.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Optional, Protocol

import redis
from dacite import Config, DaciteError, from_dict
from redis import exceptions as redis_exceptions

from backend.errors import TransientError
from shared.types import DeliveryEvent, EventKind

logger = logging.getLogger(__name__)


class EventQueue(Protocol):
    """Minimal queue interface for dispatching events to workers."""

    def publish(self, event: DeliveryEvent) -> None:
        ...

    def consume(
        self, *, block: bool = True, timeout: int | None = None
    ) -> Optional[DeliveryEvent]:
        ...


def encode_event(event: DeliveryEvent) -> str:
    return json.dumps(event.as_dict())


def decode_event(raw: str | bytes) -> DeliveryEvent:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return from_dict(DeliveryEvent, json.loads(raw), config=Config(cast=[EventKind]))


@dataclass
class InMemoryEventQueue:
    """Thread-safe FIFO queue for testing/dev."""

    items: deque = field(default_factory=deque)

    def __post_init__(self):
        self._ready = threading.Condition()

    def publish(self, event: DeliveryEvent) -> None:
        with self._ready:
            self.items.append(event)
            self._ready.notify()

    def consume(
        self, *, block: bool = True, timeout: int | None = None
    ) -> Optional[DeliveryEvent]:
        with self._ready:
            if block:
                self._ready.wait_for(lambda: bool(self.items), timeout=timeout)
            if not self.items:
                return None
            return self.items.popleft()

    def __len__(self) -> int:
        with self._ready:
            return len(self.items)


@dataclass
class RedisEventQueue:
    """Redis-backed queue using list push/pop operations."""

    url: str
    queue_key: str = "identity:events"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def publish(self, event: DeliveryEvent) -> None:
        try:
            self.client.rpush(self.queue_key, encode_event(event))
        except redis_exceptions.ConnectionError as exc:
            self.client = redis.Redis.from_url(self.url)
            raise TransientError(f"Could not publish event: {exc}") from exc

    def consume(
        self, *, block: bool = True, timeout: int | None = None
    ) -> Optional[DeliveryEvent]:
        try:
            if block:
                result = self.client.blpop(self.queue_key, timeout=timeout or 0)
                if result is None:
                    return None
                _, raw = result
            else:
                raw = self.client.lpop(self.queue_key)
                if raw is None:
                    return None
        except redis_exceptions.ConnectionError:
            # Connection resets can happen on managed Redis. Treat as empty queue
            # and allow the worker loop to retry.
            self.client = redis.Redis.from_url(self.url)
            return None
        try:
            return decode_event(raw)
        except (DaciteError, ValueError, TypeError) as exc:
            logger.error("Dropping malformed event payload %r: %s", raw, exc)
            return None
