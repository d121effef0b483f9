"""
Change feed for document store writes.

Stores publish the path of every committed write; the feed hands it to every
connected store so their subscriptions can re-read. The in-process feed covers
a single service process and tests; the Redis-backed feed also relays writes
made by other processes sharing the same database.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[str], None]


class ChangeFeed(Protocol):
    """Minimal fan-out interface for changed store paths."""

    def connect(self, handler: ChangeHandler) -> None:
        ...

    def publish(self, path: str) -> None:
        ...

    def close(self) -> None:
        ...


@dataclass
class InProcessChangeFeed:
    """Delivers changes synchronously to handlers in this process."""

    handlers: list[ChangeHandler] = field(default_factory=list)

    def connect(self, handler: ChangeHandler) -> None:
        self.handlers.append(handler)

    def publish(self, path: str) -> None:
        for handler in list(self.handlers):
            handler(path)

    def close(self) -> None:
        self.handlers.clear()


@dataclass
class RedisChangeFeed:
    """
    Redis pub/sub relay.

    Local handlers are called synchronously on publish; the message is also
    published on the channel, and messages from other processes are
    dispatched from a background listener thread.
    """

    url: str
    channel: str = "freelancer_os:changes"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)
        self.origin = uuid.uuid4().hex
        self.handlers: list[ChangeHandler] = []
        self._pubsub = None
        self._thread: Optional[object] = None

    def connect(self, handler: ChangeHandler) -> None:
        self.handlers.append(handler)
        if self._thread is None:
            self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            self._pubsub.subscribe(**{self.channel: self._on_message})
            self._thread = self._pubsub.run_in_thread(sleep_time=0.1, daemon=True)

    def publish(self, path: str) -> None:
        for handler in list(self.handlers):
            handler(path)
        message = json.dumps({"origin": self.origin, "path": path})
        try:
            self.client.publish(self.channel, message)
        except redis_exceptions.ConnectionError:
            # Connection resets can happen on managed Redis; local subscribers
            # were already notified, remote ones catch up on the next write.
            logger.warning("Change feed publish failed for %s; reconnecting", path)
            self.client = redis.Redis.from_url(self.url)

    def _on_message(self, message: dict) -> None:
        try:
            payload = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed change feed message")
            return
        if payload.get("origin") == self.origin:
            return
        for handler in list(self.handlers):
            handler(payload["path"])

    def close(self) -> None:
        if self._thread is not None:
            self._thread.stop()
            self._thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None
        self.handlers.clear()
