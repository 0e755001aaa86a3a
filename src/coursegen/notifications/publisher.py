"""Real-time event publishing on tenant+user scoped channels."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """Real-time publish failed; the durable record is unaffected."""


def user_channel(tenant_id: str, user_id: str) -> str:
    return f"events:tenant:{tenant_id}:user:{user_id}"


class EventPublisher(Protocol):
    def publish(self, *, channel: str, message: dict[str, Any]) -> None:
        """Publish one JSON message; raise PublishError on failure."""


class RedisPublisher:
    """Publishes JSON messages through Redis pub/sub."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    def publish(self, *, channel: str, message: dict[str, Any]) -> None:
        try:
            receivers = self.client.publish(channel, json.dumps(message, ensure_ascii=False))
        except RedisError as error:
            raise PublishError(f"Redis publish to {channel} failed: {error}") from error
        logger.debug("Published to %s (%s receivers)", channel, receivers)


class NullPublisher:
    """Used when no real-time channel is configured."""

    def publish(self, *, channel: str, message: dict[str, Any]) -> None:
        logger.debug("Real-time publishing disabled; dropping message for %s", channel)
