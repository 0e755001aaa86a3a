"""Redis connection factory shared by the cache and the event publisher."""

from __future__ import annotations

import logging

import redis

logger = logging.getLogger(__name__)


def connect_redis(
    url: str,
    *,
    connect_timeout_seconds: float = 0.5,
    socket_timeout_seconds: float = 0.5,
) -> redis.Redis:
    """Build a Redis client with short timeouts; connection is established lazily."""

    client = redis.from_url(
        url,
        socket_connect_timeout=connect_timeout_seconds,
        socket_timeout=socket_timeout_seconds,
        retry_on_timeout=True,
        health_check_interval=30,
    )
    logger.debug("Redis client configured for %s", url)
    return client
