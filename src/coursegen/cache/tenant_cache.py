"""Tenant-isolated cache wrapper that degrades to miss/no-op on backend outage."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

import redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class CacheUnavailableError(Exception):
    """Cache backend could not serve the request."""


class BaseCache(Protocol):
    """Protocol implemented by cache backends. Keys are already tenant-prefixed."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...


class RedisCache:
    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    def get(self, key: str) -> str | None:
        try:
            value = self.client.get(key)
        except RedisError as error:
            raise CacheUnavailableError(str(error)) from error
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self.client.set(key, value, ex=max(1, ttl_seconds))
        except RedisError as error:
            raise CacheUnavailableError(str(error)) from error

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except RedisError as error:
            raise CacheUnavailableError(str(error)) from error


class MemoryCache:
    """Thread-safe in-process cache with per-entry expiry."""

    def __init__(self, *, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._monotonic = monotonic
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._monotonic():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._monotonic()
            self._purge_expired(now)
            self._entries[key] = (value, now + max(1, ttl_seconds))

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]


class NoOpCache:
    """Backend used when caching is disabled."""

    def get(self, key: str) -> str | None:
        return None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        return None

    def delete(self, key: str) -> None:
        return None


def tenant_key(tenant_id: str, key: str) -> str:
    if not tenant_id:
        raise ValueError("tenant_id is required for cache access.")
    if ":" in tenant_id:
        raise ValueError(f"tenant_id must not contain ':': {tenant_id!r}")
    return f"tenant:{tenant_id}:{key}"


class TenantCache:
    """Prefixes every key with its tenant; never raises on backend outage."""

    def __init__(self, base: BaseCache, *, default_ttl_seconds: int = 300) -> None:
        self.base = base
        self.default_ttl_seconds = default_ttl_seconds

    def get(self, tenant_id: str, key: str) -> str | None:
        physical_key = tenant_key(tenant_id, key)
        try:
            return self.base.get(physical_key)
        except CacheUnavailableError as error:
            logger.warning("Cache get %s degraded to miss: %s", physical_key, error)
            return None

    def set(self, tenant_id: str, key: str, value: str, ttl_seconds: int | None = None) -> None:
        physical_key = tenant_key(tenant_id, key)
        try:
            self.base.set(physical_key, value, ttl_seconds or self.default_ttl_seconds)
        except CacheUnavailableError as error:
            logger.warning("Cache set %s skipped: %s", physical_key, error)

    def delete(self, tenant_id: str, key: str) -> None:
        physical_key = tenant_key(tenant_id, key)
        try:
            self.base.delete(physical_key)
        except CacheUnavailableError as error:
            logger.warning("Cache delete %s skipped: %s", physical_key, error)

    def get_json(self, tenant_id: str, key: str) -> dict[str, Any] | None:
        raw = self.get(tenant_id, key)
        if raw is None:
            return None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Dropping undecodable cache entry %s", tenant_key(tenant_id, key))
            self.delete(tenant_id, key)
            return None
        return parsed if isinstance(parsed, dict) else None

    def set_json(
        self,
        tenant_id: str,
        key: str,
        value: dict[str, Any],
        ttl_seconds: int | None = None,
    ) -> None:
        self.set(tenant_id, key, json.dumps(value, ensure_ascii=False, sort_keys=True), ttl_seconds)
