from __future__ import annotations

import allure
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from coursegen.cache.tenant_cache import (
    MemoryCache,
    NoOpCache,
    RedisCache,
    TenantCache,
    tenant_key,
)
from coursegen.jobs.services import RequestContext
from coursegen.runtime import Runtime

pytestmark = [
    allure.epic("Tenant Cache"),
    allure.feature("Isolation & Degradation"),
]


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


class UnreachableRedis:
    def get(self, key: str) -> bytes | None:
        raise RedisConnectionError("connection refused")

    def set(self, key: str, value: str, ex: int) -> None:
        raise RedisConnectionError("connection refused")

    def delete(self, key: str) -> None:
        raise RedisConnectionError("connection refused")


def test_tenant_key_requires_tenant() -> None:
    assert tenant_key("tenant-a", "job:1") == "tenant:tenant-a:job:1"
    with pytest.raises(ValueError):
        tenant_key("", "job:1")


def test_tenant_key_rejects_separator_in_tenant() -> None:
    cache = TenantCache(MemoryCache())
    cache.set("a", "b:c", "owned by a")

    with pytest.raises(ValueError, match="must not contain"):
        tenant_key("a:b", "c")
    with pytest.raises(ValueError):
        cache.get("a:b", "c")
    assert cache.get("a", "b:c") == "owned by a"


def test_tenants_never_see_each_others_entries() -> None:
    cache = TenantCache(MemoryCache())

    cache.set("tenant-a", "job:1", "a")
    cache.set("tenant-b", "job:1", "b")

    assert cache.get("tenant-a", "job:1") == "a"
    assert cache.get("tenant-b", "job:1") == "b"
    cache.delete("tenant-a", "job:1")
    assert cache.get("tenant-a", "job:1") is None
    assert cache.get("tenant-b", "job:1") == "b"


def test_memory_cache_entries_expire() -> None:
    monotonic = FakeMonotonic()
    cache = TenantCache(MemoryCache(monotonic=monotonic), default_ttl_seconds=10)

    cache.set_json("tenant-a", "job:1", {"status": "COMPLETED"})
    monotonic.value = 9.5
    assert cache.get_json("tenant-a", "job:1") == {"status": "COMPLETED"}
    monotonic.value = 10.0
    assert cache.get_json("tenant-a", "job:1") is None


def test_memory_cache_purges_expired_entries_on_write() -> None:
    monotonic = FakeMonotonic()
    base = MemoryCache(monotonic=monotonic)
    for index in range(5):
        base.set(f"tenant:tenant-a:job:{index}", "done", ttl_seconds=10)
    assert base.size() == 5

    monotonic.value = 10.0
    base.set("tenant:tenant-a:job:fresh", "done", ttl_seconds=10)

    assert base.size() == 1
    assert base.get("tenant:tenant-a:job:fresh") == "done"


def test_undecodable_entry_is_dropped() -> None:
    base = MemoryCache()
    cache = TenantCache(base)
    cache.set("tenant-a", "job:1", "{not json")

    assert cache.get_json("tenant-a", "job:1") is None
    assert base.get(tenant_key("tenant-a", "job:1")) is None


def test_noop_cache_always_misses() -> None:
    cache = TenantCache(NoOpCache())

    cache.set("tenant-a", "job:1", "value")

    assert cache.get("tenant-a", "job:1") is None


def test_unreachable_redis_degrades_to_miss() -> None:
    cache = TenantCache(RedisCache(UnreachableRedis()))

    cache.set_json("tenant-a", "job:1", {"status": "COMPLETED"})
    cache.delete("tenant-a", "job:1")

    assert cache.get_json("tenant-a", "job:1") is None


def test_terminal_job_wire_is_cached_per_tenant(
    runtime: Runtime,
    caller: RequestContext,
) -> None:
    service = runtime.service()
    job = service.create_outline_job(caller, course_id="course-1", lesson_count=1)

    queued = service.get_job_wire(caller, job_id=job.job_id)
    assert queued["status"] == "QUEUED"
    assert runtime.cache.get_json("tenant-a", f"job:{job.job_id}") is None

    runtime.worker("w1").run_once()
    completed = service.get_job_wire(caller, job_id=job.job_id)

    assert completed["status"] == "COMPLETED"
    assert runtime.cache.get_json("tenant-a", f"job:{job.job_id}") == completed
    assert runtime.cache.get_json("tenant-b", f"job:{job.job_id}") is None
