"""Wiring of repositories, queue, handlers and workers from settings."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from coursegen.billing.provisioning import billing_task_handlers
from coursegen.billing.repository import RegistrationRepository
from coursegen.billing.webhooks import CheckoutEventTrigger
from coursegen.cache.redis_client import connect_redis
from coursegen.cache.tenant_cache import BaseCache, MemoryCache, NoOpCache, RedisCache, TenantCache
from coursegen.config import Settings
from coursegen.content.generator import ContentGenerator, EchoContentGenerator
from coursegen.content.repository import ContentRepository
from coursegen.content.results import ResultStore
from coursegen.content.submissions import FileSubmissionReader, SubmissionReader
from coursegen.jobs.batch import BatchCoordinator
from coursegen.jobs.handlers import build_handlers
from coursegen.jobs.orchestrator import JobRunner
from coursegen.jobs.queue import TaskQueue
from coursegen.jobs.repository import JobRepository
from coursegen.jobs.retry import RetryPolicy
from coursegen.jobs.services import GenerationService
from coursegen.jobs.watchdog import MaintenanceScheduler, StaleJobWatchdog
from coursegen.jobs.worker import TaskHandler, Worker, WorkerPool, job_task_handlers
from coursegen.notifications.fanout import NotificationFanout
from coursegen.notifications.publisher import EventPublisher, NullPublisher, RedisPublisher
from coursegen.notifications.repository import NotificationRepository
from coursegen.storage.alembic_runner import upgrade_head
from coursegen.storage.common import Clock, utc_now


@dataclass(slots=True)
class Runtime:
    """Every long-lived collaborator for one process."""

    settings: Settings
    jobs: JobRepository
    queue: TaskQueue
    content: ContentRepository
    notifications: NotificationRepository
    registrations: RegistrationRepository
    fanout: NotificationFanout
    cache: TenantCache
    batch: BatchCoordinator
    runner: JobRunner
    task_handlers: dict[str, TaskHandler]

    def service(self) -> GenerationService:
        return GenerationService(
            repository=self.jobs,
            queue=self.queue,
            content=self.content,
            cache=self.cache,
            batch=self.batch,
            task_max_retries=self.settings.worker.task_max_retries,
        )

    def event_trigger(self) -> CheckoutEventTrigger:
        return CheckoutEventTrigger(
            registrations=self.registrations,
            queue=self.queue,
            secret=self.settings.billing.webhook_secret,
            tolerance_seconds=self.settings.billing.signature_tolerance_seconds,
            provision_max_retries=self.settings.billing.provision_max_retries,
        )

    def worker(self, worker_id: str) -> Worker:
        direct_claim = self.settings.worker.direct_claim
        return Worker(
            worker_id=worker_id,
            queue=self.queue,
            task_handlers=self.task_handlers,
            repository=self.jobs if direct_claim else None,
            runner=self.runner if direct_claim else None,
            poll_interval_seconds=self.settings.worker.poll_interval_seconds,
            visibility_timeout_seconds=self.settings.worker.visibility_timeout_seconds,
        )

    def worker_pool(self, *, size: int | None = None, worker_prefix: str = "worker") -> WorkerPool:
        return WorkerPool.build(
            size=size or self.settings.worker.concurrency,
            worker_factory=self.worker,
            worker_prefix=worker_prefix,
        )

    def scheduler(self) -> MaintenanceScheduler:
        watchdog = StaleJobWatchdog(
            repository=self.jobs,
            queue=self.queue,
            stale_timeout=timedelta(seconds=self.settings.watchdog.stale_timeout_seconds),
            batch=self.batch,
            fanout=self.fanout,
            task_max_retries=self.settings.worker.task_max_retries,
        )
        return MaintenanceScheduler(
            watchdog=watchdog,
            queue=self.queue,
            watchdog_interval_seconds=self.settings.watchdog.interval_seconds,
            reconcile_interval_seconds=self.settings.watchdog.reconcile_interval_seconds,
            cleanup_interval_seconds=self.settings.watchdog.cleanup_interval_seconds,
        )

    def close(self) -> None:
        for repository in (
            self.jobs,
            self.queue,
            self.content,
            self.notifications,
            self.registrations,
        ):
            repository.close()


@contextmanager
def open_runtime(
    settings: Settings,
    *,
    generator: ContentGenerator | None = None,
    submissions: SubmissionReader | None = None,
    clock: Clock = utc_now,
    migrate: bool = True,
) -> Iterator[Runtime]:
    """Build a runtime, migrating the database first unless told otherwise."""

    settings.validate()
    if migrate:
        upgrade_head(settings.db_path)
    runtime = build_runtime(settings, generator=generator, submissions=submissions, clock=clock)
    try:
        yield runtime
    finally:
        runtime.close()


def build_runtime(
    settings: Settings,
    *,
    generator: ContentGenerator | None = None,
    submissions: SubmissionReader | None = None,
    clock: Clock = utc_now,
) -> Runtime:
    busy_timeout_ms = settings.sqlite_busy_timeout_ms
    jobs = JobRepository(
        settings.db_path,
        retry_policy=RetryPolicy(
            base_seconds=settings.retry.base_seconds,
            max_seconds=settings.retry.max_seconds,
            jitter=settings.retry.jitter,
        ),
        clock=clock,
        sqlite_busy_timeout_ms=busy_timeout_ms,
    )
    queue = TaskQueue(settings.db_path, clock=clock, sqlite_busy_timeout_ms=busy_timeout_ms)
    content = ContentRepository(
        settings.db_path,
        clock=clock,
        sqlite_busy_timeout_ms=busy_timeout_ms,
    )
    notifications = NotificationRepository(
        settings.db_path,
        clock=clock,
        sqlite_busy_timeout_ms=busy_timeout_ms,
    )
    registrations = RegistrationRepository(
        settings.db_path,
        clock=clock,
        sqlite_busy_timeout_ms=busy_timeout_ms,
        registration_ttl=timedelta(hours=settings.billing.registration_ttl_hours),
    )
    fanout = NotificationFanout(repository=notifications, publisher=_build_publisher(settings))
    batch = BatchCoordinator(
        repository=jobs,
        queue=queue,
        fanout=fanout,
        policy=settings.batch_policy,
        child_max_retries=settings.batch.child_max_retries,
        task_max_retries=settings.worker.task_max_retries,
    )
    handlers = build_handlers(
        content=content,
        generator=generator
        or EchoContentGenerator(chunk_max_chars=settings.content.chunk_max_chars),
        submissions=submissions or FileSubmissionReader(settings.content.submissions_dir),
        results=ResultStore(settings.content.results_dir),
        batch=batch,
        knowledge_top_k=settings.content.knowledge_top_k,
    )
    runner = JobRunner(
        repository=jobs,
        queue=queue,
        handlers=handlers,
        fanout=fanout,
        batch=batch,
        task_max_retries=settings.worker.task_max_retries,
    )
    task_handlers = {
        **job_task_handlers(repository=jobs, runner=runner),
        **billing_task_handlers(
            registrations=registrations,
            queue=queue,
            provision_max_retries=settings.billing.provision_max_retries,
        ),
    }
    return Runtime(
        settings=settings,
        jobs=jobs,
        queue=queue,
        content=content,
        notifications=notifications,
        registrations=registrations,
        fanout=fanout,
        cache=TenantCache(
            _build_cache(settings),
            default_ttl_seconds=settings.cache.job_ttl_seconds,
        ),
        batch=batch,
        runner=runner,
        task_handlers=task_handlers,
    )


def _build_cache(settings: Settings) -> BaseCache:
    if not settings.cache.enabled:
        return NoOpCache()
    if not settings.cache.redis_url:
        return MemoryCache()
    return RedisCache(
        connect_redis(
            settings.cache.redis_url,
            connect_timeout_seconds=settings.cache.connect_timeout_seconds,
            socket_timeout_seconds=settings.cache.socket_timeout_seconds,
        ),
    )


def _build_publisher(settings: Settings) -> EventPublisher:
    if not settings.notifications.redis_url:
        return NullPublisher()
    return RedisPublisher(
        connect_redis(
            settings.notifications.redis_url,
            connect_timeout_seconds=settings.cache.connect_timeout_seconds,
            socket_timeout_seconds=settings.cache.socket_timeout_seconds,
        ),
    )
