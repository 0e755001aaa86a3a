"""Runtime configuration for the generation job system."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from coursegen.jobs.batch import BatchPolicy


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool and queue delivery settings."""

    concurrency: int = 4
    poll_interval_seconds: float = 1.0
    visibility_timeout_seconds: int = 600
    shutdown_deadline_seconds: float = 30.0
    task_max_retries: int = 3
    direct_claim: bool = True


@dataclass(slots=True)
class RetrySettings:
    """Backoff applied by the job store when a retryable attempt fails."""

    base_seconds: int = 30
    max_seconds: int = 900
    jitter: bool = True


@dataclass(slots=True)
class WatchdogSettings:
    stale_timeout_seconds: int = 1_800
    interval_seconds: int = 60
    reconcile_interval_seconds: int = 900
    cleanup_interval_seconds: int = 3_600


@dataclass(slots=True)
class BatchSettings:
    policy: str = BatchPolicy.WAIT_ALL.value
    child_max_retries: int = 3


@dataclass(slots=True)
class CacheSettings:
    """Tenant cache backend; an empty Redis URL selects the in-process cache."""

    enabled: bool = True
    redis_url: str = ""
    job_ttl_seconds: int = 300
    connect_timeout_seconds: float = 0.5
    socket_timeout_seconds: float = 0.5


@dataclass(slots=True)
class NotificationSettings:
    """Real-time publish channel; an empty Redis URL disables push."""

    redis_url: str = ""


@dataclass(slots=True)
class BillingSettings:
    webhook_secret: str = ""
    signature_tolerance_seconds: int = 300
    registration_ttl_hours: int = 24
    provision_max_retries: int = 10


@dataclass(slots=True)
class ContentSettings:
    results_dir: Path = Path(".coursegen/results")
    submissions_dir: Path = Path(".coursegen/submissions")
    knowledge_top_k: int = 8
    chunk_max_chars: int = 1_200


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".coursegen.db")
    sqlite_busy_timeout_ms: int = 5_000
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    watchdog: WatchdogSettings = field(default_factory=WatchdogSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    billing: BillingSettings = field(default_factory=BillingSettings)
    content: ContentSettings = field(default_factory=ContentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        redis_url = os.getenv("COURSEGEN_REDIS_URL", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("COURSEGEN_DB_PATH", ".coursegen.db")),
            sqlite_busy_timeout_ms=int(os.getenv("COURSEGEN_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            worker=WorkerSettings(
                concurrency=int(os.getenv("COURSEGEN_WORKER_CONCURRENCY", "4")),
                poll_interval_seconds=float(
                    os.getenv("COURSEGEN_WORKER_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                visibility_timeout_seconds=int(
                    os.getenv("COURSEGEN_WORKER_VISIBILITY_TIMEOUT_SECONDS", "600"),
                ),
                shutdown_deadline_seconds=float(
                    os.getenv("COURSEGEN_WORKER_SHUTDOWN_DEADLINE_SECONDS", "30"),
                ),
                task_max_retries=int(os.getenv("COURSEGEN_WORKER_TASK_MAX_RETRIES", "3")),
                direct_claim=_env_bool("COURSEGEN_WORKER_DIRECT_CLAIM", default=True),
            ),
            retry=RetrySettings(
                base_seconds=int(os.getenv("COURSEGEN_RETRY_BASE_SECONDS", "30")),
                max_seconds=int(os.getenv("COURSEGEN_RETRY_MAX_SECONDS", "900")),
                jitter=_env_bool("COURSEGEN_RETRY_JITTER", default=True),
            ),
            watchdog=WatchdogSettings(
                stale_timeout_seconds=int(
                    os.getenv("COURSEGEN_WATCHDOG_STALE_TIMEOUT_SECONDS", "1800"),
                ),
                interval_seconds=int(os.getenv("COURSEGEN_WATCHDOG_INTERVAL_SECONDS", "60")),
                reconcile_interval_seconds=int(
                    os.getenv("COURSEGEN_BILLING_RECONCILE_INTERVAL_SECONDS", "900"),
                ),
                cleanup_interval_seconds=int(
                    os.getenv("COURSEGEN_BILLING_CLEANUP_INTERVAL_SECONDS", "3600"),
                ),
            ),
            batch=BatchSettings(
                policy=os.getenv("COURSEGEN_BATCH_POLICY", BatchPolicy.WAIT_ALL.value)
                .strip()
                .lower(),
                child_max_retries=int(os.getenv("COURSEGEN_BATCH_CHILD_MAX_RETRIES", "3")),
            ),
            cache=CacheSettings(
                enabled=_env_bool("COURSEGEN_CACHE_ENABLED", default=True),
                redis_url=os.getenv("COURSEGEN_CACHE_REDIS_URL", redis_url).strip(),
                job_ttl_seconds=int(os.getenv("COURSEGEN_CACHE_JOB_TTL_SECONDS", "300")),
                connect_timeout_seconds=float(
                    os.getenv("COURSEGEN_CACHE_CONNECT_TIMEOUT_SECONDS", "0.5"),
                ),
                socket_timeout_seconds=float(
                    os.getenv("COURSEGEN_CACHE_SOCKET_TIMEOUT_SECONDS", "0.5"),
                ),
            ),
            notifications=NotificationSettings(
                redis_url=os.getenv("COURSEGEN_NOTIFICATIONS_REDIS_URL", redis_url).strip(),
            ),
            billing=BillingSettings(
                webhook_secret=os.getenv("COURSEGEN_BILLING_WEBHOOK_SECRET", ""),
                signature_tolerance_seconds=int(
                    os.getenv("COURSEGEN_BILLING_SIGNATURE_TOLERANCE_SECONDS", "300"),
                ),
                registration_ttl_hours=int(
                    os.getenv("COURSEGEN_BILLING_REGISTRATION_TTL_HOURS", "24"),
                ),
                provision_max_retries=int(
                    os.getenv("COURSEGEN_BILLING_PROVISION_MAX_RETRIES", "10"),
                ),
            ),
            content=ContentSettings(
                results_dir=Path(os.getenv("COURSEGEN_RESULTS_DIR", ".coursegen/results")),
                submissions_dir=Path(
                    os.getenv("COURSEGEN_SUBMISSIONS_DIR", ".coursegen/submissions"),
                ),
                knowledge_top_k=int(os.getenv("COURSEGEN_KNOWLEDGE_TOP_K", "8")),
                chunk_max_chars=int(os.getenv("COURSEGEN_CHUNK_MAX_CHARS", "1200")),
            ),
        )

    @property
    def batch_policy(self) -> BatchPolicy:
        return BatchPolicy(self.batch.policy)

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        positive: dict[str, float] = {
            "COURSEGEN_WORKER_CONCURRENCY": self.worker.concurrency,
            "COURSEGEN_WORKER_POLL_INTERVAL_SECONDS": self.worker.poll_interval_seconds,
            "COURSEGEN_WORKER_VISIBILITY_TIMEOUT_SECONDS": self.worker.visibility_timeout_seconds,
            "COURSEGEN_WORKER_SHUTDOWN_DEADLINE_SECONDS": self.worker.shutdown_deadline_seconds,
            "COURSEGEN_RETRY_BASE_SECONDS": self.retry.base_seconds,
            "COURSEGEN_RETRY_MAX_SECONDS": self.retry.max_seconds,
            "COURSEGEN_WATCHDOG_STALE_TIMEOUT_SECONDS": self.watchdog.stale_timeout_seconds,
            "COURSEGEN_WATCHDOG_INTERVAL_SECONDS": self.watchdog.interval_seconds,
            "COURSEGEN_BILLING_RECONCILE_INTERVAL_SECONDS": (
                self.watchdog.reconcile_interval_seconds
            ),
            "COURSEGEN_BILLING_CLEANUP_INTERVAL_SECONDS": self.watchdog.cleanup_interval_seconds,
            "COURSEGEN_CACHE_JOB_TTL_SECONDS": self.cache.job_ttl_seconds,
            "COURSEGEN_BILLING_SIGNATURE_TOLERANCE_SECONDS": (
                self.billing.signature_tolerance_seconds
            ),
            "COURSEGEN_BILLING_REGISTRATION_TTL_HOURS": self.billing.registration_ttl_hours,
            "COURSEGEN_KNOWLEDGE_TOP_K": self.content.knowledge_top_k,
            "COURSEGEN_CHUNK_MAX_CHARS": self.content.chunk_max_chars,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        non_negative: dict[str, int] = {
            "COURSEGEN_WORKER_TASK_MAX_RETRIES": self.worker.task_max_retries,
            "COURSEGEN_BATCH_CHILD_MAX_RETRIES": self.batch.child_max_retries,
            "COURSEGEN_BILLING_PROVISION_MAX_RETRIES": self.billing.provision_max_retries,
        }
        for name, value in non_negative.items():
            if value < 0:
                raise ValueError(f"{name} must be >= 0.")
        if self.retry.max_seconds < self.retry.base_seconds:
            raise ValueError("COURSEGEN_RETRY_MAX_SECONDS must be >= COURSEGEN_RETRY_BASE_SECONDS.")
        allowed = {item.value for item in BatchPolicy}
        if self.batch.policy not in allowed:
            raise ValueError(
                f"COURSEGEN_BATCH_POLICY must be one of {sorted(allowed)}: {self.batch.policy!r}",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
