"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from coursegen.config import ContentSettings, RetrySettings, Settings
from coursegen.jobs.queue import TaskQueue
from coursegen.jobs.repository import JobRepository
from coursegen.jobs.retry import RetryPolicy
from coursegen.jobs.services import RequestContext
from coursegen.runtime import Runtime, build_runtime
from coursegen.storage.alembic_runner import upgrade_head


class FakeClock:
    """Manually advanced UTC clock shared by repositories under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 16, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "coursegen.db"
    upgrade_head(path)
    return path


@pytest.fixture()
def job_repository(db_path: Path, clock: FakeClock) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path,
        retry_policy=RetryPolicy(base_seconds=30, max_seconds=900, jitter=False),
        clock=clock,
    )
    yield repository
    repository.close()


@pytest.fixture()
def task_queue(db_path: Path, clock: FakeClock) -> Iterator[TaskQueue]:
    queue = TaskQueue(db_path, clock=clock)
    yield queue
    queue.close()


@pytest.fixture()
def settings(tmp_path: Path, db_path: Path) -> Settings:
    return Settings(
        db_path=db_path,
        retry=RetrySettings(base_seconds=30, max_seconds=900, jitter=False),
        content=ContentSettings(
            results_dir=tmp_path / "results",
            submissions_dir=tmp_path / "submissions",
        ),
    )


@pytest.fixture()
def runtime(settings: Settings, clock: FakeClock) -> Iterator[Runtime]:
    built = build_runtime(settings, clock=clock)
    yield built
    built.close()


@pytest.fixture()
def caller() -> RequestContext:
    return RequestContext(tenant_id="tenant-a", user_id="user-1")
