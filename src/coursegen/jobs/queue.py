"""Durable SQLite task queue with visibility timeouts and dead-lettering."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, case, func, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from coursegen.jobs.errors import NotFoundError, ValidationError
from coursegen.jobs.models import GenerationJobView, JobType
from coursegen.storage.common import (
    Clock,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from coursegen.storage.sqlmodel_models import QueueTask

logger = logging.getLogger(__name__)

DEFAULT_QUEUE = "default"
CRITICAL_QUEUE = "critical"
GENERATION_TASK_PREFIX = "generation:"


class TaskStatus(str, Enum):
    READY = "ready"
    LEASED = "leased"
    DEAD = "dead"


@dataclass(slots=True)
class QueuedTask:
    """Readable queue task view."""

    task_id: str
    queue: str
    task_type: str
    payload: dict[str, Any]
    status: TaskStatus
    deliveries: int
    max_retries: int
    available_at: datetime
    leased_until: datetime | None
    consumer_id: str | None
    last_error: str | None
    created_at: datetime
    dead_at: datetime | None

    @property
    def retries_exhausted(self) -> bool:
        return self.deliveries > self.max_retries


def job_task_type(job_type: JobType) -> str:
    return f"{GENERATION_TASK_PREFIX}{job_type.value.lower()}"


def job_task_payload(job: GenerationJobView) -> dict[str, Any]:
    """Queue tasks carry only the job id and type; the job store owns the rest."""

    return {"job_id": job.job_id, "job_type": job.job_type.value}


class TaskQueue:
    """Queue persistence facade backed by SQLModel + SQLite.

    Tasks stay in the table until acked. A dequeued task is leased for the
    visibility timeout; an expired lease makes it deliverable again.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Clock = utc_now,
        sqlite_busy_timeout_ms: int = 5000,
        poll_interval_seconds: float = 0.2,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.poll_interval_seconds = poll_interval_seconds
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def enqueue(  # noqa: PLR0913
        self,
        task_type: str,
        payload: dict[str, Any],
        *,
        delay_seconds: float = 0.0,
        max_retries: int = 3,
        queue: str = DEFAULT_QUEUE,
        task_id: str | None = None,
    ) -> QueuedTask:
        """Persist a task until acknowledged."""

        if not task_type:
            raise ValidationError("task_type is required.")
        if max_retries < 0:
            raise ValidationError("max_retries must be >= 0.")
        now = self.clock()
        available_at = now + timedelta(seconds=max(0.0, delay_seconds))
        with Session(self.engine) as session:
            row = QueueTask(
                task_id=task_id or str(uuid4()),
                queue=queue,
                task_type=task_type,
                payload_json=json.dumps(payload, ensure_ascii=False, sort_keys=True),
                status=TaskStatus.READY.value,
                deliveries=0,
                max_retries=max_retries,
                available_at=to_db_datetime(available_at),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.debug("Enqueued %s task %s (delay=%.1fs)", task_type, row.task_id, delay_seconds)
            return _to_task_view(row)

    def dequeue(  # noqa: PLR0913
        self,
        *,
        task_types: Iterable[str],
        consumer_id: str,
        visibility_timeout: timedelta,
        wait_seconds: float = 0.0,
        stop_requested: Callable[[], bool] | None = None,
    ) -> QueuedTask | None:
        """Lease the next deliverable task, polling up to ``wait_seconds``."""

        types = sorted(set(task_types))
        if not types:
            return None
        deadline = time.monotonic() + max(0.0, wait_seconds)
        while True:
            task = self._lease_next(
                task_types=types,
                consumer_id=consumer_id,
                visibility_timeout=visibility_timeout,
            )
            if task is not None:
                return task
            if stop_requested is not None and stop_requested():
                return None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval_seconds, remaining))

    def ack(self, *, task_id: str) -> bool:
        """Remove a task permanently."""

        with Session(self.engine) as session:
            result = session.exec(sa_delete(QueueTask).where(col(QueueTask.task_id) == task_id))
            session.commit()
        return result.rowcount == 1

    def nack(
        self,
        *,
        task_id: str,
        error: str,
        delay_seconds: float = 0.0,
    ) -> TaskStatus | None:
        """Return a leased task for redelivery, or dead-letter it when out of budget."""

        now = self.clock()
        with Session(self.engine) as session:
            row = session.exec(select(QueueTask).where(QueueTask.task_id == task_id)).one_or_none()
            if row is None or row.status != TaskStatus.LEASED.value:
                return None
            statement = sa_update(QueueTask).where(
                col(QueueTask.task_id) == task_id,
                col(QueueTask.status) == TaskStatus.LEASED.value,
                col(QueueTask.deliveries) == row.deliveries,
            )
            if row.deliveries > row.max_retries:
                status = TaskStatus.DEAD
                statement = statement.values(
                    status=TaskStatus.DEAD.value,
                    leased_until=None,
                    last_error=error,
                    dead_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
            else:
                status = TaskStatus.READY
                statement = statement.values(
                    status=TaskStatus.READY.value,
                    available_at=to_db_datetime(now + timedelta(seconds=max(0.0, delay_seconds))),
                    leased_until=None,
                    consumer_id=None,
                    last_error=error,
                    updated_at=to_db_datetime(now),
                )
            result = session.exec(statement)
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
        if status == TaskStatus.DEAD:
            logger.error("Task %s (%s) dead-lettered: %s", task_id, row.task_type, error)
        return status

    def get(self, *, task_id: str) -> QueuedTask | None:
        with Session(self.engine) as session:
            row = session.exec(select(QueueTask).where(QueueTask.task_id == task_id)).one_or_none()
        return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        task_type: str | None = None,
        statuses: Iterable[TaskStatus] | None = None,
        limit: int | None = 100,
    ) -> list[QueuedTask]:
        statement = select(QueueTask)
        if task_type is not None:
            statement = statement.where(QueueTask.task_type == task_type)
        if statuses is not None:
            statement = statement.where(
                col(QueueTask.status).in_([status.value for status in statuses]),
            )
        statement = statement.order_by(col(QueueTask.created_at).asc())
        if limit is not None:
            statement = statement.limit(max(1, limit))
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_dead_letters(self, *, limit: int = 50) -> list[QueuedTask]:
        """Tasks that exhausted their redelivery budget, newest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueTask)
                .where(QueueTask.status == TaskStatus.DEAD.value)
                .order_by(col(QueueTask.dead_at).desc())
                .limit(max(1, limit)),
            ).all()
        return [_to_task_view(row) for row in rows]

    def requeue_dead(self, *, task_id: str) -> QueuedTask:
        """Move a dead-lettered task back to ready with a fresh budget."""

        now = self.clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.task_id) == task_id,
                    col(QueueTask.status) == TaskStatus.DEAD.value,
                )
                .values(
                    status=TaskStatus.READY.value,
                    deliveries=0,
                    available_at=to_db_datetime(now),
                    leased_until=None,
                    consumer_id=None,
                    dead_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(f"Dead-letter task not found: {task_id}")
            session.commit()
            row = session.exec(select(QueueTask).where(QueueTask.task_id == task_id)).one()
            return _to_task_view(row)

    def stats(self) -> dict[str, int]:
        """Task counts keyed by status."""

        counts = {status.value: 0 for status in TaskStatus}
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueTask.status, func.count()).group_by(QueueTask.status),
            ).all()
        for status, count in rows:
            counts[str(status)] = int(count)
        return counts

    def _lease_next(
        self,
        *,
        task_types: list[str],
        consumer_id: str,
        visibility_timeout: timedelta,
    ) -> QueuedTask | None:
        while True:
            now = self.clock()
            db_now = to_db_datetime(now)
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueTask)
                    .where(
                        col(QueueTask.task_type).in_(task_types),
                        or_(
                            and_(
                                col(QueueTask.status) == TaskStatus.READY.value,
                                col(QueueTask.available_at) <= db_now,
                            ),
                            and_(
                                col(QueueTask.status) == TaskStatus.LEASED.value,
                                col(QueueTask.leased_until) <= db_now,
                            ),
                        ),
                    )
                    .order_by(
                        case((col(QueueTask.queue) == CRITICAL_QUEUE, 0), else_=1),
                        col(QueueTask.available_at).asc(),
                        col(QueueTask.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                guard = sa_update(QueueTask).where(
                    col(QueueTask.task_id) == candidate.task_id,
                    col(QueueTask.status) == candidate.status,
                    col(QueueTask.deliveries) == candidate.deliveries,
                )
                expired_lease = candidate.status == TaskStatus.LEASED.value
                if expired_lease and candidate.deliveries > candidate.max_retries:
                    result = session.exec(
                        guard.values(
                            status=TaskStatus.DEAD.value,
                            leased_until=None,
                            last_error="Visibility timeout expired with no retries left",
                            dead_at=db_now,
                            updated_at=db_now,
                        ),
                    )
                    if result.rowcount == 1:
                        session.commit()
                        logger.error(
                            "Task %s (%s) dead-lettered after lease expiry",
                            candidate.task_id,
                            candidate.task_type,
                        )
                    else:
                        session.rollback()
                    continue

                result = session.exec(
                    guard.values(
                        status=TaskStatus.LEASED.value,
                        deliveries=candidate.deliveries + 1,
                        leased_until=to_db_datetime(now + visibility_timeout),
                        consumer_id=consumer_id,
                        updated_at=db_now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                leased = session.exec(
                    select(QueueTask)
                    .where(QueueTask.task_id == candidate.task_id)
                    .execution_options(populate_existing=True),
                ).one()
                if expired_lease:
                    logger.warning(
                        "Redelivering task %s after visibility timeout (delivery %d)",
                        leased.task_id,
                        leased.deliveries,
                    )
                return _to_task_view(leased)


def _to_task_view(row: QueueTask) -> QueuedTask:
    payload = json.loads(row.payload_json)
    return QueuedTask(
        task_id=row.task_id,
        queue=row.queue,
        task_type=row.task_type,
        payload=payload if isinstance(payload, dict) else {},
        status=TaskStatus(row.status),
        deliveries=row.deliveries,
        max_retries=row.max_retries,
        available_at=to_utc_aware_datetime(row.available_at),
        leased_until=optional_utc(row.leased_until),
        consumer_id=row.consumer_id,
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
        dead_at=optional_utc(row.dead_at),
    )


def enqueue_job(
    queue: TaskQueue,
    job: GenerationJobView,
    *,
    delay_seconds: float = 0.0,
    max_retries: int = 3,
) -> QueuedTask | None:
    """Enqueue a delivery task for a QUEUED job.

    A failed enqueue is logged and swallowed: the job row stays QUEUED and
    workers still pick it up through ``JobRepository.claim_next``.
    """

    try:
        return queue.enqueue(
            job_task_type(job.job_type),
            job_task_payload(job),
            delay_seconds=delay_seconds,
            max_retries=max_retries,
        )
    except SQLAlchemyError:
        logger.exception("Failed to enqueue task for job %s", job.job_id)
        return None
