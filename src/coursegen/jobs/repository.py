"""Job store: persistence and atomic state transitions for generation jobs."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from coursegen.jobs.errors import (
    ConcurrencyConflict,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from coursegen.jobs.models import (
    ACTIVE_STATUSES,
    RETRYABLE_FAILURE_CLASSES,
    TERMINAL_STATUSES,
    BatchStats,
    CancelOutcome,
    FailOutcome,
    FailureClass,
    GenerationJobCreate,
    GenerationJobDetails,
    GenerationJobEventView,
    GenerationJobView,
    JobListFilter,
    JobStatus,
    JobType,
    ReclaimResult,
    payload_from_json,
    payload_to_json,
)
from coursegen.jobs.retry import RetryPolicy
from coursegen.storage.alembic_runner import upgrade_head
from coursegen.storage.common import (
    Clock,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from coursegen.storage.sqlmodel_models import GenerationJob, GenerationJobEvent

logger = logging.getLogger(__name__)


class JobRepository:
    """Job persistence facade backed by SQLModel + SQLite.

    Every state transition is a single conditional UPDATE guarded by the
    expected current status, so concurrent workers (threads or processes)
    never both win the same transition.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Clock = utc_now,
        sqlite_busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create(self, job: GenerationJobCreate) -> GenerationJobView:
        """Persist a new QUEUED job; raises ValidationError on bad input."""

        _validate_create(job)
        now = self.clock()
        with Session(self.engine) as session:
            if job.parent_job_id is not None:
                parent = session.exec(
                    select(GenerationJob).where(GenerationJob.job_id == job.parent_job_id),
                ).one_or_none()
                if parent is None:
                    raise ValidationError(f"Parent job not found: {job.parent_job_id}")
                _validate_parent(parent=parent, child=job)
            row = _new_job_row(job, now=now)
            session.add(row)
            self._add_event(
                session=session,
                row=row,
                event_type="created",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={
                    "job_type": job.job_type.value,
                    "max_retries": job.max_retries,
                    "parent_job_id": job.parent_job_id,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def create_children(
        self,
        *,
        parent_job_id: str,
        children: list[GenerationJobCreate],
        message: str,
    ) -> list[GenerationJobView]:
        """Attach a fan-out set to a PROCESSING parent in one transaction.

        Re-running for a parent that already fanned out returns the existing
        children instead of creating a second set.
        """

        if not children:
            raise ValidationError("Batch requires at least one child job.")
        now = self.clock()
        with Session(self.engine) as session:
            parent = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == parent_job_id),
            ).one_or_none()
            if parent is None:
                raise NotFoundError(f"Job not found: {parent_job_id}")
            if parent.batch_total is not None:
                existing = session.exec(
                    select(GenerationJob)
                    .where(GenerationJob.parent_job_id == parent_job_id)
                    .order_by(col(GenerationJob.created_at).asc()),
                ).all()
                return [_to_job_view(row) for row in existing]
            if parent.parent_job_id is not None:
                raise ValidationError(f"Child job cannot fan out: {parent_job_id}")
            if parent.status != JobStatus.PROCESSING.value:
                raise InvalidStateError(
                    f"Parent job must be PROCESSING to fan out (status={parent.status})",
                )

            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == parent_job_id,
                    col(GenerationJob.status) == JobStatus.PROCESSING.value,
                    col(GenerationJob.batch_total).is_(None),
                )
                .values(
                    batch_total=len(children),
                    progress_percent=func.max(col(GenerationJob.progress_percent), 10),
                    progress_message=message,
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConcurrencyConflict(f"Parent job changed during fan-out: {parent_job_id}")

            rows: list[GenerationJob] = []
            for child in children:
                child.parent_job_id = parent_job_id
                _validate_create(child)
                _validate_parent(parent=parent, child=child)
                row = _new_job_row(child, now=now)
                session.add(row)
                rows.append(row)
                self._add_event(
                    session=session,
                    row=row,
                    event_type="created",
                    status_from=None,
                    status_to=JobStatus.QUEUED,
                    details={"job_type": child.job_type.value, "parent_job_id": parent_job_id},
                )
            self._add_event(
                session=session,
                row=parent,
                event_type="batch_started",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PROCESSING,
                details={"batch_total": len(children)},
            )
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_job_view(row) for row in rows]

    def claim_next(
        self,
        *,
        worker_id: str,
        capabilities: Iterable[JobType],
    ) -> GenerationJobView | None:
        """Atomically claim the oldest due QUEUED job of a supported type."""

        job_types = sorted(item.value for item in capabilities)
        if not job_types:
            return None
        while True:
            now = self.clock()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(GenerationJob)
                    .where(
                        GenerationJob.status == JobStatus.QUEUED.value,
                        col(GenerationJob.job_type).in_(job_types),
                        GenerationJob.next_attempt_at <= to_db_datetime(now),
                    )
                    .order_by(col(GenerationJob.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                claimed = self._try_claim(
                    session=session,
                    job_id=candidate.job_id,
                    worker_id=worker_id,
                    now=now,
                )
                if claimed is None:
                    continue
                return claimed

    def claim(self, *, job_id: str, worker_id: str) -> GenerationJobView:
        """Claim one named job; raises ConcurrencyConflict if it is not QUEUED."""

        now = self.clock()
        with Session(self.engine) as session:
            claimed = self._try_claim(session=session, job_id=job_id, worker_id=worker_id, now=now)
            if claimed is not None:
                return claimed
            row = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one_or_none()
        if row is None:
            raise NotFoundError(f"Job not found: {job_id}")
        if row.status == JobStatus.QUEUED.value:
            raise ConcurrencyConflict(
                f"Job {job_id} is backing off until "
                f"{to_utc_aware_datetime(row.next_attempt_at).isoformat()}",
            )
        raise ConcurrencyConflict(f"Job {job_id} is not claimable (status={row.status})")

    def update_progress(self, *, job_id: str, percent: int, message: str) -> None:
        """Record progress of a PROCESSING job; percent never moves backwards."""

        if not 0 <= percent <= 100:
            raise ValidationError(f"Progress percent out of range: {percent}")
        now = self.clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    progress_percent=func.max(col(GenerationJob.progress_percent), percent),
                    progress_message=message,
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount == 1:
                session.commit()
                return
            session.rollback()
            row = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one_or_none()
        if row is None:
            raise NotFoundError(f"Job not found: {job_id}")
        raise InvalidStateError(f"Progress update requires PROCESSING (status={row.status})")

    def complete(
        self,
        *,
        job_id: str,
        result_path: str | None,
        tokens_used: int,
        message: str = "Completed",
    ) -> bool:
        """Mark a PROCESSING job COMPLETED; False if it is no longer PROCESSING."""

        now = self.clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    progress_percent=100,
                    progress_message=message,
                    result_path=result_path,
                    tokens_used=tokens_used,
                    error_message=None,
                    failure_class=None,
                    completed_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            row = self._get_row(session=session, job_id=job_id)
            self._add_event(
                session=session,
                row=row,
                event_type="completed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.COMPLETED,
                details={"result_path": result_path, "tokens_used": tokens_used},
            )
            session.commit()
        logger.info("Job %s completed (tokens=%d)", job_id, tokens_used)
        return True

    def fail(
        self,
        *,
        job_id: str,
        error_message: str,
        failure_class: FailureClass,
        retryable: bool | None = None,
        details: dict[str, object] | None = None,
    ) -> FailOutcome | None:
        """Record a failed attempt and decide retry vs terminal.

        Retryable failures with budget left go back to QUEUED with a backoff
        delay; anything else becomes FAILED. Returns None when the job is not
        PROCESSING (already terminal, cancelled, or reclaimed).
        """

        if retryable is None:
            retryable = failure_class in RETRYABLE_FAILURE_CLASSES
        now = self.clock()
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one_or_none()
            if row is None:
                raise NotFoundError(f"Job not found: {job_id}")
            if row.status != JobStatus.PROCESSING.value:
                return None

            retry_count = row.retry_count
            statement = sa_update(GenerationJob).where(
                col(GenerationJob.job_id) == job_id,
                col(GenerationJob.status) == JobStatus.PROCESSING.value,
                col(GenerationJob.retry_count) == retry_count,
            )
            if retryable and retry_count < row.max_retries:
                delay_seconds = self.retry_policy.delay_for(retry_count + 1)
                next_attempt_at = now + timedelta(seconds=delay_seconds)
                outcome = FailOutcome(
                    status=JobStatus.QUEUED,
                    retry_count=retry_count + 1,
                    max_retries=row.max_retries,
                    next_attempt_at=next_attempt_at,
                    delay_seconds=delay_seconds,
                )
                statement = statement.values(
                    status=JobStatus.QUEUED.value,
                    retry_count=retry_count + 1,
                    next_attempt_at=to_db_datetime(next_attempt_at),
                    progress_percent=0,
                    progress_message=f"Retry {retry_count + 1}/{row.max_retries} scheduled",
                    error_message=error_message,
                    failure_class=failure_class.value,
                    worker_id=None,
                    heartbeat_at=None,
                    updated_at=to_db_datetime(now),
                )
                event_type = "retry_scheduled"
            else:
                outcome = FailOutcome(
                    status=JobStatus.FAILED,
                    retry_count=retry_count,
                    max_retries=row.max_retries,
                )
                statement = statement.values(
                    status=JobStatus.FAILED.value,
                    progress_message="Failed",
                    error_message=error_message,
                    failure_class=failure_class.value,
                    completed_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
                event_type = "failed"

            result = session.exec(statement)
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                row=row,
                event_type=event_type,
                status_from=JobStatus.PROCESSING,
                status_to=outcome.status,
                details={
                    "failure_class": failure_class.value,
                    "error_message": error_message,
                    "retry_count": outcome.retry_count,
                    "delay_seconds": outcome.delay_seconds,
                    **(details or {}),
                },
            )
            session.commit()

        if outcome.requeued:
            logger.info(
                "Job %s failed (%s); retry %d/%d in %.1fs",
                job_id,
                failure_class.value,
                outcome.retry_count,
                outcome.max_retries,
                outcome.delay_seconds or 0.0,
            )
        else:
            logger.info(
                "Job %s failed permanently (%s): %s",
                job_id,
                failure_class.value,
                error_message,
            )
        return outcome

    def cancel(
        self,
        *,
        job_id: str,
        tenant_id: str | None = None,
        reason: str = "Cancelled by user",
    ) -> CancelOutcome:
        """Cancel a QUEUED or PROCESSING job; terminal jobs are left untouched."""

        while True:
            now = self.clock()
            with Session(self.engine) as session:
                row = self._find_row(session=session, job_id=job_id, tenant_id=tenant_id)
                if row is None:
                    raise NotFoundError(f"Job not found: {job_id}")
                previous = JobStatus(row.status)
                if previous in TERMINAL_STATUSES:
                    return CancelOutcome(
                        job=_to_job_view(row),
                        cancelled=False,
                        previous_status=previous,
                    )

                cancelled = self._cancel_row(
                    session=session,
                    row=row,
                    previous=previous,
                    reason=reason,
                    now=now,
                )
                if not cancelled:
                    continue
                session.commit()
                refreshed = self._get_row(session=session, job_id=job_id)
                logger.info("Job %s cancelled from %s", job_id, previous.value)
                return CancelOutcome(
                    job=_to_job_view(refreshed),
                    cancelled=True,
                    previous_status=previous,
                )

    def cancel_children(self, *, parent_job_id: str, reason: str) -> list[str]:
        """Cancel every active child of a parent; returns the ids that changed."""

        cancelled_ids: list[str] = []
        now = self.clock()
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJob).where(
                    GenerationJob.parent_job_id == parent_job_id,
                    col(GenerationJob.status).in_([item.value for item in ACTIVE_STATUSES]),
                ),
            ).all()
            for row in rows:
                if self._cancel_row(
                    session=session,
                    row=row,
                    previous=JobStatus(row.status),
                    reason=reason,
                    now=now,
                ):
                    cancelled_ids.append(row.job_id)
            session.commit()
        return cancelled_ids

    def reclaim_stale(self, *, timeout: timedelta) -> ReclaimResult:
        """Requeue PROCESSING jobs whose worker stopped reporting.

        Liveness is ``COALESCE(heartbeat_at, started_at)``. Parents waiting on
        children are skipped. Jobs with no retry budget left become FAILED.
        """

        now = self.clock()
        cutoff = to_db_datetime(now - timeout)
        liveness = func.coalesce(col(GenerationJob.heartbeat_at), col(GenerationJob.started_at))
        outcome = ReclaimResult()
        with Session(self.engine) as session:
            candidates = session.exec(
                select(GenerationJob).where(
                    GenerationJob.status == JobStatus.PROCESSING.value,
                    col(GenerationJob.batch_total).is_(None),
                    liveness < cutoff,
                ),
            ).all()

        for candidate in candidates:
            error_message = (
                f"Worker stopped reporting; reclaimed after {int(timeout.total_seconds())}s"
            )
            with Session(self.engine) as session:
                statement = sa_update(GenerationJob).where(
                    col(GenerationJob.job_id) == candidate.job_id,
                    col(GenerationJob.status) == JobStatus.PROCESSING.value,
                    col(GenerationJob.retry_count) == candidate.retry_count,
                    liveness < cutoff,
                ).execution_options(synchronize_session=False)
                if candidate.retry_count < candidate.max_retries:
                    status_to = JobStatus.QUEUED
                    statement = statement.values(
                        status=JobStatus.QUEUED.value,
                        retry_count=candidate.retry_count + 1,
                        next_attempt_at=to_db_datetime(now),
                        progress_percent=0,
                        progress_message="Reclaimed after worker timeout",
                        error_message=error_message,
                        failure_class=FailureClass.STALE_TIMEOUT.value,
                        worker_id=None,
                        heartbeat_at=None,
                        updated_at=to_db_datetime(now),
                    )
                else:
                    status_to = JobStatus.FAILED
                    statement = statement.values(
                        status=JobStatus.FAILED.value,
                        progress_message="Failed",
                        error_message=error_message,
                        failure_class=FailureClass.STALE_TIMEOUT.value,
                        completed_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    )
                result = session.exec(statement)
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    row=candidate,
                    event_type="reclaimed" if status_to == JobStatus.QUEUED else "failed",
                    status_from=JobStatus.PROCESSING,
                    status_to=status_to,
                    details={
                        "failure_class": FailureClass.STALE_TIMEOUT.value,
                        "previous_worker_id": candidate.worker_id,
                        "timeout_seconds": int(timeout.total_seconds()),
                    },
                )
                session.commit()
                view = _to_job_view(self._get_row(session=session, job_id=candidate.job_id))
            logger.warning(
                "Reclaimed stale job %s (worker=%s) -> %s",
                candidate.job_id,
                candidate.worker_id,
                status_to.value,
            )
            if status_to == JobStatus.QUEUED:
                outcome.requeued.append(view)
            else:
                outcome.failed.append(view)
        return outcome

    def finalize_parent(  # noqa: PLR0913
        self,
        *,
        parent_job_id: str,
        status: JobStatus,
        message: str,
        tokens_used: int,
        error_message: str | None = None,
    ) -> bool:
        """Conditionally move a PROCESSING parent to a terminal status."""

        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Unsupported batch terminal status: {status}")
        now = self.clock()
        values: dict[str, object] = {
            "status": status.value,
            "progress_message": message,
            "tokens_used": tokens_used,
            "error_message": error_message,
            "completed_at": to_db_datetime(now),
            "heartbeat_at": to_db_datetime(now),
            "updated_at": to_db_datetime(now),
        }
        if status == JobStatus.COMPLETED:
            values["progress_percent"] = 100
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == parent_job_id,
                    col(GenerationJob.status) == JobStatus.PROCESSING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            row = self._get_row(session=session, job_id=parent_job_id)
            self._add_event(
                session=session,
                row=row,
                event_type="batch_finalized",
                status_from=JobStatus.PROCESSING,
                status_to=status,
                details={"message": message, "tokens_used": tokens_used},
            )
            session.commit()
        logger.info("Batch parent %s finalized as %s: %s", parent_job_id, status.value, message)
        return True

    def get(self, *, job_id: str, tenant_id: str | None = None) -> GenerationJobView | None:
        with Session(self.engine) as session:
            row = self._find_row(session=session, job_id=job_id, tenant_id=tenant_id)
        return _to_job_view(row) if row is not None else None

    def is_cancelled(self, *, job_id: str) -> bool:
        """True when the job was cancelled (or no longer exists)."""

        with Session(self.engine) as session:
            status = session.exec(
                select(GenerationJob.status).where(GenerationJob.job_id == job_id),
            ).one_or_none()
        return status is None or status == JobStatus.CANCELLED.value

    def get_details(
        self,
        *,
        job_id: str,
        tenant_id: str | None = None,
    ) -> GenerationJobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            row = self._find_row(session=session, job_id=job_id, tenant_id=tenant_id)
            if row is None:
                return None
            event_rows = session.exec(
                select(GenerationJobEvent)
                .where(GenerationJobEvent.job_id == job_id)
                .order_by(
                    col(GenerationJobEvent.created_at).asc(),
                    col(GenerationJobEvent.id).asc(),
                ),
            ).all()

        events: list[GenerationJobEventView] = []
        for event_row in event_rows:
            details = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                GenerationJobEventView(
                    event_id=event_row.id or 0,
                    job_id=event_row.job_id,
                    event_type=event_row.event_type,
                    status_from=(
                        JobStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        JobStatus(event_row.status_to) if event_row.status_to is not None else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return GenerationJobDetails(job=_to_job_view(row), events=events)

    def list_jobs(self, job_filter: JobListFilter) -> list[GenerationJobView]:
        """List recent jobs, newest first."""

        statement = select(GenerationJob)
        if job_filter.tenant_id is not None:
            statement = statement.where(GenerationJob.tenant_id == job_filter.tenant_id)
        if job_filter.job_type is not None:
            statement = statement.where(GenerationJob.job_type == job_filter.job_type.value)
        if job_filter.status is not None:
            statement = statement.where(GenerationJob.status == job_filter.status.value)
        if job_filter.course_id is not None:
            statement = statement.where(GenerationJob.course_id == job_filter.course_id)
        statement = statement.order_by(col(GenerationJob.created_at).desc()).limit(
            max(1, job_filter.limit),
        )
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_children(self, *, parent_job_id: str) -> list[GenerationJobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJob)
                .where(GenerationJob.parent_job_id == parent_job_id)
                .order_by(col(GenerationJob.created_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_waiting_parents(self, *, limit: int = 100) -> list[GenerationJobView]:
        """PROCESSING parents that fanned out and have not been finalized."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJob)
                .where(
                    GenerationJob.status == JobStatus.PROCESSING.value,
                    col(GenerationJob.batch_total).is_not(None),
                )
                .order_by(col(GenerationJob.created_at).asc())
                .limit(max(1, limit)),
            ).all()
        return [_to_job_view(row) for row in rows]

    def child_stats(self, *, parent_job_id: str) -> BatchStats:
        """Aggregate sibling statuses and token usage for a parent job."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(
                    GenerationJob.status,
                    func.count(),
                    func.coalesce(func.sum(GenerationJob.tokens_used), 0),
                )
                .where(GenerationJob.parent_job_id == parent_job_id)
                .group_by(GenerationJob.status),
            ).all()

        stats = BatchStats()
        for status, count, tokens in rows:
            stats.total += int(count)
            stats.tokens_used += int(tokens)
            if status == JobStatus.COMPLETED.value:
                stats.completed += int(count)
            elif status == JobStatus.FAILED.value:
                stats.failed += int(count)
            elif status == JobStatus.CANCELLED.value:
                stats.cancelled += int(count)
        return stats

    def add_job_event(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        """Append an audit event outside a state transition."""

        with Session(self.engine) as session:
            row = self._get_row(session=session, job_id=job_id)
            self._add_event(
                session=session,
                row=row,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details,
            )
            session.commit()

    def _try_claim(
        self,
        *,
        session: Session,
        job_id: str,
        worker_id: str,
        now: datetime,
    ) -> GenerationJobView | None:
        result = session.exec(
            sa_update(GenerationJob)
            .where(
                col(GenerationJob.job_id) == job_id,
                col(GenerationJob.status) == JobStatus.QUEUED.value,
                col(GenerationJob.next_attempt_at) <= to_db_datetime(now),
            )
            .values(
                status=JobStatus.PROCESSING.value,
                started_at=to_db_datetime(now),
                heartbeat_at=None,
                completed_at=None,
                worker_id=worker_id,
                progress_message="Started",
                updated_at=to_db_datetime(now),
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            return None

        claimed = self._get_row(session=session, job_id=job_id)
        self._add_event(
            session=session,
            row=claimed,
            event_type="claimed",
            status_from=JobStatus.QUEUED,
            status_to=JobStatus.PROCESSING,
            details={"worker_id": worker_id, "retry_count": claimed.retry_count},
        )
        session.commit()
        logger.info(
            "Job %s (%s) claimed by %s, attempt %d",
            claimed.job_id,
            claimed.job_type,
            worker_id,
            claimed.retry_count + 1,
        )
        return _to_job_view(claimed)

    def _cancel_row(  # noqa: PLR0913
        self,
        *,
        session: Session,
        row: GenerationJob,
        previous: JobStatus,
        reason: str,
        now: datetime,
    ) -> bool:
        result = session.exec(
            sa_update(GenerationJob)
            .where(
                col(GenerationJob.job_id) == row.job_id,
                col(GenerationJob.status) == previous.value,
            )
            .values(
                status=JobStatus.CANCELLED.value,
                progress_message=reason,
                completed_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            return False
        self._add_event(
            session=session,
            row=row,
            event_type="cancelled",
            status_from=previous,
            status_to=JobStatus.CANCELLED,
            details={"reason": reason},
        )
        return True

    def _find_row(
        self,
        *,
        session: Session,
        job_id: str,
        tenant_id: str | None,
    ) -> GenerationJob | None:
        statement = select(GenerationJob).where(GenerationJob.job_id == job_id)
        if tenant_id is not None:
            statement = statement.where(GenerationJob.tenant_id == tenant_id)
        return session.exec(statement).one_or_none()

    def _get_row(self, *, session: Session, job_id: str) -> GenerationJob:
        row = session.exec(
            select(GenerationJob)
            .where(GenerationJob.job_id == job_id)
            .execution_options(populate_existing=True),
        ).one_or_none()
        if row is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        row: GenerationJob,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            GenerationJobEvent(
                job_id=row.job_id,
                tenant_id=row.tenant_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(self.clock()),
            ),
        )


def _validate_create(job: GenerationJobCreate) -> None:
    if not job.tenant_id.strip():
        raise ValidationError("tenant_id is required.")
    if not job.created_by_user_id.strip():
        raise ValidationError("created_by_user_id is required.")
    if job.max_retries < 0:
        raise ValidationError("max_retries must be >= 0.")
    job.payload.validate()


def _validate_parent(*, parent: GenerationJob, child: GenerationJobCreate) -> None:
    if parent.tenant_id != child.tenant_id:
        raise ValidationError("Child job must belong to the parent's tenant.")
    if parent.parent_job_id is not None:
        raise ValidationError(f"Job {parent.job_id} is itself a child and cannot have children.")


def _new_job_row(job: GenerationJobCreate, *, now: datetime) -> GenerationJob:
    refs = job.payload.refs()
    return GenerationJob(
        job_id=job.job_id or str(uuid4()),
        tenant_id=job.tenant_id,
        job_type=job.job_type.value,
        status=JobStatus.QUEUED.value,
        payload_json=payload_to_json(job.payload),
        course_id=refs.course_id,
        lesson_id=refs.lesson_id,
        sme_task_id=refs.sme_task_id,
        submission_id=refs.submission_id,
        progress_percent=0,
        progress_message="Queued",
        tokens_used=0,
        retry_count=0,
        max_retries=job.max_retries,
        next_attempt_at=to_db_datetime(now),
        parent_job_id=job.parent_job_id,
        created_by_user_id=job.created_by_user_id,
        created_at=to_db_datetime(now),
        updated_at=to_db_datetime(now),
    )


def _to_job_view(row: GenerationJob) -> GenerationJobView:
    job_type = JobType(row.job_type)
    return GenerationJobView(
        job_id=row.job_id,
        tenant_id=row.tenant_id,
        job_type=job_type,
        status=JobStatus(row.status),
        payload=payload_from_json(job_type, row.payload_json),
        course_id=row.course_id,
        lesson_id=row.lesson_id,
        sme_task_id=row.sme_task_id,
        submission_id=row.submission_id,
        progress_percent=row.progress_percent,
        progress_message=row.progress_message,
        result_path=row.result_path,
        error_message=row.error_message,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        tokens_used=row.tokens_used,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        next_attempt_at=to_utc_aware_datetime(row.next_attempt_at),
        parent_job_id=row.parent_job_id,
        batch_total=row.batch_total,
        worker_id=row.worker_id,
        created_by_user_id=row.created_by_user_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        completed_at=optional_utc(row.completed_at),
    )
