"""Parent/child fan-out for full-course generation and its aggregation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from coursegen.content.models import OutlineView
from coursegen.jobs.errors import InvalidStateError
from coursegen.jobs.models import (
    BatchStats,
    GenerationJobCreate,
    GenerationJobView,
    JobStatus,
    LessonContentPayload,
)
from coursegen.jobs.queue import TaskQueue, enqueue_job
from coursegen.jobs.repository import JobRepository
from coursegen.notifications.fanout import JobMilestone, NotificationFanout

logger = logging.getLogger(__name__)

BATCH_START_PERCENT = 10


class BatchPolicy(str, Enum):
    """How a parent reacts to child failures."""

    WAIT_ALL = "wait_all"
    FAIL_FAST = "fail_fast"
    BEST_EFFORT = "best_effort"


@dataclass(slots=True)
class BatchDecision:
    status: JobStatus
    message: str
    error_message: str | None = None


def decide_batch_outcome(stats: BatchStats, policy: BatchPolicy) -> BatchDecision | None:
    """Terminal decision for a parent, or None while it must keep waiting."""

    if stats.total == 0:
        return None
    failed_message = f"{stats.failed} lesson(s) failed to generate"
    if policy == BatchPolicy.FAIL_FAST and stats.failed:
        return BatchDecision(JobStatus.FAILED, failed_message, failed_message)
    if not stats.all_terminal:
        return None
    if stats.completed == stats.total:
        return BatchDecision(JobStatus.COMPLETED, "All lessons generated successfully")
    if policy == BatchPolicy.BEST_EFFORT and stats.completed:
        return BatchDecision(
            JobStatus.COMPLETED,
            f"Generated {stats.completed} of {stats.total} lessons "
            f"({stats.failed} failed, {stats.cancelled} cancelled)",
        )
    if stats.failed:
        return BatchDecision(JobStatus.FAILED, failed_message, failed_message)
    cancelled_message = f"{stats.cancelled} lesson(s) cancelled"
    return BatchDecision(JobStatus.CANCELLED, cancelled_message, cancelled_message)


class BatchCoordinator:
    """Creates lesson children for a parent and finalizes the parent once.

    Every child reaching a terminal status calls ``on_child_terminal``; the
    conditional parent update makes concurrent calls finalize exactly once.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        queue: TaskQueue,
        fanout: NotificationFanout | None = None,
        policy: BatchPolicy = BatchPolicy.WAIT_ALL,
        child_max_retries: int = 3,
        task_max_retries: int = 3,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.fanout = fanout
        self.policy = policy
        self.child_max_retries = child_max_retries
        self.task_max_retries = task_max_retries

    def fan_out(
        self,
        *,
        parent: GenerationJobView,
        outline: OutlineView,
    ) -> list[GenerationJobView]:
        children = [
            GenerationJobCreate(
                tenant_id=parent.tenant_id,
                created_by_user_id=parent.created_by_user_id,
                payload=LessonContentPayload(
                    course_id=outline.course_id,
                    lesson_id=lesson.lesson_id,
                ),
                max_retries=self.child_max_retries,
                parent_job_id=parent.job_id,
            )
            for lesson in outline.lessons
        ]
        created = self.repository.create_children(
            parent_job_id=parent.job_id,
            children=children,
            message=f"Generating {len(children)} lessons...",
        )
        for child in created:
            if child.status == JobStatus.QUEUED:
                enqueue_job(self.queue, child, max_retries=self.task_max_retries)
        logger.info("Parent %s fanned out %d lesson jobs", parent.job_id, len(created))
        return created

    def on_child_terminal(self, child: GenerationJobView) -> GenerationJobView | None:
        """Update parent progress; return the parent if this call finalized it."""

        if child.parent_job_id is None:
            return None
        return self._aggregate(child.parent_job_id, record_progress=True)

    def reconcile_parent(self, parent_job_id: str) -> GenerationJobView | None:
        """Finalize a waiting parent whose children finished without aggregating it."""

        return self._aggregate(parent_job_id, record_progress=False)

    def _aggregate(self, parent_id: str, *, record_progress: bool) -> GenerationJobView | None:
        parent = self.repository.get(job_id=parent_id)
        if parent is None or parent.status != JobStatus.PROCESSING:
            return None
        stats = self.repository.child_stats(parent_job_id=parent_id)
        total = parent.batch_total or stats.total
        if record_progress and total:
            percent = BATCH_START_PERCENT + (100 - BATCH_START_PERCENT) * stats.done // total
            try:
                self.repository.update_progress(
                    job_id=parent_id,
                    percent=min(percent, 99),
                    message=f"Generated {stats.done} of {total} lessons...",
                )
            except InvalidStateError:
                return None

        decision = decide_batch_outcome(stats, self.policy)
        if decision is None:
            return None
        finalized = self.repository.finalize_parent(
            parent_job_id=parent_id,
            status=decision.status,
            message=decision.message,
            tokens_used=stats.tokens_used,
            error_message=decision.error_message,
        )
        if not finalized:
            return None
        if decision.status == JobStatus.FAILED and self.policy == BatchPolicy.FAIL_FAST:
            self.repository.cancel_children(
                parent_job_id=parent_id,
                reason="Cancelled after a sibling lesson failed",
            )
        final = self.repository.get(job_id=parent_id)
        if final is not None:
            self._notify(final, decision.status)
        return final

    def _notify(self, parent: GenerationJobView, status: JobStatus) -> None:
        if self.fanout is None or status == JobStatus.CANCELLED:
            return
        milestone = JobMilestone.COMPLETED if status == JobStatus.COMPLETED else JobMilestone.FAILED
        try:
            self.fanout.notify_job_milestone(parent, milestone)
        except SQLAlchemyError:
            logger.exception("Failed to notify batch outcome for %s", parent.job_id)
