"""Runs one claimed job through its handler and records the outcome."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from coursegen.jobs.batch import BatchCoordinator
from coursegen.jobs.context import JobContext
from coursegen.jobs.errors import CoursegenError, JobCancelled
from coursegen.jobs.failure_classifier import classify_job_failure
from coursegen.jobs.handlers import HandlerResult, JobHandler
from coursegen.jobs.models import FailureClass, GenerationJobView, JobType
from coursegen.jobs.queue import TaskQueue, enqueue_job
from coursegen.jobs.repository import JobRepository
from coursegen.notifications.fanout import JobMilestone, NotificationFanout

logger = logging.getLogger(__name__)


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DEFERRED = "deferred"
    SKIPPED = "skipped"


class JobRunner:
    """Executes handlers and owns every status transition after a claim.

    No handler exception escapes ``execute``: failures are classified and
    recorded through ``JobRepository.fail``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        queue: TaskQueue,
        handlers: Mapping[JobType, JobHandler],
        fanout: NotificationFanout | None = None,
        batch: BatchCoordinator | None = None,
        task_max_retries: int = 3,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.handlers = dict(handlers)
        self.fanout = fanout
        self.batch = batch
        self.task_max_retries = task_max_retries

    @property
    def capabilities(self) -> frozenset[JobType]:
        return frozenset(self.handlers)

    def execute(self, job: GenerationJobView) -> RunOutcome:
        handler = self.handlers.get(job.job_type)
        if handler is None:
            return self._record_failure(
                job,
                message=f"No handler registered for {job.job_type.value}",
                failure_class=FailureClass.NON_RETRYABLE,
                retryable=False,
                details={"job_type": job.job_type.value},
            )
        if job.retry_count == 0:
            self._notify(job, JobMilestone.STARTED)

        context = JobContext(job=job, repository=self.repository)
        try:
            result = handler.run(context)
        except JobCancelled:
            logger.info("Job %s cancelled at checkpoint %s", job.job_id, context.checkpoint)
            return RunOutcome.CANCELLED
        except Exception as error:  # noqa: BLE001
            classification = classify_job_failure(error)
            logger.warning(
                "Job %s attempt %d failed (%s): %s",
                job.job_id,
                job.retry_count + 1,
                classification.failure_class.value,
                error,
            )
            return self._record_failure(
                job,
                message=str(error) or type(error).__name__,
                failure_class=classification.failure_class,
                retryable=classification.retryable,
                details=classification.to_event_details(),
            )
        return self._record_success(job, result)

    def _record_success(self, job: GenerationJobView, result: HandlerResult) -> RunOutcome:
        if result.deferred:
            logger.info("Job %s waiting on its batch", job.job_id)
            return RunOutcome.DEFERRED
        completed = self.repository.complete(
            job_id=job.job_id,
            result_path=result.result_path,
            tokens_used=result.tokens_used,
            message=result.message,
        )
        if not completed:
            return self._lost_ownership(job)
        self._after_terminal(job.job_id, JobMilestone.COMPLETED)
        return RunOutcome.COMPLETED

    def _record_failure(  # noqa: PLR0913
        self,
        job: GenerationJobView,
        *,
        message: str,
        failure_class: FailureClass,
        retryable: bool,
        details: dict[str, object],
    ) -> RunOutcome:
        outcome = self.repository.fail(
            job_id=job.job_id,
            error_message=message,
            failure_class=failure_class,
            retryable=retryable,
            details=details,
        )
        if outcome is None:
            return self._lost_ownership(job)
        if outcome.requeued:
            retry_job = self.repository.get(job_id=job.job_id)
            if retry_job is not None:
                enqueue_job(
                    self.queue,
                    retry_job,
                    delay_seconds=outcome.delay_seconds or 0.0,
                    max_retries=self.task_max_retries,
                )
            return RunOutcome.RETRY_SCHEDULED
        self._after_terminal(job.job_id, JobMilestone.FAILED)
        return RunOutcome.FAILED

    def _lost_ownership(self, job: GenerationJobView) -> RunOutcome:
        if self.repository.is_cancelled(job_id=job.job_id):
            logger.info("Job %s was cancelled while running; result discarded", job.job_id)
            return RunOutcome.CANCELLED
        logger.warning("Job %s is no longer owned by this worker", job.job_id)
        return RunOutcome.SKIPPED

    def _after_terminal(self, job_id: str, milestone: JobMilestone) -> None:
        job = self.repository.get(job_id=job_id)
        if job is None:
            return
        if job.parent_job_id is not None:
            if self.batch is not None:
                try:
                    self.batch.on_child_terminal(job)
                except (CoursegenError, SQLAlchemyError):
                    logger.exception("Batch aggregation failed for child %s", job.job_id)
            return
        self._notify(job, milestone)

    def _notify(self, job: GenerationJobView, milestone: JobMilestone) -> None:
        if self.fanout is None:
            return
        try:
            self.fanout.notify_job_milestone(job, milestone)
        except SQLAlchemyError:
            logger.exception("Failed to notify %s for job %s", milestone.value, job.job_id)
