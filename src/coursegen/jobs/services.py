"""Use-case services for generation jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from coursegen.cache.tenant_cache import TenantCache
from coursegen.content.models import OutlineStatus, OutlineView
from coursegen.content.repository import ContentRepository
from coursegen.jobs.batch import BatchCoordinator
from coursegen.jobs.errors import NotFoundError, ValidationError
from coursegen.jobs.models import (
    CancelOutcome,
    ComponentRegenPayload,
    CourseOutlinePayload,
    FullCoursePayload,
    GenerationJobCreate,
    GenerationJobDetails,
    GenerationJobView,
    JobListFilter,
    JobPayload,
    LessonContentPayload,
    SmeIngestionPayload,
)
from coursegen.jobs.queue import TaskQueue, enqueue_job
from coursegen.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RequestContext:
    """Authenticated caller identity supplied by the presentation layer."""

    tenant_id: str
    user_id: str


@dataclass(slots=True)
class OutlineApproval:
    outline: OutlineView
    parent_job: GenerationJobView | None


class GenerationService:
    """Validates, persists and enqueues generation jobs for one caller."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        queue: TaskQueue,
        content: ContentRepository,
        cache: TenantCache,
        batch: BatchCoordinator | None = None,
        max_retries: int = 3,
        task_max_retries: int = 3,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.content = content
        self.cache = cache
        self.batch = batch
        self.max_retries = max_retries
        self.task_max_retries = task_max_retries

    def create_ingestion_job(
        self,
        context: RequestContext,
        *,
        submission_id: str,
        sme_task_id: str | None = None,
    ) -> GenerationJobView:
        return self._submit(
            context,
            SmeIngestionPayload(submission_id=submission_id, sme_task_id=sme_task_id),
        )

    def create_outline_job(
        self,
        context: RequestContext,
        *,
        course_id: str,
        topic: str = "",
        target_audience: str = "",
        lesson_count: int = 5,
    ) -> GenerationJobView:
        return self._submit(
            context,
            CourseOutlinePayload(
                course_id=course_id,
                topic=topic,
                target_audience=target_audience,
                lesson_count=lesson_count,
            ),
        )

    def create_lesson_job(
        self,
        context: RequestContext,
        *,
        course_id: str,
        lesson_id: str,
    ) -> GenerationJobView:
        return self._submit(context, LessonContentPayload(course_id=course_id, lesson_id=lesson_id))

    def create_component_regen_job(
        self,
        context: RequestContext,
        *,
        course_id: str,
        lesson_id: str,
        component_id: str,
        modification_prompt: str,
    ) -> GenerationJobView:
        return self._submit(
            context,
            ComponentRegenPayload(
                course_id=course_id,
                lesson_id=lesson_id,
                component_id=component_id,
                modification_prompt=modification_prompt,
            ),
        )

    def generate_all_lessons(
        self,
        context: RequestContext,
        *,
        outline_id: str,
    ) -> GenerationJobView:
        """Create the FULL_COURSE parent that fans out one job per lesson."""

        outline = self.content.get_outline(tenant_id=context.tenant_id, outline_id=outline_id)
        if outline is None:
            raise NotFoundError(f"Outline not found: {outline_id}")
        if outline.status != OutlineStatus.APPROVED:
            raise ValidationError(f"Outline {outline_id} must be approved before generation")
        if not outline.lessons:
            raise ValidationError(f"Outline {outline_id} has no lessons")
        return self._submit(
            context,
            FullCoursePayload(course_id=outline.course_id, outline_id=outline.outline_id),
        )

    def approve_outline(
        self,
        context: RequestContext,
        *,
        outline_id: str,
        generate_lessons: bool = True,
    ) -> OutlineApproval:
        outline = self.content.approve_outline(tenant_id=context.tenant_id, outline_id=outline_id)
        parent = None
        if generate_lessons:
            parent = self.generate_all_lessons(context, outline_id=outline.outline_id)
        return OutlineApproval(outline=outline, parent_job=parent)

    def get_job(self, context: RequestContext, *, job_id: str) -> GenerationJobView:
        job = self.repository.get(job_id=job_id, tenant_id=context.tenant_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def get_job_wire(self, context: RequestContext, *, job_id: str) -> dict[str, object]:
        """Wire shape of a job; terminal jobs are served from the tenant cache."""

        cache_key = _job_cache_key(job_id)
        cached = self.cache.get_json(context.tenant_id, cache_key)
        if cached is not None:
            return cached
        job = self.get_job(context, job_id=job_id)
        wire = job.to_wire()
        if job.is_terminal:
            self.cache.set_json(context.tenant_id, cache_key, wire)
        return wire

    def get_job_details(self, context: RequestContext, *, job_id: str) -> GenerationJobDetails:
        details = self.repository.get_details(job_id=job_id, tenant_id=context.tenant_id)
        if details is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return details

    def list_jobs(
        self,
        context: RequestContext,
        *,
        job_filter: JobListFilter | None = None,
    ) -> list[GenerationJobView]:
        job_filter = job_filter or JobListFilter()
        job_filter.tenant_id = context.tenant_id
        return self.repository.list_jobs(job_filter)

    def cancel_job(self, context: RequestContext, *, job_id: str) -> CancelOutcome:
        """Cancel a job; parents cascade to their active children.

        Cancelling a terminal job is a no-op that reports ``cancelled=False``.
        """

        outcome = self.repository.cancel(job_id=job_id, tenant_id=context.tenant_id)
        self.cache.delete(context.tenant_id, _job_cache_key(job_id))
        if not outcome.cancelled:
            return outcome
        job = outcome.job
        if job.batch_total is not None:
            cancelled_children = self.repository.cancel_children(
                parent_job_id=job.job_id,
                reason="Parent job cancelled",
            )
            logger.info(
                "Cancelled parent %s and %d children",
                job.job_id,
                len(cancelled_children),
            )
        if job.parent_job_id is not None and self.batch is not None:
            self.batch.on_child_terminal(job)
            self.cache.delete(context.tenant_id, _job_cache_key(job.parent_job_id))
        return outcome

    def _submit(self, context: RequestContext, payload: JobPayload) -> GenerationJobView:
        job = self.repository.create(
            GenerationJobCreate(
                tenant_id=context.tenant_id,
                created_by_user_id=context.user_id,
                payload=payload,
                max_retries=self.max_retries,
            ),
        )
        if enqueue_job(self.queue, job, max_retries=self.task_max_retries) is None:
            logger.warning("Job %s stays QUEUED for direct claim", job.job_id)
        return job


def _job_cache_key(job_id: str) -> str:
    return f"job:{job_id}"
