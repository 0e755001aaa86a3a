from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from coursegen.config import Settings
from coursegen.content.generator import EchoContentGenerator, GenerationResult, OutlineRequest
from coursegen.jobs.context import Checkpoint, JobContext
from coursegen.jobs.errors import (
    InvalidStateError,
    JobCancelled,
    PermanentProviderError,
    TransientProviderError,
)
from coursegen.jobs.models import (
    CourseOutlinePayload,
    FailureClass,
    GenerationJobCreate,
    JobStatus,
)
from coursegen.jobs.orchestrator import JobRunner, RunOutcome
from coursegen.jobs.queue import enqueue_job
from coursegen.jobs.repository import JobRepository
from coursegen.jobs.services import RequestContext
from coursegen.notifications.models import NotificationPriority, NotificationType
from coursegen.runtime import Runtime, build_runtime

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Execution & Retry"),
]


class FlakyGenerator(EchoContentGenerator):
    """Fails outline generation a fixed number of times before succeeding."""

    def __init__(self, failures: int, error: Exception) -> None:
        super().__init__()
        self.failures = failures
        self.error = error
        self.calls = 0

    def generate_outline(self, request: OutlineRequest) -> GenerationResult:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return super().generate_outline(request)


class CancellingGenerator(EchoContentGenerator):
    """Cancels its own job while the provider call is in flight."""

    def __init__(self) -> None:
        super().__init__()
        self.repository: JobRepository | None = None
        self.job_id: str | None = None

    def generate_outline(self, request: OutlineRequest) -> GenerationResult:
        assert self.repository is not None and self.job_id is not None
        self.repository.cancel(job_id=self.job_id, tenant_id=request.tenant_id)
        return super().generate_outline(request)


def _runtime_with(settings: Settings, clock, generator) -> Runtime:
    return build_runtime(settings, generator=generator, clock=clock)


def _notification_types(runtime: Runtime, caller: RequestContext) -> set[NotificationType]:
    items = runtime.notifications.list_for_user(
        tenant_id=caller.tenant_id,
        user_id=caller.user_id,
    )
    return {item.notification_type for item in items}


def test_outline_job_completes_through_queue_delivery(
    runtime: Runtime,
    caller: RequestContext,
) -> None:
    job = runtime.service().create_outline_job(
        caller,
        course_id="course-1",
        topic="Python",
        target_audience="analysts",
        lesson_count=4,
    )

    summary = runtime.worker("w1").run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    final = runtime.jobs.get(job_id=job.job_id)
    assert final is not None
    assert final.status == JobStatus.COMPLETED
    assert final.progress_percent == 100
    assert final.progress_message == "Outline generation complete"
    assert final.tokens_used > 0
    assert final.result_path is not None
    document = json.loads(Path(final.result_path).read_text("utf-8"))
    assert document["course_id"] == "course-1"
    assert len(document["lessons"]) == 4

    outline = runtime.content.latest_outline(tenant_id="tenant-a", course_id="course-1")
    assert outline is not None
    assert outline.job_id == job.job_id
    assert [lesson.position for lesson in outline.lessons] == [1, 2, 3, 4]

    assert runtime.queue.stats() == {"ready": 0, "leased": 0, "dead": 0}
    assert _notification_types(runtime, caller) == {
        NotificationType.GENERATION_STARTED,
        NotificationType.OUTLINE_READY,
    }
    details = runtime.jobs.get_details(job_id=job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["created", "claimed", "completed"]


def test_transient_failures_retry_with_backoff_then_succeed(
    settings: Settings,
    clock,
    caller: RequestContext,
) -> None:
    generator = FlakyGenerator(failures=2, error=TransientProviderError("rate limit exceeded"))
    runtime = _runtime_with(settings, clock, generator)
    try:
        job = runtime.service().create_outline_job(caller, course_id="course-1")
        worker = runtime.worker("w1")

        assert worker.run_once().retried == 1
        retrying = runtime.jobs.get(job_id=job.job_id)
        assert retrying is not None
        assert retrying.status == JobStatus.QUEUED
        assert retrying.retry_count == 1
        assert retrying.failure_class == FailureClass.TRANSIENT_PROVIDER

        assert worker.run_once().idle_polls == 1
        clock.advance(30)
        assert worker.run_once().retried == 1
        clock.advance(60)
        assert worker.run_once().succeeded == 1
    finally:
        runtime.close()

    assert generator.calls == 3
    final = runtime.jobs.get(job_id=job.job_id)
    assert final is not None
    assert final.status == JobStatus.COMPLETED
    assert final.retry_count == 2
    assert final.error_message is None


def test_retry_budget_exhaustion_fails_job(
    settings: Settings,
    clock,
    caller: RequestContext,
) -> None:
    generator = FlakyGenerator(failures=100, error=TransientProviderError("connection reset"))
    runtime = _runtime_with(settings, clock, generator)
    try:
        job = runtime.service().create_outline_job(caller, course_id="course-1")
        worker = runtime.worker("w1")
        outcomes = []
        for _ in range(4):
            summary = worker.run_once()
            outcomes.append("retried" if summary.retried else "failed" if summary.failed else "?")
            clock.advance(900)
        final = runtime.jobs.get(job_id=job.job_id)
        types = _notification_types(runtime, caller)
    finally:
        runtime.close()

    assert outcomes == ["retried", "retried", "retried", "failed"]
    assert generator.calls == 4
    assert final is not None
    assert final.status == JobStatus.FAILED
    assert final.retry_count == 3
    assert final.max_retries == 3
    assert NotificationType.GENERATION_FAILED in types


def test_permanent_failure_is_not_retried(
    settings: Settings,
    clock,
    caller: RequestContext,
) -> None:
    generator = FlakyGenerator(failures=1, error=PermanentProviderError("invalid api key"))
    runtime = _runtime_with(settings, clock, generator)
    try:
        job = runtime.service().create_outline_job(caller, course_id="course-1")
        summary = runtime.worker("w1").run_once()
        final = runtime.jobs.get(job_id=job.job_id)
        failed = [
            item
            for item in runtime.notifications.list_for_user(tenant_id="tenant-a", user_id="user-1")
            if item.notification_type == NotificationType.GENERATION_FAILED
        ]
    finally:
        runtime.close()

    assert summary.failed == 1
    assert final is not None
    assert final.status == JobStatus.FAILED
    assert final.retry_count == 0
    assert final.failure_class == FailureClass.PERMANENT_PROVIDER
    assert final.error_message == "invalid api key"
    assert len(failed) == 1
    assert failed[0].priority == NotificationPriority.HIGH
    assert failed[0].job_id == job.job_id


def test_cancellation_is_observed_at_next_checkpoint(
    settings: Settings,
    clock,
    caller: RequestContext,
) -> None:
    generator = CancellingGenerator()
    runtime = _runtime_with(settings, clock, generator)
    try:
        job = runtime.service().create_outline_job(caller, course_id="course-1")
        generator.repository = runtime.jobs
        generator.job_id = job.job_id

        summary = runtime.worker("w1").run_once()
        final = runtime.jobs.get(job_id=job.job_id)
        outline = runtime.content.latest_outline(tenant_id="tenant-a", course_id="course-1")
    finally:
        runtime.close()

    assert summary.cancelled == 1
    assert final is not None
    assert final.status == JobStatus.CANCELLED
    assert final.result_path is None
    assert outline is None


def test_worker_claims_directly_when_no_task_was_enqueued(
    runtime: Runtime,
) -> None:
    job = runtime.jobs.create(
        GenerationJobCreate(
            tenant_id="tenant-a",
            created_by_user_id="user-1",
            payload=CourseOutlinePayload(course_id="course-1"),
        ),
    )

    summary = runtime.worker("w1").run_once()

    assert summary.succeeded == 1
    final = runtime.jobs.get(job_id=job.job_id)
    assert final is not None and final.status == JobStatus.COMPLETED


def test_duplicate_delivery_is_acked_without_rerun(
    runtime: Runtime,
    caller: RequestContext,
) -> None:
    job = runtime.service().create_outline_job(caller, course_id="course-1")
    enqueue_job(runtime.queue, job)
    worker = runtime.worker("w1")

    first = worker.run_once()
    second = worker.run_once()

    assert first.succeeded == 1
    assert second.skipped == 1
    assert runtime.queue.stats() == {"ready": 0, "leased": 0, "dead": 0}
    outlines = runtime.content.latest_outline(tenant_id="tenant-a", course_id="course-1")
    assert outlines is not None


def test_missing_handler_fails_job_without_retry(
    runtime: Runtime,
    job_repository: JobRepository,
) -> None:
    job = job_repository.create(
        GenerationJobCreate(
            tenant_id="tenant-a",
            created_by_user_id="user-1",
            payload=CourseOutlinePayload(course_id="course-1"),
        ),
    )
    claimed = job_repository.claim(job_id=job.job_id, worker_id="w1")
    runner = JobRunner(repository=job_repository, queue=runtime.queue, handlers={})

    assert runner.execute(claimed) == RunOutcome.FAILED
    final = job_repository.get(job_id=job.job_id)
    assert final is not None
    assert final.status == JobStatus.FAILED
    assert final.failure_class == FailureClass.NON_RETRYABLE


def test_checkpoints_only_move_forward(job_repository: JobRepository) -> None:
    job = job_repository.create(
        GenerationJobCreate(
            tenant_id="tenant-a",
            created_by_user_id="user-1",
            payload=CourseOutlinePayload(course_id="course-1"),
        ),
    )
    claimed = job_repository.claim(job_id=job.job_id, worker_id="w1")
    context = JobContext(job=claimed, repository=job_repository)

    context.enter(Checkpoint.VALIDATE_INPUTS, percent=0, message="Validating")
    context.enter(Checkpoint.GENERATE, percent=40, message="Generating")
    with pytest.raises(InvalidStateError):
        context.enter(Checkpoint.GATHER_CONTEXT, percent=20, message="Backwards")
    with pytest.raises(InvalidStateError):
        context.enter(Checkpoint.GENERATE, percent=45, message="Again")

    assert context.visited == [Checkpoint.VALIDATE_INPUTS, Checkpoint.GENERATE]
    current = job_repository.get(job_id=job.job_id)
    assert current is not None and current.progress_percent == 40

    job_repository.cancel(job_id=job.job_id)
    with pytest.raises(JobCancelled):
        context.enter(Checkpoint.PARSE_OUTPUT, percent=60, message="Parsing")
