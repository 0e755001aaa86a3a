from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest

from coursegen.jobs.errors import (
    ConcurrencyConflict,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from coursegen.jobs.models import (
    CourseOutlinePayload,
    FailureClass,
    FullCoursePayload,
    GenerationJobCreate,
    JobListFilter,
    JobStatus,
    JobType,
    LessonContentPayload,
    SmeIngestionPayload,
)
from coursegen.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Store"),
    allure.feature("Atomic Transitions"),
]

ALL_TYPES = frozenset(JobType)


def _outline_job(
    repository: JobRepository,
    *,
    tenant_id: str = "tenant-a",
    course_id: str = "course-1",
    max_retries: int = 3,
):
    return repository.create(
        GenerationJobCreate(
            tenant_id=tenant_id,
            created_by_user_id="user-1",
            payload=CourseOutlinePayload(course_id=course_id, topic="Python"),
            max_retries=max_retries,
        ),
    )


def _lesson_create(parent_tenant: str, lesson_id: str) -> GenerationJobCreate:
    return GenerationJobCreate(
        tenant_id=parent_tenant,
        created_by_user_id="user-1",
        payload=LessonContentPayload(course_id="course-1", lesson_id=lesson_id),
    )


def _processing_parent(repository: JobRepository):
    parent = repository.create(
        GenerationJobCreate(
            tenant_id="tenant-a",
            created_by_user_id="user-1",
            payload=FullCoursePayload(course_id="course-1", outline_id="outline-1"),
        ),
    )
    return repository.claim(job_id=parent.job_id, worker_id="w1")


def test_create_persists_queued_job_with_refs(job_repository: JobRepository) -> None:
    job = _outline_job(job_repository)

    assert job.status == JobStatus.QUEUED
    assert job.job_type == JobType.COURSE_OUTLINE
    assert job.course_id == "course-1"
    assert job.progress_percent == 0
    assert job.retry_count == 0
    assert job.max_retries == 3
    assert job.payload == CourseOutlinePayload(course_id="course-1", topic="Python")

    details = job_repository.get_details(job_id=job.job_id, tenant_id="tenant-a")
    assert details is not None
    assert [event.event_type for event in details.events] == ["created"]
    assert details.events[0].status_to == JobStatus.QUEUED


def test_create_rejects_invalid_input(job_repository: JobRepository) -> None:
    with pytest.raises(ValidationError):
        _outline_job(job_repository, course_id="")
    with pytest.raises(ValidationError):
        _outline_job(job_repository, tenant_id=" ")
    with pytest.raises(ValidationError):
        job_repository.create(
            GenerationJobCreate(
                tenant_id="tenant-a",
                created_by_user_id="user-1",
                payload=CourseOutlinePayload(course_id="course-1", lesson_count=0),
            ),
        )
    assert job_repository.list_jobs(JobListFilter()) == []


def test_claim_next_takes_oldest_due_job_then_returns_none(
    job_repository: JobRepository,
    clock,
) -> None:
    first = _outline_job(job_repository)
    clock.advance(1)
    second = _outline_job(job_repository)

    claimed_first = job_repository.claim_next(worker_id="w1", capabilities=ALL_TYPES)
    claimed_second = job_repository.claim_next(worker_id="w2", capabilities=ALL_TYPES)

    assert claimed_first is not None and claimed_first.job_id == first.job_id
    assert claimed_first.status == JobStatus.PROCESSING
    assert claimed_first.worker_id == "w1"
    assert claimed_first.started_at is not None
    assert claimed_second is not None and claimed_second.job_id == second.job_id
    assert job_repository.claim_next(worker_id="w3", capabilities=ALL_TYPES) is None


def test_claim_next_respects_capabilities(job_repository: JobRepository) -> None:
    job_repository.create(
        GenerationJobCreate(
            tenant_id="tenant-a",
            created_by_user_id="user-1",
            payload=SmeIngestionPayload(submission_id="sub-1"),
        ),
    )

    assert (
        job_repository.claim_next(worker_id="w1", capabilities={JobType.COURSE_OUTLINE}) is None
    )
    assert job_repository.claim_next(worker_id="w1", capabilities=set()) is None
    claimed = job_repository.claim_next(worker_id="w1", capabilities={JobType.SME_INGESTION})
    assert claimed is not None


def test_claim_is_exclusive(job_repository: JobRepository) -> None:
    job = _outline_job(job_repository)
    job_repository.claim(job_id=job.job_id, worker_id="w1")

    with pytest.raises(ConcurrencyConflict):
        job_repository.claim(job_id=job.job_id, worker_id="w2")
    with pytest.raises(NotFoundError):
        job_repository.claim(job_id="missing", worker_id="w2")


def test_concurrent_claim_next_hands_out_each_job_once(db_path, clock) -> None:
    seed = JobRepository(db_path, clock=clock)
    try:
        created = {_outline_job(seed, course_id=f"course-{index}").job_id for index in range(40)}
    finally:
        seed.close()
    barrier = threading.Barrier(8)
    lock = threading.Lock()
    claimed: list[str] = []
    errors: list[Exception] = []

    def _claim_until_empty(worker_id: str) -> None:
        repository = JobRepository(db_path, clock=clock)
        try:
            barrier.wait()
            while (job := repository.claim_next(worker_id=worker_id, capabilities=ALL_TYPES)):
                with lock:
                    claimed.append(job.job_id)
        except Exception as error:  # noqa: BLE001
            errors.append(error)
        finally:
            repository.close()

    threads = [
        threading.Thread(target=_claim_until_empty, args=(f"w{index}",)) for index in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    assert len(claimed) == len(set(claimed))
    assert set(claimed) == created


def test_claim_by_id_waits_for_retry_backoff(job_repository: JobRepository, clock) -> None:
    job = _outline_job(job_repository)
    job_repository.claim(job_id=job.job_id, worker_id="w1")
    outcome = job_repository.fail(
        job_id=job.job_id,
        error_message="provider timed out",
        failure_class=FailureClass.TRANSIENT_PROVIDER,
    )
    assert outcome is not None and outcome.delay_seconds == 30.0

    with pytest.raises(ConcurrencyConflict, match="backing off"):
        job_repository.claim(job_id=job.job_id, worker_id="w2")
    clock.advance(29)
    with pytest.raises(ConcurrencyConflict):
        job_repository.claim(job_id=job.job_id, worker_id="w2")
    clock.advance(1)

    claimed = job_repository.claim(job_id=job.job_id, worker_id="w2")
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.retry_count == 1


def test_progress_never_moves_backwards(job_repository: JobRepository) -> None:
    job = _outline_job(job_repository)
    with pytest.raises(InvalidStateError):
        job_repository.update_progress(job_id=job.job_id, percent=10, message="too early")

    job_repository.claim(job_id=job.job_id, worker_id="w1")
    job_repository.update_progress(job_id=job.job_id, percent=40, message="Generating")
    job_repository.update_progress(job_id=job.job_id, percent=20, message="Still generating")

    current = job_repository.get(job_id=job.job_id)
    assert current is not None
    assert current.progress_percent == 40
    assert current.progress_message == "Still generating"
    assert current.heartbeat_at is not None

    with pytest.raises(ValidationError):
        job_repository.update_progress(job_id=job.job_id, percent=101, message="overflow")


def test_complete_is_terminal_and_single_shot(job_repository: JobRepository) -> None:
    job = _outline_job(job_repository)
    job_repository.claim(job_id=job.job_id, worker_id="w1")

    assert job_repository.complete(
        job_id=job.job_id,
        result_path="/results/outline.json",
        tokens_used=120,
        message="Outline generation complete",
    )
    assert not job_repository.complete(job_id=job.job_id, result_path=None, tokens_used=0)

    current = job_repository.get(job_id=job.job_id)
    assert current is not None
    assert current.status == JobStatus.COMPLETED
    assert current.progress_percent == 100
    assert current.result_path == "/results/outline.json"
    assert current.tokens_used == 120
    assert current.completed_at is not None
    assert current.is_terminal


def test_retryable_failures_back_off_until_budget_is_spent(
    job_repository: JobRepository,
    clock,
) -> None:
    job = _outline_job(job_repository, max_retries=3)
    expected_delays = [30.0, 60.0, 120.0]

    for attempt, delay in enumerate(expected_delays, start=1):
        claimed = job_repository.claim_next(worker_id="w1", capabilities=ALL_TYPES)
        assert claimed is not None and claimed.job_id == job.job_id
        outcome = job_repository.fail(
            job_id=job.job_id,
            error_message="provider timed out",
            failure_class=FailureClass.TRANSIENT_PROVIDER,
        )
        assert outcome is not None
        assert outcome.requeued
        assert outcome.retry_count == attempt
        assert outcome.delay_seconds == delay
        assert outcome.next_attempt_at == clock.now + timedelta(seconds=delay)
        assert job_repository.claim_next(worker_id="w1", capabilities=ALL_TYPES) is None
        clock.advance(delay)

    job_repository.claim(job_id=job.job_id, worker_id="w1")
    outcome = job_repository.fail(
        job_id=job.job_id,
        error_message="provider timed out",
        failure_class=FailureClass.TRANSIENT_PROVIDER,
    )
    assert outcome is not None
    assert outcome.status == JobStatus.FAILED

    final = job_repository.get(job_id=job.job_id)
    assert final is not None
    assert final.status == JobStatus.FAILED
    assert final.retry_count == 3
    assert final.failure_class == FailureClass.TRANSIENT_PROVIDER
    assert final.error_message == "provider timed out"


def test_non_retryable_failure_is_terminal_immediately(job_repository: JobRepository) -> None:
    job = _outline_job(job_repository)
    job_repository.claim(job_id=job.job_id, worker_id="w1")

    outcome = job_repository.fail(
        job_id=job.job_id,
        error_message="course_id is required",
        failure_class=FailureClass.VALIDATION,
    )

    assert outcome is not None
    assert outcome.status == JobStatus.FAILED
    assert outcome.retry_count == 0


def test_fail_and_complete_lose_to_cancellation(job_repository: JobRepository) -> None:
    job = _outline_job(job_repository)
    job_repository.claim(job_id=job.job_id, worker_id="w1")

    cancelled = job_repository.cancel(job_id=job.job_id, tenant_id="tenant-a")

    assert cancelled.cancelled
    assert cancelled.previous_status == JobStatus.PROCESSING
    assert job_repository.is_cancelled(job_id=job.job_id)
    assert not job_repository.complete(job_id=job.job_id, result_path=None, tokens_used=0)
    assert (
        job_repository.fail(
            job_id=job.job_id,
            error_message="late failure",
            failure_class=FailureClass.TRANSIENT_PROVIDER,
        )
        is None
    )
    current = job_repository.get(job_id=job.job_id)
    assert current is not None and current.status == JobStatus.CANCELLED


def test_cancel_terminal_job_is_noop_and_tenant_scoped(job_repository: JobRepository) -> None:
    job = _outline_job(job_repository)

    first = job_repository.cancel(job_id=job.job_id, tenant_id="tenant-a")
    second = job_repository.cancel(job_id=job.job_id, tenant_id="tenant-a")

    assert first.cancelled
    assert first.previous_status == JobStatus.QUEUED
    assert not second.cancelled
    assert second.previous_status == JobStatus.CANCELLED
    with pytest.raises(NotFoundError):
        job_repository.cancel(job_id=job.job_id, tenant_id="tenant-b")


def test_reclaim_stale_requeues_then_fails_when_budget_is_spent(
    job_repository: JobRepository,
    clock,
) -> None:
    job = _outline_job(job_repository, max_retries=1)
    job_repository.claim(job_id=job.job_id, worker_id="w1")
    clock.advance(31 * 60)

    first = job_repository.reclaim_stale(timeout=timedelta(minutes=30))

    assert [item.job_id for item in first.requeued] == [job.job_id]
    assert first.failed == []
    requeued = first.requeued[0]
    assert requeued.status == JobStatus.QUEUED
    assert requeued.retry_count == 1
    assert requeued.failure_class == FailureClass.STALE_TIMEOUT
    assert requeued.worker_id is None

    job_repository.claim(job_id=job.job_id, worker_id="w2")
    clock.advance(31 * 60)
    second = job_repository.reclaim_stale(timeout=timedelta(minutes=30))

    assert second.requeued == []
    assert [item.job_id for item in second.failed] == [job.job_id]
    assert second.failed[0].status == JobStatus.FAILED


def test_reclaim_stale_spares_jobs_with_recent_heartbeat(
    job_repository: JobRepository,
    clock,
) -> None:
    job = _outline_job(job_repository)
    job_repository.claim(job_id=job.job_id, worker_id="w1")
    clock.advance(20 * 60)
    job_repository.update_progress(job_id=job.job_id, percent=40, message="Generating")
    clock.advance(20 * 60)

    result = job_repository.reclaim_stale(timeout=timedelta(minutes=30))

    assert result.requeued == []
    assert result.failed == []
    current = job_repository.get(job_id=job.job_id)
    assert current is not None and current.status == JobStatus.PROCESSING


def test_list_jobs_is_tenant_scoped_newest_first(job_repository: JobRepository, clock) -> None:
    older = _outline_job(job_repository, course_id="course-1")
    clock.advance(1)
    newer = _outline_job(job_repository, course_id="course-2")
    _outline_job(job_repository, tenant_id="tenant-b")

    jobs = job_repository.list_jobs(JobListFilter(tenant_id="tenant-a"))
    filtered = job_repository.list_jobs(JobListFilter(tenant_id="tenant-a", course_id="course-1"))

    assert [item.job_id for item in jobs] == [newer.job_id, older.job_id]
    assert [item.job_id for item in filtered] == [older.job_id]
    assert job_repository.get(job_id=older.job_id, tenant_id="tenant-b") is None


def test_create_children_is_idempotent_and_counts_siblings(job_repository: JobRepository) -> None:
    parent = _processing_parent(job_repository)
    children = [_lesson_create("tenant-a", f"lesson-{index}") for index in range(3)]

    created = job_repository.create_children(
        parent_job_id=parent.job_id,
        children=children,
        message="Generating 3 lessons...",
    )
    again = job_repository.create_children(
        parent_job_id=parent.job_id,
        children=[_lesson_create("tenant-a", "lesson-x")],
        message="Generating 1 lessons...",
    )

    assert len(created) == 3
    assert {item.job_id for item in again} == {item.job_id for item in created}
    assert all(item.parent_job_id == parent.job_id for item in created)
    refreshed = job_repository.get(job_id=parent.job_id)
    assert refreshed is not None
    assert refreshed.batch_total == 3
    assert refreshed.progress_percent == 10

    job_repository.claim(job_id=created[0].job_id, worker_id="w1")
    job_repository.complete(job_id=created[0].job_id, result_path=None, tokens_used=50)
    job_repository.cancel(job_id=created[1].job_id)
    stats = job_repository.child_stats(parent_job_id=parent.job_id)

    assert stats.total == 3
    assert stats.completed == 1
    assert stats.cancelled == 1
    assert stats.active == 1
    assert stats.tokens_used == 50
    assert not stats.all_terminal


def test_create_children_requires_processing_parent(job_repository: JobRepository) -> None:
    parent = job_repository.create(
        GenerationJobCreate(
            tenant_id="tenant-a",
            created_by_user_id="user-1",
            payload=FullCoursePayload(course_id="course-1", outline_id="outline-1"),
        ),
    )

    with pytest.raises(InvalidStateError):
        job_repository.create_children(
            parent_job_id=parent.job_id,
            children=[_lesson_create("tenant-a", "lesson-1")],
            message="Generating 1 lessons...",
        )
    with pytest.raises(ValidationError):
        job_repository.create_children(
            parent_job_id=parent.job_id,
            children=[],
            message="nothing",
        )


def test_child_must_share_parent_tenant(job_repository: JobRepository) -> None:
    parent = _processing_parent(job_repository)
    foreign = _lesson_create("tenant-b", "lesson-1")
    foreign.parent_job_id = parent.job_id

    with pytest.raises(ValidationError):
        job_repository.create(foreign)


def test_finalize_parent_happens_once_and_reclaim_skips_parents(
    job_repository: JobRepository,
    clock,
) -> None:
    parent = _processing_parent(job_repository)
    job_repository.create_children(
        parent_job_id=parent.job_id,
        children=[_lesson_create("tenant-a", "lesson-1")],
        message="Generating 1 lessons...",
    )
    clock.advance(2 * 3600)

    reclaimed = job_repository.reclaim_stale(timeout=timedelta(minutes=30))
    assert parent.job_id not in {item.job_id for item in reclaimed.requeued + reclaimed.failed}

    assert job_repository.finalize_parent(
        parent_job_id=parent.job_id,
        status=JobStatus.COMPLETED,
        message="All lessons generated successfully",
        tokens_used=10,
    )
    assert not job_repository.finalize_parent(
        parent_job_id=parent.job_id,
        status=JobStatus.FAILED,
        message="late",
        tokens_used=0,
    )
    final = job_repository.get(job_id=parent.job_id)
    assert final is not None
    assert final.status == JobStatus.COMPLETED
    assert final.progress_percent == 100


def test_children_cannot_fan_out_or_adopt_children(job_repository: JobRepository) -> None:
    parent = _processing_parent(job_repository)
    child = job_repository.create_children(
        parent_job_id=parent.job_id,
        children=[_lesson_create("tenant-a", "lesson-1")],
        message="Generating 1 lessons...",
    )[0]
    grandchild = _lesson_create("tenant-a", "lesson-2")
    grandchild.parent_job_id = child.job_id

    with pytest.raises(ValidationError, match="cannot fan out"):
        job_repository.create_children(
            parent_job_id=child.job_id,
            children=[_lesson_create("tenant-a", "lesson-3")],
            message="Generating 1 lessons...",
        )
    with pytest.raises(ValidationError):
        job_repository.create(grandchild)
    assert len(job_repository.list_children(parent_job_id=child.job_id)) == 0
