from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from coursegen.jobs.errors import NotFoundError, ValidationError
from coursegen.jobs.models import CourseOutlinePayload, GenerationJobCreate, JobType
from coursegen.jobs.queue import (
    CRITICAL_QUEUE,
    TaskQueue,
    TaskStatus,
    enqueue_job,
    job_task_type,
)
from coursegen.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Delivery Guarantees"),
]

LEASE = timedelta(minutes=10)


def _dequeue(queue: TaskQueue, *task_types: str, consumer_id: str = "c1"):
    return queue.dequeue(task_types=task_types, consumer_id=consumer_id, visibility_timeout=LEASE)


def test_enqueue_and_dequeue_leases_task(task_queue: TaskQueue) -> None:
    created = task_queue.enqueue("demo", {"value": 1})

    leased = _dequeue(task_queue, "demo")

    assert leased is not None
    assert leased.task_id == created.task_id
    assert leased.payload == {"value": 1}
    assert leased.status == TaskStatus.LEASED
    assert leased.deliveries == 1
    assert leased.consumer_id == "c1"
    assert _dequeue(task_queue, "demo", consumer_id="c2") is None


def test_dequeue_filters_by_task_type(task_queue: TaskQueue) -> None:
    task_queue.enqueue("other", {})

    assert _dequeue(task_queue, "demo") is None
    assert task_queue.dequeue(task_types=[], consumer_id="c1", visibility_timeout=LEASE) is None


def test_enqueue_rejects_bad_input(task_queue: TaskQueue) -> None:
    with pytest.raises(ValidationError):
        task_queue.enqueue("", {})
    with pytest.raises(ValidationError):
        task_queue.enqueue("demo", {}, max_retries=-1)


def test_ack_removes_task(task_queue: TaskQueue) -> None:
    task_queue.enqueue("demo", {})
    leased = _dequeue(task_queue, "demo")
    assert leased is not None

    assert task_queue.ack(task_id=leased.task_id)
    assert task_queue.get(task_id=leased.task_id) is None
    assert not task_queue.ack(task_id=leased.task_id)


def test_delayed_task_is_invisible_until_due(task_queue: TaskQueue, clock) -> None:
    task_queue.enqueue("demo", {}, delay_seconds=60)

    assert _dequeue(task_queue, "demo") is None
    clock.advance(60)
    assert _dequeue(task_queue, "demo") is not None


def test_expired_lease_is_redelivered(task_queue: TaskQueue, clock) -> None:
    task_queue.enqueue("demo", {})
    first = _dequeue(task_queue, "demo", consumer_id="crashed")
    assert first is not None

    clock.advance(LEASE.total_seconds() - 1)
    assert _dequeue(task_queue, "demo", consumer_id="c2") is None
    clock.advance(1)
    second = _dequeue(task_queue, "demo", consumer_id="c2")

    assert second is not None
    assert second.task_id == first.task_id
    assert second.deliveries == 2
    assert second.consumer_id == "c2"


def test_nack_redelivers_then_dead_letters(task_queue: TaskQueue, clock) -> None:
    created = task_queue.enqueue("demo", {}, max_retries=1)

    first = _dequeue(task_queue, "demo")
    assert first is not None
    assert task_queue.nack(task_id=first.task_id, error="boom", delay_seconds=5) == TaskStatus.READY
    assert _dequeue(task_queue, "demo") is None
    clock.advance(5)

    second = _dequeue(task_queue, "demo")
    assert second is not None and second.deliveries == 2
    assert task_queue.nack(task_id=second.task_id, error="boom again") == TaskStatus.DEAD

    dead = task_queue.list_dead_letters()
    assert [item.task_id for item in dead] == [created.task_id]
    assert dead[0].last_error == "boom again"
    assert dead[0].dead_at is not None
    assert _dequeue(task_queue, "demo") is None


def test_lease_expiry_without_budget_dead_letters(task_queue: TaskQueue, clock) -> None:
    task_queue.enqueue("demo", {}, max_retries=0)
    assert _dequeue(task_queue, "demo") is not None
    clock.advance(LEASE.total_seconds())

    assert _dequeue(task_queue, "demo") is None
    assert task_queue.stats()[TaskStatus.DEAD.value] == 1


def test_requeue_dead_restores_fresh_budget(task_queue: TaskQueue) -> None:
    task_queue.enqueue("demo", {}, max_retries=0)
    leased = _dequeue(task_queue, "demo")
    assert leased is not None
    task_queue.nack(task_id=leased.task_id, error="boom")

    restored = task_queue.requeue_dead(task_id=leased.task_id)

    assert restored.status == TaskStatus.READY
    assert restored.deliveries == 0
    assert _dequeue(task_queue, "demo") is not None
    with pytest.raises(NotFoundError):
        task_queue.requeue_dead(task_id=leased.task_id)


def test_critical_queue_is_served_first(task_queue: TaskQueue) -> None:
    task_queue.enqueue("demo", {"order": "default"})
    task_queue.enqueue("demo", {"order": "critical"}, queue=CRITICAL_QUEUE)

    first = _dequeue(task_queue, "demo")

    assert first is not None
    assert first.payload == {"order": "critical"}


def test_stats_count_every_status(task_queue: TaskQueue) -> None:
    task_queue.enqueue("demo", {})
    task_queue.enqueue("demo", {})
    _dequeue(task_queue, "demo")

    assert task_queue.stats() == {"ready": 1, "leased": 1, "dead": 0}


def test_enqueue_job_carries_only_references(
    task_queue: TaskQueue,
    job_repository: JobRepository,
) -> None:
    job = job_repository.create(
        GenerationJobCreate(
            tenant_id="tenant-a",
            created_by_user_id="user-1",
            payload=CourseOutlinePayload(course_id="course-1"),
        ),
    )

    task = enqueue_job(task_queue, job, max_retries=2)

    assert task is not None
    assert task.task_type == job_task_type(JobType.COURSE_OUTLINE)
    assert task.payload == {"job_id": job.job_id, "job_type": "COURSE_OUTLINE"}
    assert task.max_retries == 2
