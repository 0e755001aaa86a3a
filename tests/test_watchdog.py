from __future__ import annotations

from datetime import timedelta

import allure

from coursegen.billing.provisioning import CLEANUP_TASK_TYPE, RECONCILE_TASK_TYPE
from coursegen.jobs.models import (
    CourseOutlinePayload,
    FailureClass,
    GenerationJobCreate,
    JobStatus,
)
from coursegen.jobs.queue import job_task_type
from coursegen.jobs.services import RequestContext
from coursegen.jobs.watchdog import MaintenanceScheduler, StaleJobWatchdog
from coursegen.notifications.models import NotificationType
from coursegen.runtime import Runtime

pytestmark = [
    allure.epic("Workers"),
    allure.feature("Stale Job Recovery"),
]

STALE_TIMEOUT = timedelta(minutes=30)


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def _watchdog(runtime: Runtime) -> StaleJobWatchdog:
    return StaleJobWatchdog(
        repository=runtime.jobs,
        queue=runtime.queue,
        stale_timeout=STALE_TIMEOUT,
        batch=runtime.batch,
        fanout=runtime.fanout,
    )


def _claimed_job(runtime: Runtime, *, max_retries: int = 3):
    job = runtime.jobs.create(
        GenerationJobCreate(
            tenant_id="tenant-a",
            created_by_user_id="user-1",
            payload=CourseOutlinePayload(course_id="course-1"),
            max_retries=max_retries,
        ),
    )
    return runtime.jobs.claim(job_id=job.job_id, worker_id="crashed-worker")


def test_watchdog_requeues_stale_job_and_enqueues_delivery(runtime: Runtime, clock) -> None:
    job = _claimed_job(runtime)
    clock.advance(STALE_TIMEOUT.total_seconds() + 1)

    result = _watchdog(runtime).run_once()

    assert [item.job_id for item in result.requeued] == [job.job_id]
    assert result.failed == []
    reclaimed = runtime.jobs.get(job_id=job.job_id)
    assert reclaimed is not None
    assert reclaimed.status == JobStatus.QUEUED
    assert reclaimed.retry_count == 1
    assert reclaimed.failure_class == FailureClass.STALE_TIMEOUT
    assert reclaimed.worker_id is None
    tasks = runtime.queue.list_tasks(task_type=job_task_type(job.job_type))
    assert [task.payload["job_id"] for task in tasks] == [job.job_id]

    assert runtime.worker("w2").run_once().succeeded == 1


def test_watchdog_fails_stale_job_without_budget(runtime: Runtime, clock) -> None:
    job = _claimed_job(runtime, max_retries=0)
    clock.advance(STALE_TIMEOUT.total_seconds() + 1)

    result = _watchdog(runtime).run_once()

    assert [item.job_id for item in result.failed] == [job.job_id]
    final = runtime.jobs.get(job_id=job.job_id)
    assert final is not None and final.status == JobStatus.FAILED
    types = {
        item.notification_type
        for item in runtime.notifications.list_for_user(tenant_id="tenant-a", user_id="user-1")
    }
    assert NotificationType.GENERATION_FAILED in types


def test_watchdog_ignores_fresh_jobs(runtime: Runtime, clock) -> None:
    _claimed_job(runtime)
    clock.advance(60)

    result = _watchdog(runtime).run_once()

    assert result.requeued == []
    assert result.failed == []


def _fanned_out_parent(runtime: Runtime, caller: RequestContext, *, lessons: int = 2):
    service = runtime.service()
    service.create_outline_job(caller, course_id="course-1", topic="Algebra", lesson_count=lessons)
    worker = runtime.worker("w1")
    assert worker.run_once().succeeded == 1
    outline = runtime.content.latest_outline(tenant_id="tenant-a", course_id="course-1")
    assert outline is not None
    approval = service.approve_outline(caller, outline_id=outline.outline_id)
    assert approval.parent_job is not None
    assert worker.run_once().deferred == 1
    return approval.parent_job


def test_watchdog_finalizes_parent_left_waiting_by_lost_worker(
    runtime: Runtime,
    caller: RequestContext,
) -> None:
    parent = _fanned_out_parent(runtime, caller)
    first, second = runtime.jobs.list_children(parent_job_id=parent.job_id)
    watchdog = _watchdog(runtime)

    runtime.jobs.claim(job_id=first.job_id, worker_id="crashed-worker")
    assert runtime.jobs.complete(job_id=first.job_id, result_path=None, tokens_used=7)
    assert watchdog.run_once().finalized_parents == []
    assert [item.job_id for item in runtime.jobs.list_waiting_parents()] == [parent.job_id]

    runtime.jobs.claim(job_id=second.job_id, worker_id="crashed-worker")
    assert runtime.jobs.complete(job_id=second.job_id, result_path=None, tokens_used=5)
    result = watchdog.run_once()

    assert [item.job_id for item in result.finalized_parents] == [parent.job_id]
    final = runtime.jobs.get(job_id=parent.job_id)
    assert final is not None
    assert final.status == JobStatus.COMPLETED
    assert final.progress_percent == 100
    assert final.tokens_used == 12
    assert runtime.jobs.list_waiting_parents() == []
    assert watchdog.run_once().finalized_parents == []
    types = {
        item.notification_type
        for item in runtime.notifications.list_for_user(tenant_id="tenant-a", user_id="user-1")
    }
    assert NotificationType.GENERATION_COMPLETE in types


def test_scheduler_runs_activities_on_their_intervals(runtime: Runtime) -> None:
    monotonic = FakeMonotonic()
    scheduler = MaintenanceScheduler(
        watchdog=_watchdog(runtime),
        queue=runtime.queue,
        watchdog_interval_seconds=60,
        reconcile_interval_seconds=900,
        cleanup_interval_seconds=3600,
        monotonic=monotonic,
    )

    first = scheduler.tick()
    assert (first.reconcile_enqueued, first.cleanup_enqueued) == (1, 1)

    monotonic.value += 30
    idle = scheduler.tick()
    assert (idle.reconcile_enqueued, idle.cleanup_enqueued) == (0, 0)

    monotonic.value += 900
    later = scheduler.tick()
    assert (later.reconcile_enqueued, later.cleanup_enqueued) == (1, 0)

    assert len(runtime.queue.list_tasks(task_type=RECONCILE_TASK_TYPE)) == 2
    assert len(runtime.queue.list_tasks(task_type=CLEANUP_TASK_TYPE)) == 1


def test_scheduler_run_loop_stops_after_max_ticks(runtime: Runtime) -> None:
    summary = runtime.scheduler().run_loop(max_ticks=1)

    assert summary.ticks == 1
    assert summary.reconcile_enqueued == 1
    assert summary.cleanup_enqueued == 1


def test_maintenance_tasks_are_consumed_by_workers(runtime: Runtime) -> None:
    runtime.scheduler().tick()

    summary = runtime.worker("w1").run_loop(install_signal_handlers=False)

    assert summary.succeeded == 2
    assert runtime.queue.stats() == {"ready": 0, "leased": 0, "dead": 0}
