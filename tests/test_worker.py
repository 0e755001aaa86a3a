from __future__ import annotations

import signal

import allure
import pytest

from coursegen.jobs.models import JobStatus
from coursegen.jobs.queue import QueuedTask, TaskQueue, TaskStatus
from coursegen.jobs.services import RequestContext
from coursegen.jobs.worker import TaskResult, Worker, WorkerPool, stop_signal_handlers
from coursegen.runtime import Runtime

pytestmark = [
    allure.epic("Workers"),
    allure.feature("Delivery Loop"),
]


class RecordingHandler:
    def __init__(self, result: TaskResult | None = None, error: Exception | None = None) -> None:
        self.result = result or TaskResult()
        self.error = error
        self.seen: list[str] = []

    def handle(self, task: QueuedTask, *, worker_id: str) -> TaskResult:
        self.seen.append(f"{worker_id}:{task.payload.get('n')}")
        if self.error is not None:
            raise self.error
        return self.result


def _worker(task_queue: TaskQueue, handler: RecordingHandler) -> Worker:
    return Worker(worker_id="w1", queue=task_queue, task_handlers={"demo": handler})


def test_run_loop_processes_until_idle(task_queue: TaskQueue) -> None:
    handler = RecordingHandler()
    for n in range(3):
        task_queue.enqueue("demo", {"n": n})

    summary = _worker(task_queue, handler).run_loop(install_signal_handlers=False)

    assert summary.processed == 3
    assert summary.succeeded == 3
    assert summary.idle_polls == 1
    assert sorted(handler.seen) == ["w1:0", "w1:1", "w1:2"]
    assert task_queue.stats() == {"ready": 0, "leased": 0, "dead": 0}


def test_run_loop_honours_max_tasks(task_queue: TaskQueue) -> None:
    handler = RecordingHandler()
    for n in range(3):
        task_queue.enqueue("demo", {"n": n})

    summary = _worker(task_queue, handler).run_loop(max_tasks=2, install_signal_handlers=False)

    assert summary.processed == 2
    assert task_queue.stats()["ready"] == 1


def test_stopped_worker_does_not_dequeue(task_queue: TaskQueue) -> None:
    handler = RecordingHandler()
    task_queue.enqueue("demo", {"n": 1})
    worker = _worker(task_queue, handler)

    worker.request_stop("test")

    assert worker.run_once().idle_polls == 1
    assert worker.run_loop(install_signal_handlers=False).processed == 0
    assert handler.seen == []


def test_raising_handler_nacks_delivery(task_queue: TaskQueue) -> None:
    created = task_queue.enqueue("demo", {"n": 1})
    worker = _worker(task_queue, RecordingHandler(error=RuntimeError("boom")))

    summary = worker.run_once()

    assert summary.retried == 1
    task = task_queue.get(task_id=created.task_id)
    assert task is not None
    assert task.status == TaskStatus.READY
    assert task.last_error == "RuntimeError: boom"


def test_nack_result_delays_redelivery(task_queue: TaskQueue, clock) -> None:
    task_queue.enqueue("demo", {"n": 1})
    handler = RecordingHandler(result=TaskResult(ack=False, error="later", retry_delay_seconds=60))
    worker = _worker(task_queue, handler)

    assert worker.run_once().retried == 1
    assert worker.run_once().idle_polls == 1
    clock.advance(60)
    assert worker.run_once().processed == 1


def test_stop_signal_handlers_route_and_restore() -> None:
    received: list[str] = []
    original = signal.getsignal(signal.SIGTERM)

    with stop_signal_handlers(received.append):
        installed = signal.getsignal(signal.SIGTERM)
        assert callable(installed)
        installed(signal.SIGTERM, None)

    assert received == ["SIGTERM"]
    assert signal.getsignal(signal.SIGTERM) == original


def test_worker_pool_requires_workers() -> None:
    with pytest.raises(ValueError):
        WorkerPool([])


def test_worker_pool_build_names_workers(runtime: Runtime) -> None:
    pool = runtime.worker_pool(size=3, worker_prefix="gen")

    assert [worker.worker_id for worker in pool.workers] == ["gen-1", "gen-2", "gen-3"]
    assert len(pool.capabilities) == 5


def test_worker_pool_runs_jobs_to_completion(
    runtime: Runtime,
    caller: RequestContext,
) -> None:
    service = runtime.service()
    jobs = [
        service.create_outline_job(caller, course_id=f"course-{index}", lesson_count=2)
        for index in range(3)
    ]

    result = runtime.worker_pool(size=2).run(shutdown_deadline_seconds=5, max_idle_polls=1)

    assert result.abandoned_workers == []
    assert result.summary.succeeded == 3
    for job in jobs:
        final = runtime.jobs.get(job_id=job.job_id)
        assert final is not None and final.status == JobStatus.COMPLETED
