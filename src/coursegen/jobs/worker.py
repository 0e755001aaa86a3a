"""Queue workers that deliver tasks to registered handlers."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Protocol

from coursegen.jobs.errors import ConcurrencyConflict, NotFoundError
from coursegen.jobs.models import JobType
from coursegen.jobs.orchestrator import JobRunner, RunOutcome
from coursegen.jobs.queue import QueuedTask, TaskQueue, job_task_type
from coursegen.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    cancelled: int = 0
    deferred: int = 0
    skipped: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.cancelled += other.cancelled
        self.deferred += other.deferred
        self.skipped += other.skipped
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class TaskResult:
    """Handler verdict for one delivery: ack removes the task, nack redelivers."""

    ack: bool = True
    error: str | None = None
    retry_delay_seconds: float = 0.0
    outcome: RunOutcome | None = None


class TaskHandler(Protocol):
    def handle(self, task: QueuedTask, *, worker_id: str) -> TaskResult:
        """Process one delivery."""


class JobTaskHandler:
    """Claims the job referenced by a delivery and runs it.

    A task whose job is already claimed, finished or missing is acked
    without side effects, so duplicate deliveries are harmless.
    """

    def __init__(self, *, repository: JobRepository, runner: JobRunner) -> None:
        self.repository = repository
        self.runner = runner

    def handle(self, task: QueuedTask, *, worker_id: str) -> TaskResult:
        job_id = task.payload.get("job_id")
        if not isinstance(job_id, str) or not job_id:
            logger.error("Task %s has no job_id; dropping it", task.task_id)
            return TaskResult(ack=True, outcome=RunOutcome.SKIPPED)
        try:
            job = self.repository.claim(job_id=job_id, worker_id=worker_id)
        except (ConcurrencyConflict, NotFoundError) as error:
            logger.debug("Skipping delivery %s for job %s: %s", task.task_id, job_id, error)
            return TaskResult(ack=True, outcome=RunOutcome.SKIPPED)
        return TaskResult(ack=True, outcome=self.runner.execute(job))


def job_task_handlers(
    *,
    repository: JobRepository,
    runner: JobRunner,
) -> dict[str, TaskHandler]:
    handler = JobTaskHandler(repository=repository, runner=runner)
    return {job_task_type(job_type): handler for job_type in runner.capabilities}


@contextmanager
def stop_signal_handlers(request_stop: Callable[[str], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``request_stop`` for the duration of the block."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        request_stop(name)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return

    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


class Worker:
    """Consumes queue deliveries and dispatches them by task type.

    When the queue is empty and a job runner is attached, the worker also
    claims due QUEUED jobs directly, which covers jobs whose enqueue failed.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        worker_id: str,
        queue: TaskQueue,
        task_handlers: Mapping[str, TaskHandler],
        repository: JobRepository | None = None,
        runner: JobRunner | None = None,
        poll_interval_seconds: float = 1.0,
        visibility_timeout_seconds: int = 600,
        dequeue_wait_seconds: float = 0.0,
    ) -> None:
        self.worker_id = worker_id
        self.queue = queue
        self.task_handlers = dict(task_handlers)
        self.repository = repository
        self.runner = runner
        self.poll_interval_seconds = poll_interval_seconds
        self.visibility_timeout = timedelta(seconds=visibility_timeout_seconds)
        self.dequeue_wait_seconds = dequeue_wait_seconds
        self.summary = WorkerRunSummary()
        self._stop = threading.Event()
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, signal_name: str = "request") -> None:
        if not self._stop.is_set():
            logger.info("Worker %s stopping (%s)", self.worker_id, signal_name)
        self._stop_signal_name = signal_name
        self._stop.set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one delivery (or one directly claimed job)."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        task = self.queue.dequeue(
            task_types=self.task_handlers,
            consumer_id=self.worker_id,
            visibility_timeout=self.visibility_timeout,
            wait_seconds=self.dequeue_wait_seconds,
            stop_requested=lambda: self.stop_requested,
        )
        if task is not None:
            summary.processed = 1
            self._deliver(task, summary)
            return summary

        if self.runner is not None and self.repository is not None:
            job = self.repository.claim_next(
                worker_id=self.worker_id,
                capabilities=self.runner.capabilities,
            )
            if job is not None:
                summary.processed = 1
                _count_outcome(summary, self.runner.execute(job))
                return summary

        summary.idle_polls = 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
        install_signal_handlers: bool = True,
    ) -> WorkerRunSummary:
        """Run until stopped, idle for ``max_idle_polls`` polls, or ``max_tasks`` done.

        ``max_idle_polls=None`` keeps polling until a stop is requested.
        """

        aggregate = WorkerRunSummary()
        self.summary = aggregate
        consecutive_idle = 0
        guard = (
            stop_signal_handlers(self.request_stop)
            if install_signal_handlers
            else _no_signal_handlers()
        )
        with guard:
            while True:
                if self.stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _deliver(self, task: QueuedTask, summary: WorkerRunSummary) -> None:
        handler = self.task_handlers[task.task_type]
        try:
            result = handler.handle(task, worker_id=self.worker_id)
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s (%s) handler raised", task.task_id, task.task_type)
            result = TaskResult(ack=False, error=f"{type(error).__name__}: {error}")

        if result.ack:
            self.queue.ack(task_id=task.task_id)
        else:
            self.queue.nack(
                task_id=task.task_id,
                error=result.error or "handler requested redelivery",
                delay_seconds=result.retry_delay_seconds,
            )

        if result.outcome is not None:
            _count_outcome(summary, result.outcome)
        elif result.ack:
            summary.succeeded = 1
        else:
            summary.retried = 1

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self.stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))


def _count_outcome(summary: WorkerRunSummary, outcome: RunOutcome) -> None:
    if outcome == RunOutcome.COMPLETED:
        summary.succeeded = 1
    elif outcome == RunOutcome.FAILED:
        summary.failed = 1
    elif outcome == RunOutcome.RETRY_SCHEDULED:
        summary.retried = 1
    elif outcome == RunOutcome.CANCELLED:
        summary.cancelled = 1
    elif outcome == RunOutcome.DEFERRED:
        summary.deferred = 1
    else:
        summary.skipped = 1


@contextmanager
def _no_signal_handlers() -> Iterator[None]:
    yield


@dataclass(slots=True)
class PoolShutdownSummary:
    """Counters for a pool run plus workers still busy at the deadline."""

    summary: WorkerRunSummary = field(default_factory=WorkerRunSummary)
    abandoned_workers: list[str] = field(default_factory=list)


class WorkerPool:
    """Bounded set of worker threads with deadline-based shutdown.

    Workers still inside a handler when the deadline passes are abandoned;
    their jobs stay PROCESSING and are reclaimed by the stale-job watchdog.
    """

    def __init__(self, workers: list[Worker]) -> None:
        if not workers:
            raise ValueError("WorkerPool requires at least one worker.")
        self.workers = workers
        self._threads: list[threading.Thread] = []
        self._stop = threading.Event()

    @classmethod
    def build(
        cls,
        *,
        size: int,
        worker_factory: Callable[[str], Worker],
        worker_prefix: str = "worker",
    ) -> WorkerPool:
        return cls([worker_factory(f"{worker_prefix}-{index}") for index in range(1, size + 1)])

    @property
    def capabilities(self) -> frozenset[JobType]:
        types: set[JobType] = set()
        for worker in self.workers:
            if worker.runner is not None:
                types.update(worker.runner.capabilities)
        return frozenset(types)

    def start(self, *, max_idle_polls: int | None = None) -> None:
        if self._threads:
            raise RuntimeError("WorkerPool already started.")
        for worker in self.workers:
            thread = threading.Thread(
                target=worker.run_loop,
                kwargs={"max_idle_polls": max_idle_polls, "install_signal_handlers": False},
                name=worker.worker_id,
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Started %d workers", len(self._threads))

    def request_stop(self, signal_name: str = "request") -> None:
        self._stop.set()
        for worker in self.workers:
            worker.request_stop(signal_name)

    def shutdown(self, *, deadline_seconds: float) -> PoolShutdownSummary:
        """Stop dispatching, then wait up to ``deadline_seconds`` for in-flight work."""

        self.request_stop("shutdown")
        deadline = time.monotonic() + max(0.0, deadline_seconds)
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        result = PoolShutdownSummary()
        for worker, thread in zip(self.workers, self._threads, strict=False):
            result.summary.add(worker.summary)
            if thread.is_alive():
                result.abandoned_workers.append(worker.worker_id)
        if result.abandoned_workers:
            logger.warning(
                "Shutdown deadline passed with busy workers: %s",
                ", ".join(result.abandoned_workers),
            )
        return result

    def run(
        self,
        *,
        shutdown_deadline_seconds: float,
        max_idle_polls: int | None = None,
    ) -> PoolShutdownSummary:
        """Run workers in the foreground until they go idle or a signal arrives."""

        with stop_signal_handlers(self.request_stop):
            self.start(max_idle_polls=max_idle_polls)
            while not self._stop.is_set() and any(thread.is_alive() for thread in self._threads):
                self._stop.wait(0.2)
            return self.shutdown(deadline_seconds=shutdown_deadline_seconds)
