"""Stale-job reclamation and periodic maintenance scheduling."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from coursegen.billing.provisioning import CLEANUP_TASK_TYPE, RECONCILE_TASK_TYPE
from coursegen.jobs.batch import BatchCoordinator
from coursegen.jobs.errors import CoursegenError
from coursegen.jobs.models import ReclaimResult
from coursegen.jobs.queue import CRITICAL_QUEUE, TaskQueue, enqueue_job
from coursegen.jobs.repository import JobRepository
from coursegen.jobs.worker import stop_signal_handlers
from coursegen.notifications.fanout import JobMilestone, NotificationFanout

logger = logging.getLogger(__name__)


class StaleJobWatchdog:
    """Requeues or fails PROCESSING jobs whose worker stopped heartbeating."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        queue: TaskQueue,
        stale_timeout: timedelta,
        batch: BatchCoordinator | None = None,
        fanout: NotificationFanout | None = None,
        task_max_retries: int = 3,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.stale_timeout = stale_timeout
        self.batch = batch
        self.fanout = fanout
        self.task_max_retries = task_max_retries

    def run_once(self) -> ReclaimResult:
        result = self.repository.reclaim_stale(timeout=self.stale_timeout)
        for job in result.requeued:
            enqueue_job(self.queue, job, max_retries=self.task_max_retries)
        for job in result.failed:
            try:
                if job.parent_job_id is not None:
                    if self.batch is not None:
                        self.batch.on_child_terminal(job)
                elif self.fanout is not None:
                    self.fanout.notify_job_milestone(job, JobMilestone.FAILED)
            except (CoursegenError, SQLAlchemyError):
                logger.exception("Post-reclaim handling failed for job %s", job.job_id)
        if self.batch is not None:
            self._finalize_waiting_parents(self.batch, result)
        if result.requeued or result.failed or result.finalized_parents:
            logger.info(
                "Reclaimed stale jobs: requeued=%d failed=%d finalized_parents=%d",
                len(result.requeued),
                len(result.failed),
                len(result.finalized_parents),
            )
        return result

    def _finalize_waiting_parents(self, batch: BatchCoordinator, result: ReclaimResult) -> None:
        """Catch parents whose last child finished without running aggregation."""

        for parent in self.repository.list_waiting_parents():
            try:
                finalized = batch.reconcile_parent(parent.job_id)
            except (CoursegenError, SQLAlchemyError):
                logger.exception("Batch reconciliation failed for parent %s", parent.job_id)
                continue
            if finalized is not None:
                logger.warning(
                    "Finalized parent %s -> %s from the watchdog",
                    finalized.job_id,
                    finalized.status.value,
                )
                result.finalized_parents.append(finalized)


@dataclass(slots=True)
class MaintenanceSummary:
    ticks: int = 0
    requeued: int = 0
    failed: int = 0
    finalized_parents: int = 0
    reconcile_enqueued: int = 0
    cleanup_enqueued: int = 0


class MaintenanceScheduler:
    """Runs the watchdog and schedules billing maintenance on fixed intervals."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        watchdog: StaleJobWatchdog,
        queue: TaskQueue,
        watchdog_interval_seconds: float = 60.0,
        reconcile_interval_seconds: float = 900.0,
        cleanup_interval_seconds: float = 3600.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.watchdog = watchdog
        self.queue = queue
        self.watchdog_interval_seconds = watchdog_interval_seconds
        self.reconcile_interval_seconds = reconcile_interval_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._monotonic = monotonic
        self._next_watchdog: float | None = None
        self._next_reconcile: float | None = None
        self._next_cleanup: float | None = None
        self._stop = threading.Event()

    def request_stop(self, signal_name: str = "request") -> None:
        logger.info("Maintenance scheduler stopping (%s)", signal_name)
        self._stop.set()

    def tick(self) -> MaintenanceSummary:
        """Run every activity that is due; the first tick runs all of them."""

        summary = MaintenanceSummary(ticks=1)
        now = self._monotonic()
        if self._next_watchdog is None or now >= self._next_watchdog:
            result = self.watchdog.run_once()
            summary.requeued = len(result.requeued)
            summary.failed = len(result.failed)
            summary.finalized_parents = len(result.finalized_parents)
            self._next_watchdog = now + self.watchdog_interval_seconds
        if self._next_reconcile is None or now >= self._next_reconcile:
            self.queue.enqueue(RECONCILE_TASK_TYPE, {}, max_retries=0, queue=CRITICAL_QUEUE)
            summary.reconcile_enqueued = 1
            self._next_reconcile = now + self.reconcile_interval_seconds
        if self._next_cleanup is None or now >= self._next_cleanup:
            self.queue.enqueue(CLEANUP_TASK_TYPE, {}, max_retries=0)
            summary.cleanup_enqueued = 1
            self._next_cleanup = now + self.cleanup_interval_seconds
        return summary

    def run_loop(self, *, max_ticks: int | None = None) -> MaintenanceSummary:
        aggregate = MaintenanceSummary()
        with stop_signal_handlers(self.request_stop):
            while not self._stop.is_set():
                if max_ticks is not None and aggregate.ticks >= max_ticks:
                    break
                summary = self.tick()
                aggregate.ticks += summary.ticks
                aggregate.requeued += summary.requeued
                aggregate.failed += summary.failed
                aggregate.finalized_parents += summary.finalized_parents
                aggregate.reconcile_enqueued += summary.reconcile_enqueued
                aggregate.cleanup_enqueued += summary.cleanup_enqueued
                if max_ticks is not None and aggregate.ticks >= max_ticks:
                    break
                self._stop.wait(min(1.0, self.watchdog_interval_seconds))
        return aggregate
