"""Controllers for job, worker and queue CLI commands."""

from __future__ import annotations

import json
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from coursegen.config import Settings
from coursegen.jobs.errors import NotFoundError
from coursegen.jobs.models import GenerationJobView, JobListFilter, JobStatus, JobType
from coursegen.jobs.services import RequestContext
from coursegen.runtime import Runtime, open_runtime
from coursegen.storage.alembic_runner import upgrade_head


@dataclass(slots=True)
class CallerCommand:
    """Identity shared by tenant-scoped commands."""

    db_path: Path | None
    tenant_id: str
    user_id: str

    @property
    def context(self) -> RequestContext:
        return RequestContext(tenant_id=self.tenant_id, user_id=self.user_id)


@dataclass(slots=True)
class DbInitCommand:
    db_path: Path | None


@dataclass(slots=True)
class IngestJobCommand(CallerCommand):
    submission_id: str = ""
    sme_task_id: str | None = None


@dataclass(slots=True)
class OutlineJobCommand(CallerCommand):
    course_id: str = ""
    topic: str = ""
    target_audience: str = ""
    lesson_count: int = 5


@dataclass(slots=True)
class LessonJobCommand(CallerCommand):
    course_id: str = ""
    lesson_id: str = ""


@dataclass(slots=True)
class RegenJobCommand(CallerCommand):
    course_id: str = ""
    lesson_id: str = ""
    component_id: str = ""
    modification_prompt: str = ""


@dataclass(slots=True)
class GenerateAllCommand(CallerCommand):
    outline_id: str = ""


@dataclass(slots=True)
class ApproveOutlineCommand(CallerCommand):
    outline_id: str = ""
    generate_lessons: bool = True


@dataclass(slots=True)
class ListJobsCommand(CallerCommand):
    job_type: str | None = None
    status: str | None = None
    course_id: str | None = None
    limit: int = 50


@dataclass(slots=True)
class JobIdCommand(CallerCommand):
    job_id: str = ""
    as_json: bool = False


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    concurrency: int | None
    once: bool
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class WatchdogRunCommand:
    db_path: Path | None
    once: bool
    max_ticks: int | None = None


@dataclass(slots=True)
class QueueCommand:
    db_path: Path | None
    task_id: str | None = None
    limit: int = 50


class JobsCliController:
    """Coordinates job submission, inspection, workers and queue CLI operations."""

    def init_db(self, command: DbInitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        upgrade_head(settings.db_path)
        return [f"Database ready: {settings.db_path}"]

    def submit_ingestion(self, command: IngestJobCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            job = runtime.service().create_ingestion_job(
                command.context,
                submission_id=command.submission_id,
                sme_task_id=command.sme_task_id,
            )
        return [_created_line(job)]

    def submit_outline(self, command: OutlineJobCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            job = runtime.service().create_outline_job(
                command.context,
                course_id=command.course_id,
                topic=command.topic,
                target_audience=command.target_audience,
                lesson_count=command.lesson_count,
            )
        return [_created_line(job)]

    def submit_lesson(self, command: LessonJobCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            job = runtime.service().create_lesson_job(
                command.context,
                course_id=command.course_id,
                lesson_id=command.lesson_id,
            )
        return [_created_line(job)]

    def submit_regen(self, command: RegenJobCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            job = runtime.service().create_component_regen_job(
                command.context,
                course_id=command.course_id,
                lesson_id=command.lesson_id,
                component_id=command.component_id,
                modification_prompt=command.modification_prompt,
            )
        return [_created_line(job)]

    def generate_all(self, command: GenerateAllCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            job = runtime.service().generate_all_lessons(
                command.context,
                outline_id=command.outline_id,
            )
        return [_created_line(job)]

    def approve_outline(self, command: ApproveOutlineCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            approval = runtime.service().approve_outline(
                command.context,
                outline_id=command.outline_id,
                generate_lessons=command.generate_lessons,
            )
        outline = approval.outline
        lines = [
            f"Outline approved: outline_id={outline.outline_id} "
            f"course_id={outline.course_id} lessons={len(outline.lessons)}",
        ]
        if approval.parent_job is not None:
            lines.append(_created_line(approval.parent_job))
        return lines

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        job_filter = JobListFilter(
            job_type=_parse_job_type(command.job_type),
            status=_parse_status(command.status),
            course_id=command.course_id,
            limit=command.limit,
        )
        with _runtime(command.db_path) as runtime:
            jobs = runtime.service().list_jobs(command.context, job_filter=job_filter)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} type={job.job_type.value} status={job.status.value} "
                f"progress={job.progress_percent}% retry={job.retry_count}/{job.max_retries} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobIdCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            service = runtime.service()
            if command.as_json:
                wire = service.get_job_wire(command.context, job_id=command.job_id)
                return [json.dumps(wire, ensure_ascii=False, indent=2, sort_keys=True)]
            details = service.get_job_details(command.context, job_id=command.job_id)
            children = runtime.jobs.list_children(parent_job_id=command.job_id)

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.job_type.value}",
            f"Status: {job.status.value}",
            f"Progress: {job.progress_percent}% {job.progress_message}",
            f"Retry: {job.retry_count}/{job.max_retries}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.error_message or '-'}",
            f"Result: {job.result_path or '-'}",
            f"Tokens: {job.tokens_used}",
            f"Parent: {job.parent_job_id or '-'}",
            f"Children: {len(children)}",
            f"Events: {len(details.events)}",
        ]
        for child in children:
            lines.append(f"  child {child.job_id} status={child.status.value}")
        for event in details.events:
            status_from = event.status_from.value if event.status_from else "-"
            status_to = event.status_to.value if event.status_to else "-"
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{status_from}->{status_to} {json.dumps(event.details, sort_keys=True)}",
            )
        return lines

    def cancel_job(self, command: JobIdCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            outcome = runtime.service().cancel_job(command.context, job_id=command.job_id)
        if not outcome.cancelled:
            return [
                f"Job {command.job_id} already {outcome.previous_status.value}; nothing to cancel",
            ]
        return [f"Job cancelled: {command.job_id} (was {outcome.previous_status.value})"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            if command.once:
                summary = runtime.worker(_worker_id(0)).run_once()
                return [
                    "Worker run-once completed: "
                    f"processed={summary.processed} succeeded={summary.succeeded} "
                    f"failed={summary.failed} retried={summary.retried} "
                    f"cancelled={summary.cancelled}",
                ]
            pool = runtime.worker_pool(
                size=command.concurrency,
                worker_prefix=_worker_id(None),
            )
            result = pool.run(
                shutdown_deadline_seconds=runtime.settings.worker.shutdown_deadline_seconds,
                max_idle_polls=command.max_idle_polls,
            )
        summary = result.summary
        lines = [
            "Worker pool stopped: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"cancelled={summary.cancelled} deferred={summary.deferred} "
            f"idle_polls={summary.idle_polls}",
        ]
        if result.abandoned_workers:
            lines.append(f"Abandoned workers: {', '.join(result.abandoned_workers)}")
        return lines

    def run_watchdog(self, command: WatchdogRunCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            scheduler = runtime.scheduler()
            summary = scheduler.run_loop(max_ticks=1 if command.once else command.max_ticks)
        return [
            "Watchdog stopped: "
            f"ticks={summary.ticks} requeued={summary.requeued} failed={summary.failed} "
            f"finalized_parents={summary.finalized_parents} "
            f"reconcile_enqueued={summary.reconcile_enqueued} "
            f"cleanup_enqueued={summary.cleanup_enqueued}",
        ]

    def queue_stats(self, command: QueueCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            counts = runtime.queue.stats()
        return [f"Queue: {' '.join(f'{key}={value}' for key, value in sorted(counts.items()))}"]

    def dead_letters(self, command: QueueCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            tasks = runtime.queue.list_dead_letters(limit=command.limit)
        lines = [f"Dead letters: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type} deliveries={task.deliveries} "
                f"error={task.last_error or '-'}",
            )
        return lines

    def requeue(self, command: QueueCommand) -> list[str]:
        if not command.task_id:
            raise NotFoundError("task_id is required")
        with _runtime(command.db_path) as runtime:
            task = runtime.queue.requeue_dead(task_id=command.task_id)
        return [f"Task requeued: {task.task_id} type={task.task_type}"]


@contextmanager
def _runtime(db_path: Path | None) -> Iterator[Runtime]:
    settings = Settings.from_env(db_path=db_path)
    with open_runtime(settings) as runtime:
        yield runtime


def _created_line(job: GenerationJobView) -> str:
    return (
        "Job created: "
        f"job_id={job.job_id} type={job.job_type.value} status={job.status.value} "
        f"progress={job.progress_percent}%"
    )


def _worker_id(index: int | None) -> str:
    base = f"worker-{os.getpid()}"
    return base if index is None else f"{base}-{index}"


def _parse_job_type(value: str | None) -> JobType | None:
    if value is None:
        return None
    return JobType(value.strip().upper())


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().upper())
