"""CLI entrypoint for coursegen."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from coursegen import __version__
from coursegen.billing.controllers import (
    BillingCliController,
    ListRegistrationsCommand,
    RegisterCommand,
    SessionCommand,
    WebhookCommand,
)
from coursegen.jobs.controllers import (
    ApproveOutlineCommand,
    DbInitCommand,
    GenerateAllCommand,
    IngestJobCommand,
    JobIdCommand,
    JobsCliController,
    LessonJobCommand,
    ListJobsCommand,
    OutlineJobCommand,
    QueueCommand,
    RegenJobCommand,
    WatchdogRunCommand,
    WorkerRunCommand,
)
from coursegen.jobs.errors import CoursegenError
from coursegen.jobs.models import JobStatus, JobType
from coursegen.notifications.controllers import (
    NotificationListCommand,
    NotificationReadCommand,
    NotificationsCliController,
)

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()
BILLING_CONTROLLER = BillingCliController()
NOTIFICATIONS_CONTROLLER = NotificationsCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
TENANT_OPTION = click.option("--tenant-id", required=True, help="Caller tenant id.")
USER_OPTION = click.option("--user-id", required=True, help="Caller user id.")


@click.group()
@click.version_option(version=__version__, prog_name="coursegen")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostic output on stderr.",
)
def coursegen(log_level: str) -> None:
    """Course generation job orchestration CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@coursegen.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@DB_PATH_OPTION
def db_init(db_path: Path | None) -> None:
    """Apply all migrations to the database."""

    with _domain_errors():
        _emit_lines(JOBS_CONTROLLER.init_db(DbInitCommand(db_path=db_path)))


@coursegen.group()
def jobs() -> None:
    """Generation job commands."""


@jobs.command("ingest")
@DB_PATH_OPTION
@TENANT_OPTION
@USER_OPTION
@click.option("--submission-id", required=True, help="SME submission to ingest.")
@click.option("--sme-task-id", default=None, help="Optional SME task reference.")
def jobs_ingest(
    db_path: Path | None,
    tenant_id: str,
    user_id: str,
    submission_id: str,
    sme_task_id: str | None,
) -> None:
    """Submit an SME ingestion job."""

    with _domain_errors():
        _emit_lines(
            JOBS_CONTROLLER.submit_ingestion(
                IngestJobCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    submission_id=submission_id,
                    sme_task_id=sme_task_id,
                ),
            ),
        )


@jobs.command("outline")
@DB_PATH_OPTION
@TENANT_OPTION
@USER_OPTION
@click.option("--course-id", required=True, help="Course to outline.")
@click.option("--topic", default="", help="Course topic.")
@click.option("--target-audience", default="", help="Who the course is for.")
@click.option(
    "--lesson-count",
    type=click.IntRange(min=1, max=50),
    default=5,
    show_default=True,
    help="Number of lessons to outline.",
)
def jobs_outline(  # noqa: PLR0913
    db_path: Path | None,
    tenant_id: str,
    user_id: str,
    course_id: str,
    topic: str,
    target_audience: str,
    lesson_count: int,
) -> None:
    """Submit a course outline job."""

    with _domain_errors():
        _emit_lines(
            JOBS_CONTROLLER.submit_outline(
                OutlineJobCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    course_id=course_id,
                    topic=topic,
                    target_audience=target_audience,
                    lesson_count=lesson_count,
                ),
            ),
        )


@jobs.command("lesson")
@DB_PATH_OPTION
@TENANT_OPTION
@USER_OPTION
@click.option("--course-id", required=True, help="Course id.")
@click.option("--lesson-id", required=True, help="Outline lesson id.")
def jobs_lesson(
    db_path: Path | None,
    tenant_id: str,
    user_id: str,
    course_id: str,
    lesson_id: str,
) -> None:
    """Submit a lesson content job."""

    with _domain_errors():
        _emit_lines(
            JOBS_CONTROLLER.submit_lesson(
                LessonJobCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    course_id=course_id,
                    lesson_id=lesson_id,
                ),
            ),
        )


@jobs.command("regen")
@DB_PATH_OPTION
@TENANT_OPTION
@USER_OPTION
@click.option("--course-id", required=True, help="Course id.")
@click.option("--lesson-id", required=True, help="Lesson id.")
@click.option("--component-id", required=True, help="Component to regenerate.")
@click.option("--prompt", "modification_prompt", required=True, help="Requested change.")
def jobs_regen(  # noqa: PLR0913
    db_path: Path | None,
    tenant_id: str,
    user_id: str,
    course_id: str,
    lesson_id: str,
    component_id: str,
    modification_prompt: str,
) -> None:
    """Submit a component regeneration job."""

    with _domain_errors():
        _emit_lines(
            JOBS_CONTROLLER.submit_regen(
                RegenJobCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    course_id=course_id,
                    lesson_id=lesson_id,
                    component_id=component_id,
                    modification_prompt=modification_prompt,
                ),
            ),
        )


@jobs.command("generate-all")
@DB_PATH_OPTION
@TENANT_OPTION
@USER_OPTION
@click.option("--outline-id", required=True, help="Approved outline id.")
def jobs_generate_all(
    db_path: Path | None,
    tenant_id: str,
    user_id: str,
    outline_id: str,
) -> None:
    """Generate every lesson of an approved outline as one batch."""

    with _domain_errors():
        _emit_lines(
            JOBS_CONTROLLER.generate_all(
                GenerateAllCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    outline_id=outline_id,
                ),
            ),
        )


@jobs.command("list")
@DB_PATH_OPTION
@TENANT_OPTION
@USER_OPTION
@click.option(
    "--type",
    "job_type",
    type=click.Choice([item.value for item in JobType], case_sensitive=False),
    default=None,
    help="Filter by job type.",
)
@click.option(
    "--status",
    type=click.Choice([item.value for item in JobStatus], case_sensitive=False),
    default=None,
    help="Filter by status.",
)
@click.option("--course-id", default=None, help="Filter by course.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(  # noqa: PLR0913
    db_path: Path | None,
    tenant_id: str,
    user_id: str,
    job_type: str | None,
    status: str | None,
    course_id: str | None,
    limit: int,
) -> None:
    """List the caller tenant's jobs, newest first."""

    with _domain_errors():
        _emit_lines(
            JOBS_CONTROLLER.list_jobs(
                ListJobsCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    job_type=job_type,
                    status=status,
                    course_id=course_id,
                    limit=limit,
                ),
            ),
        )


@jobs.command("inspect")
@DB_PATH_OPTION
@TENANT_OPTION
@USER_OPTION
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True, help="Print the wire representation.")
def jobs_inspect(
    db_path: Path | None,
    tenant_id: str,
    user_id: str,
    job_id: str,
    as_json: bool,
) -> None:
    """Show job details with its event history."""

    with _domain_errors():
        _emit_lines(
            JOBS_CONTROLLER.inspect_job(
                JobIdCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    job_id=job_id,
                    as_json=as_json,
                ),
            ),
        )


@jobs.command("cancel")
@DB_PATH_OPTION
@TENANT_OPTION
@USER_OPTION
@click.argument("job_id")
def jobs_cancel(db_path: Path | None, tenant_id: str, user_id: str, job_id: str) -> None:
    """Cancel a job; batch parents cancel their unfinished lessons too."""

    with _domain_errors():
        _emit_lines(
            JOBS_CONTROLLER.cancel_job(
                JobIdCommand(db_path=db_path, tenant_id=tenant_id, user_id=user_id, job_id=job_id),
            ),
        )


@coursegen.group()
def outline() -> None:
    """Course outline commands."""


@outline.command("approve")
@DB_PATH_OPTION
@TENANT_OPTION
@USER_OPTION
@click.argument("outline_id")
@click.option(
    "--generate-lessons/--no-generate-lessons",
    default=True,
    show_default=True,
    help="Start lesson generation for the approved outline.",
)
def outline_approve(
    db_path: Path | None,
    tenant_id: str,
    user_id: str,
    outline_id: str,
    generate_lessons: bool,
) -> None:
    """Approve an outline."""

    with _domain_errors():
        _emit_lines(
            JOBS_CONTROLLER.approve_outline(
                ApproveOutlineCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    outline_id=outline_id,
                    generate_lessons=generate_lessons,
                ),
            ),
        )


@coursegen.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@DB_PATH_OPTION
@click.option(
    "--concurrency",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Worker threads; defaults to COURSEGEN_WORKER_CONCURRENCY.",
)
@click.option("--once", is_flag=True, help="Process at most one task and exit.")
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop each worker after this many empty polls; run until signalled if omitted.",
)
def worker_run(
    db_path: Path | None,
    concurrency: int | None,
    once: bool,
    max_idle_polls: int | None,
) -> None:
    """Run the worker pool until SIGINT/SIGTERM."""

    with _domain_errors():
        _emit_lines(
            JOBS_CONTROLLER.run_worker(
                WorkerRunCommand(
                    db_path=db_path,
                    concurrency=concurrency,
                    once=once,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        )


@coursegen.group()
def watchdog() -> None:
    """Maintenance commands."""


@watchdog.command("run")
@DB_PATH_OPTION
@click.option("--once", is_flag=True, help="Run one maintenance tick and exit.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks; run until signalled if omitted.",
)
def watchdog_run(db_path: Path | None, once: bool, max_ticks: int | None) -> None:
    """Reclaim stale jobs and schedule billing maintenance."""

    with _domain_errors():
        _emit_lines(
            JOBS_CONTROLLER.run_watchdog(
                WatchdogRunCommand(db_path=db_path, once=once, max_ticks=max_ticks),
            ),
        )


@coursegen.group()
def queue() -> None:
    """Task queue commands."""


@queue.command("stats")
@DB_PATH_OPTION
def queue_stats(db_path: Path | None) -> None:
    """Show task counts by status."""

    with _domain_errors():
        _emit_lines(JOBS_CONTROLLER.queue_stats(QueueCommand(db_path=db_path)))


@queue.command("dead-letters")
@DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def queue_dead_letters(db_path: Path | None, limit: int) -> None:
    """List tasks that exhausted their delivery budget."""

    with _domain_errors():
        _emit_lines(JOBS_CONTROLLER.dead_letters(QueueCommand(db_path=db_path, limit=limit)))


@queue.command("requeue")
@DB_PATH_OPTION
@click.argument("task_id")
def queue_requeue(db_path: Path | None, task_id: str) -> None:
    """Move a dead-lettered task back to the queue."""

    with _domain_errors():
        _emit_lines(JOBS_CONTROLLER.requeue(QueueCommand(db_path=db_path, task_id=task_id)))


@coursegen.group()
def billing() -> None:
    """Registration and checkout commands."""


@billing.command("register")
@DB_PATH_OPTION
@click.option("--session-id", "checkout_session_id", required=True, help="Checkout session id.")
@click.option("--company-name", required=True, help="Company name.")
@click.option("--admin-email", required=True, help="Admin email.")
@click.option("--admin-name", default="", help="Admin display name.")
@click.option("--plan", default="standard", show_default=True, help="Subscription plan.")
@click.option(
    "--seats",
    "seat_count",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Seat count.",
)
def billing_register(  # noqa: PLR0913
    db_path: Path | None,
    checkout_session_id: str,
    company_name: str,
    admin_email: str,
    admin_name: str,
    plan: str,
    seat_count: int,
) -> None:
    """Create a pending registration ahead of checkout."""

    with _domain_errors():
        _emit_lines(
            BILLING_CONTROLLER.register(
                RegisterCommand(
                    db_path=db_path,
                    checkout_session_id=checkout_session_id,
                    company_name=company_name,
                    admin_email=admin_email,
                    admin_name=admin_name,
                    plan=plan,
                    seat_count=seat_count,
                ),
            ),
        )


@billing.command("webhook")
@DB_PATH_OPTION
@click.argument("payload_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option(
    "--signature",
    default=None,
    help="Signature header; signed with the configured secret when omitted.",
)
def billing_webhook(db_path: Path | None, payload_path: Path, signature: str | None) -> None:
    """Deliver a checkout event JSON file."""

    with _domain_errors():
        _emit_lines(
            BILLING_CONTROLLER.deliver_webhook(
                WebhookCommand(db_path=db_path, payload_path=payload_path, signature=signature),
            ),
        )


@billing.command("registrations")
@DB_PATH_OPTION
@click.option("--status", default=None, help="Filter by registration status.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max registrations to print.",
)
def billing_registrations(db_path: Path | None, status: str | None, limit: int) -> None:
    """List registrations that have not been provisioned yet."""

    with _domain_errors():
        _emit_lines(
            BILLING_CONTROLLER.list_registrations(
                ListRegistrationsCommand(db_path=db_path, status=status, limit=limit),
            ),
        )


@billing.command("session")
@DB_PATH_OPTION
@click.argument("checkout_session_id")
def billing_session(db_path: Path | None, checkout_session_id: str) -> None:
    """Show the registration or tenant behind a checkout session."""

    with _domain_errors():
        _emit_lines(
            BILLING_CONTROLLER.show_session(
                SessionCommand(db_path=db_path, checkout_session_id=checkout_session_id),
            ),
        )


@coursegen.group()
def notifications() -> None:
    """Notification commands."""


@notifications.command("list")
@DB_PATH_OPTION
@TENANT_OPTION
@USER_OPTION
@click.option("--unread", "unread_only", is_flag=True, help="Only unread notifications.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max notifications to print.",
)
@click.option("--json", "as_json", is_flag=True, help="Print the wire representation.")
def notifications_list(  # noqa: PLR0913
    db_path: Path | None,
    tenant_id: str,
    user_id: str,
    unread_only: bool,
    limit: int,
    as_json: bool,
) -> None:
    """List a user's notifications, newest first."""

    with _domain_errors():
        _emit_lines(
            NOTIFICATIONS_CONTROLLER.list_notifications(
                NotificationListCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    unread_only=unread_only,
                    limit=limit,
                    as_json=as_json,
                ),
            ),
        )


@notifications.command("read")
@DB_PATH_OPTION
@TENANT_OPTION
@USER_OPTION
@click.argument("notification_id", required=False)
def notifications_read(
    db_path: Path | None,
    tenant_id: str,
    user_id: str,
    notification_id: str | None,
) -> None:
    """Mark one notification read, or all of them when no id is given."""

    with _domain_errors():
        _emit_lines(
            NOTIFICATIONS_CONTROLLER.mark_read(
                NotificationReadCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    notification_id=notification_id,
                ),
            ),
        )


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except (CoursegenError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    coursegen()
