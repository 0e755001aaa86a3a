"""Queue task handlers that turn paid registrations into tenants."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from coursegen.billing.models import RegistrationStatus
from coursegen.billing.repository import RegistrationRepository
from coursegen.jobs.errors import CoursegenError
from coursegen.jobs.queue import CRITICAL_QUEUE, QueuedTask, TaskQueue, TaskStatus
from coursegen.jobs.retry import RetryPolicy
from coursegen.jobs.worker import TaskHandler, TaskResult

logger = logging.getLogger(__name__)

PROVISION_TASK_TYPE = "billing:provision"
RECONCILE_TASK_TYPE = "billing:reconcile"
CLEANUP_TASK_TYPE = "billing:cleanup"
PROVISION_MAX_RETRIES = 10

STUCK_PAID_AFTER = timedelta(minutes=5)
STUCK_WARNING_AFTER = timedelta(minutes=15)
STUCK_CRITICAL_AFTER = timedelta(minutes=30)
STUCK_PROVISIONING_AFTER = timedelta(minutes=30)


def enqueue_provisioning(
    queue: TaskQueue,
    checkout_session_id: str,
    *,
    max_retries: int = PROVISION_MAX_RETRIES,
) -> QueuedTask:
    return queue.enqueue(
        PROVISION_TASK_TYPE,
        {"checkout_session_id": checkout_session_id},
        max_retries=max_retries,
        queue=CRITICAL_QUEUE,
    )


class ProvisionTaskHandler:
    """Provisions one paid registration.

    The ``paid -> provisioning`` transition is conditional, so redelivered
    or duplicated tasks for the same session do the work at most once.
    """

    def __init__(
        self,
        *,
        registrations: RegistrationRepository,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.registrations = registrations
        self.retry_policy = retry_policy or RetryPolicy(base_seconds=5, max_seconds=300)

    def handle(self, task: QueuedTask, *, worker_id: str) -> TaskResult:
        session_id = task.payload.get("checkout_session_id")
        if not isinstance(session_id, str) or not session_id:
            logger.error("Provision task %s has no checkout_session_id", task.task_id)
            return TaskResult(ack=True)

        registration = self.registrations.get_by_session(session_id)
        if registration is None:
            if self.registrations.get_tenant_by_session(session_id) is None:
                logger.warning("Provision task for unknown session %s", session_id)
            return TaskResult(ack=True)
        if registration.status != RegistrationStatus.PAID:
            logger.info(
                "Skipping provisioning for %s in status %s",
                session_id,
                registration.status.value,
            )
            return TaskResult(ack=True)
        if not self.registrations.mark_provisioning(session_id):
            return TaskResult(ack=True)

        try:
            tenant = self.registrations.complete_provisioning(session_id)
        except (CoursegenError, SQLAlchemyError) as error:
            message = f"{type(error).__name__}: {error}"
            if task.retries_exhausted:
                self.registrations.mark_failed(session_id, error_message=message)
                return TaskResult(ack=False, error=message)
            self.registrations.revert_to_paid(session_id, error_message=message)
            logger.warning(
                "Provisioning %s failed on delivery %d (worker %s): %s",
                session_id,
                task.deliveries,
                worker_id,
                message,
            )
            return TaskResult(
                ack=False,
                error=message,
                retry_delay_seconds=self.retry_policy.delay_for(task.deliveries),
            )
        logger.info("Session %s provisioned as tenant %s", session_id, tenant.tenant_id)
        return TaskResult(ack=True)


@dataclass(slots=True)
class ReconcileReport:
    requeued: int = 0
    warned: int = 0
    critical: int = 0
    reverted: int = 0
    already_queued: int = 0


class ReconcileTaskHandler:
    """Recovers registrations whose provisioning task was lost or stalled."""

    def __init__(
        self,
        *,
        registrations: RegistrationRepository,
        queue: TaskQueue,
        provision_max_retries: int = PROVISION_MAX_RETRIES,
    ) -> None:
        self.registrations = registrations
        self.queue = queue
        self.provision_max_retries = provision_max_retries

    def handle(self, task: QueuedTask, *, worker_id: str) -> TaskResult:
        report = self.reconcile()
        logger.info(
            "Reconcile by %s: requeued=%d already_queued=%d reverted=%d warned=%d critical=%d",
            worker_id,
            report.requeued,
            report.already_queued,
            report.reverted,
            report.warned,
            report.critical,
        )
        return TaskResult(ack=True)

    def reconcile(self) -> ReconcileReport:
        report = ReconcileReport()
        for registration in self.registrations.list_stuck(
            status=RegistrationStatus.PROVISIONING,
            older_than=STUCK_PROVISIONING_AFTER,
        ):
            if self.registrations.revert_to_paid(
                registration.checkout_session_id,
                error_message="Provisioning timed out",
            ):
                report.reverted += 1

        now = self.registrations.clock()
        queued_sessions = {
            task.payload.get("checkout_session_id")
            for task in self.queue.list_tasks(
                task_type=PROVISION_TASK_TYPE,
                statuses=(TaskStatus.READY, TaskStatus.LEASED),
                limit=None,
            )
        }
        for registration in self.registrations.list_stuck(
            status=RegistrationStatus.PAID,
            older_than=STUCK_PAID_AFTER,
        ):
            age = now - (registration.paid_at or registration.updated_at)
            if age > STUCK_CRITICAL_AFTER:
                report.critical += 1
                logger.error(
                    "Registration %s stuck in paid for %s",
                    registration.checkout_session_id,
                    age,
                )
            elif age > STUCK_WARNING_AFTER:
                report.warned += 1
                logger.warning(
                    "Registration %s stuck in paid for %s",
                    registration.checkout_session_id,
                    age,
                )
            if registration.checkout_session_id in queued_sessions:
                report.already_queued += 1
                continue
            enqueue_provisioning(
                self.queue,
                registration.checkout_session_id,
                max_retries=self.provision_max_retries,
            )
            report.requeued += 1
        return report


class CleanupTaskHandler:
    def __init__(self, *, registrations: RegistrationRepository) -> None:
        self.registrations = registrations

    def handle(self, task: QueuedTask, *, worker_id: str) -> TaskResult:
        self.registrations.delete_expired()
        return TaskResult(ack=True)


def billing_task_handlers(
    *,
    registrations: RegistrationRepository,
    queue: TaskQueue,
    provision_max_retries: int = PROVISION_MAX_RETRIES,
) -> dict[str, TaskHandler]:
    return {
        PROVISION_TASK_TYPE: ProvisionTaskHandler(registrations=registrations),
        RECONCILE_TASK_TYPE: ReconcileTaskHandler(
            registrations=registrations,
            queue=queue,
            provision_max_retries=provision_max_retries,
        ),
        CLEANUP_TASK_TYPE: CleanupTaskHandler(registrations=registrations),
    }
