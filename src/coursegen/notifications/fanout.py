"""Notification fan-out: durable row first, then best-effort publish."""

from __future__ import annotations

import logging
from enum import Enum

from coursegen.jobs.models import GenerationJobView, JobType
from coursegen.notifications.models import (
    NotificationCreate,
    NotificationPriority,
    NotificationType,
    NotificationView,
)
from coursegen.notifications.publisher import EventPublisher, PublishError, user_channel
from coursegen.notifications.repository import NotificationRepository

logger = logging.getLogger(__name__)

JOB_LABELS: dict[JobType, str] = {
    JobType.SME_INGESTION: "Knowledge Ingestion",
    JobType.COURSE_OUTLINE: "Course Outline",
    JobType.LESSON_CONTENT: "Lesson Content",
    JobType.COMPONENT_REGEN: "Component",
    JobType.FULL_COURSE: "Course Lessons",
}


class JobMilestone(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class NotificationFanout:
    """Writes the notification of record, then pushes it to the user's channel."""

    def __init__(self, *, repository: NotificationRepository, publisher: EventPublisher) -> None:
        self.repository = repository
        self.publisher = publisher

    def notify(self, payload: NotificationCreate) -> NotificationView:
        notification = self.repository.create(payload)
        try:
            self.publisher.publish(
                channel=user_channel(notification.tenant_id, notification.user_id),
                message={"type": "notification", "notification": notification.to_wire()},
            )
        except PublishError as error:
            logger.warning(
                "Notification %s stored but not pushed: %s",
                notification.notification_id,
                error,
            )
        return notification

    def notify_job_milestone(
        self,
        job: GenerationJobView,
        milestone: JobMilestone,
    ) -> NotificationView | None:
        """Notify the job's creator; batch children are reported by their parent."""

        if job.parent_job_id is not None:
            return None
        notification_type, priority, title, message = _describe(job, milestone)
        return self.notify(
            NotificationCreate(
                tenant_id=job.tenant_id,
                user_id=job.created_by_user_id,
                notification_type=notification_type,
                priority=priority,
                title=title,
                message=message,
                action_url=f"/courses/{job.course_id}" if job.course_id else f"/jobs/{job.job_id}",
                job_id=job.job_id,
                course_id=job.course_id,
                task_id=job.sme_task_id,
            ),
        )


def _describe(
    job: GenerationJobView,
    milestone: JobMilestone,
) -> tuple[NotificationType, NotificationPriority, str, str]:
    label = JOB_LABELS[job.job_type]
    if milestone == JobMilestone.STARTED:
        return (
            NotificationType.GENERATION_STARTED,
            NotificationPriority.LOW,
            f"{label} Generation Started",
            f"{label} generation is in progress.",
        )
    if milestone == JobMilestone.FAILED:
        notification_type = (
            NotificationType.INGESTION_FAILED
            if job.job_type == JobType.SME_INGESTION
            else NotificationType.GENERATION_FAILED
        )
        return (
            notification_type,
            NotificationPriority.HIGH,
            f"{label} Generation Failed",
            job.error_message or f"{label} generation failed.",
        )
    if job.job_type == JobType.SME_INGESTION:
        return (
            NotificationType.INGESTION_COMPLETE,
            NotificationPriority.NORMAL,
            f"{label} Complete",
            job.progress_message or "Knowledge ingestion complete.",
        )
    if job.job_type == JobType.COURSE_OUTLINE:
        return (
            NotificationType.OUTLINE_READY,
            NotificationPriority.NORMAL,
            "Course Outline Ready",
            "Your course outline is ready for review.",
        )
    return (
        NotificationType.GENERATION_COMPLETE,
        NotificationPriority.NORMAL,
        f"{label} Generation Complete",
        job.progress_message or f"{label} generation complete.",
    )
