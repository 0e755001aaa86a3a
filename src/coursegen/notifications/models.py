"""Notification domain models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class NotificationType(str, Enum):
    TASK_ASSIGNED = "task_assigned"
    TASK_DUE_SOON = "task_due_soon"
    INGESTION_COMPLETE = "ingestion_complete"
    INGESTION_FAILED = "ingestion_failed"
    OUTLINE_READY = "outline_ready"
    GENERATION_STARTED = "generation_started"
    GENERATION_COMPLETE = "generation_complete"
    GENERATION_FAILED = "generation_failed"
    APPROVAL_REQUESTED = "approval_requested"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


@dataclass(slots=True)
class NotificationCreate:
    """Input payload for a new notification."""

    tenant_id: str
    user_id: str
    notification_type: NotificationType
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    action_url: str | None = None
    job_id: str | None = None
    course_id: str | None = None
    task_id: str | None = None
    sme_id: str | None = None


@dataclass(slots=True)
class NotificationView:
    notification_id: str
    tenant_id: str
    user_id: str
    notification_type: NotificationType
    priority: NotificationPriority
    title: str
    message: str
    action_url: str | None
    job_id: str | None
    course_id: str | None
    task_id: str | None
    sme_id: str | None
    read: bool
    created_at: datetime
    read_at: datetime | None

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.notification_id,
            "tenantId": self.tenant_id,
            "userId": self.user_id,
            "type": self.notification_type.value,
            "priority": self.priority.value,
            "title": self.title,
            "message": self.message,
            "actionUrl": self.action_url,
            "jobId": self.job_id,
            "courseId": self.course_id,
            "taskId": self.task_id,
            "smeId": self.sme_id,
            "read": self.read,
            "createdAt": self.created_at.isoformat(),
            "readAt": self.read_at.isoformat() if self.read_at is not None else None,
        }
