"""SQLModel ORM tables for coursegen storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_generation_jobs_status_created", "status", "created_at"),
        Index(
            "idx_generation_jobs_queued_due",
            "next_attempt_at",
            "created_at",
            sqlite_where=text("status = 'queued'"),
        ),
        Index("idx_generation_jobs_tenant_created", "tenant_id", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    job_type: str = Field(index=True)
    status: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    course_id: str | None = Field(default=None, index=True)
    lesson_id: str | None = None
    sme_task_id: str | None = None
    submission_id: str | None = None
    progress_percent: int = Field(default=0)
    progress_message: str = Field(default="")
    result_path: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = None
    tokens_used: int = Field(default=0)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    next_attempt_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    parent_job_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    batch_total: int | None = None
    worker_id: str | None = None
    created_by_user_id: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class GenerationJobEvent(SQLModel, table=True):
    __tablename__ = "generation_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    tenant_id: str
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueTask(SQLModel, table=True):
    __tablename__ = "queue_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_tasks_delivery", "status", "task_type", "available_at"),
        Index("idx_queue_tasks_lease", "leased_until", sqlite_where=text("status = 'leased'")),
    )

    task_id: str = Field(primary_key=True)
    queue: str = Field(default="default", index=True)
    task_type: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    deliveries: int = Field(default=0)
    max_retries: int = Field(default=3)
    available_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    leased_until: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    consumer_id: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    dead_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class PendingRegistration(SQLModel, table=True):
    __tablename__ = "pending_registrations"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "checkout_session_id",
            name="uq_pending_registrations_checkout_session",
        ),
        Index(
            "idx_pending_registrations_paid",
            "updated_at",
            sqlite_where=text("status = 'paid'"),
        ),
    )

    registration_id: str = Field(primary_key=True)
    checkout_session_id: str
    company_name: str
    admin_email: str
    admin_name: str = Field(default="")
    plan: str = Field(default="standard")
    seat_count: int = Field(default=1)
    status: str = Field(index=True)
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    paid_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProvisionedTenant(SQLModel, table=True):
    __tablename__ = "provisioned_tenants"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("checkout_session_id", name="uq_provisioned_tenants_checkout_session"),
    )

    tenant_id: str = Field(primary_key=True)
    checkout_session_id: str
    company_name: str
    admin_email: str
    plan: str
    seat_count: int
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_notifications_inbox", "tenant_id", "user_id", "read", "created_at"),
    )

    notification_id: str = Field(primary_key=True)
    tenant_id: str
    user_id: str
    notification_type: str
    priority: str
    title: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    action_url: str | None = None
    job_id: str | None = None
    course_id: str | None = None
    task_id: str | None = None
    sme_id: str | None = None
    read: bool = Field(default=False)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    read_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class CourseOutline(SQLModel, table=True):
    __tablename__ = "course_outlines"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_course_outlines_course", "tenant_id", "course_id", "created_at"),)

    outline_id: str = Field(primary_key=True)
    tenant_id: str
    course_id: str
    job_id: str | None = None
    status: str
    title: str
    summary: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    approved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class OutlineLesson(SQLModel, table=True):
    __tablename__ = "outline_lessons"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("outline_id", "position", name="uq_outline_lessons_position"),
    )

    lesson_id: str = Field(primary_key=True)
    outline_id: str = Field(
        sa_column=Column(
            ForeignKey("course_outlines.outline_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    tenant_id: str
    position: int
    title: str
    objectives_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))


class LessonContent(SQLModel, table=True):
    __tablename__ = "lesson_contents"  # type: ignore[bad-override]

    lesson_id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    course_id: str
    job_id: str | None = None
    title: str
    components_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class KnowledgeChunk(SQLModel, table=True):
    __tablename__ = "knowledge_chunks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_knowledge_chunks_submission", "tenant_id", "submission_id", "position"),
    )

    chunk_id: str = Field(primary_key=True)
    tenant_id: str
    submission_id: str
    position: int
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
