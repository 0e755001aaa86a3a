"""Initial coursegen schema: jobs, queue, registrations, notifications, content."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "generation_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("course_id", sa.String(), nullable=True),
        sa.Column("lesson_id", sa.String(), nullable=True),
        sa.Column("sme_task_id", sa.String(), nullable=True),
        sa.Column("submission_id", sa.String(), nullable=True),
        sa.Column("progress_percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress_message", sa.String(), nullable=False, server_default=""),
        sa.Column("result_path", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("parent_job_id", sa.String(), nullable=True),
        sa.Column("batch_total", sa.Integer(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_by_user_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["parent_job_id"],
            ["generation_jobs.job_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_generation_jobs_tenant_id", "generation_jobs", ["tenant_id"])
    op.create_index("ix_generation_jobs_job_type", "generation_jobs", ["job_type"])
    op.create_index("ix_generation_jobs_course_id", "generation_jobs", ["course_id"])
    op.create_index("ix_generation_jobs_parent_job_id", "generation_jobs", ["parent_job_id"])
    op.create_index(
        "idx_generation_jobs_status_created",
        "generation_jobs",
        ["status", "created_at"],
    )
    op.create_index(
        "idx_generation_jobs_queued_due",
        "generation_jobs",
        ["next_attempt_at", "created_at"],
        sqlite_where=sa.text("status = 'queued'"),
    )
    op.create_index(
        "idx_generation_jobs_tenant_created",
        "generation_jobs",
        ["tenant_id", "created_at"],
    )

    op.create_table(
        "generation_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_generation_job_events_job_time",
        "generation_job_events",
        ["job_id", "created_at"],
    )

    op.create_table(
        "queue_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("queue", sa.String(), nullable=False, server_default="default"),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("deliveries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("leased_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consumer_id", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dead_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_queue_tasks_queue", "queue_tasks", ["queue"])
    op.create_index(
        "idx_queue_tasks_delivery",
        "queue_tasks",
        ["status", "task_type", "available_at"],
    )
    op.create_index(
        "idx_queue_tasks_lease",
        "queue_tasks",
        ["leased_until"],
        sqlite_where=sa.text("status = 'leased'"),
    )

    op.create_table(
        "pending_registrations",
        sa.Column("registration_id", sa.String(), nullable=False),
        sa.Column("checkout_session_id", sa.String(), nullable=False),
        sa.Column("company_name", sa.String(), nullable=False),
        sa.Column("admin_email", sa.String(), nullable=False),
        sa.Column("admin_name", sa.String(), nullable=False, server_default=""),
        sa.Column("plan", sa.String(), nullable=False, server_default="standard"),
        sa.Column("seat_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("registration_id"),
        sa.UniqueConstraint(
            "checkout_session_id",
            name="uq_pending_registrations_checkout_session",
        ),
    )
    op.create_index("ix_pending_registrations_status", "pending_registrations", ["status"])
    op.create_index(
        "idx_pending_registrations_paid",
        "pending_registrations",
        ["updated_at"],
        sqlite_where=sa.text("status = 'paid'"),
    )

    op.create_table(
        "provisioned_tenants",
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("checkout_session_id", sa.String(), nullable=False),
        sa.Column("company_name", sa.String(), nullable=False),
        sa.Column("admin_email", sa.String(), nullable=False),
        sa.Column("plan", sa.String(), nullable=False),
        sa.Column("seat_count", sa.Integer(), nullable=False),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id"),
        sa.UniqueConstraint(
            "checkout_session_id",
            name="uq_provisioned_tenants_checkout_session",
        ),
    )

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("notification_type", sa.String(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("action_url", sa.String(), nullable=True),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("course_id", sa.String(), nullable=True),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("sme_id", sa.String(), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("notification_id"),
    )
    op.create_index(
        "idx_notifications_inbox",
        "notifications",
        ["tenant_id", "user_id", "read", "created_at"],
    )

    op.create_table(
        "course_outlines",
        sa.Column("outline_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("course_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("outline_id"),
    )
    op.create_index(
        "idx_course_outlines_course",
        "course_outlines",
        ["tenant_id", "course_id", "created_at"],
    )

    op.create_table(
        "outline_lessons",
        sa.Column("lesson_id", sa.String(), nullable=False),
        sa.Column("outline_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("objectives_json", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(
            ["outline_id"],
            ["course_outlines.outline_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("lesson_id"),
        sa.UniqueConstraint("outline_id", "position", name="uq_outline_lessons_position"),
    )
    op.create_index("ix_outline_lessons_outline_id", "outline_lessons", ["outline_id"])

    op.create_table(
        "lesson_contents",
        sa.Column("lesson_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("course_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("components_json", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("lesson_id"),
    )
    op.create_index("ix_lesson_contents_tenant_id", "lesson_contents", ["tenant_id"])

    op.create_table(
        "knowledge_chunks",
        sa.Column("chunk_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("submission_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("chunk_id"),
    )
    op.create_index(
        "idx_knowledge_chunks_submission",
        "knowledge_chunks",
        ["tenant_id", "submission_id", "position"],
    )


def downgrade() -> None:
    op.drop_table("knowledge_chunks")
    op.drop_table("lesson_contents")
    op.drop_table("outline_lessons")
    op.drop_table("course_outlines")
    op.drop_table("notifications")
    op.drop_table("provisioned_tenants")
    op.drop_table("pending_registrations")
    op.drop_table("queue_tasks")
    op.drop_table("generation_job_events")
    op.drop_table("generation_jobs")
