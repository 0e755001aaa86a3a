"""Notification persistence; reads and mutations are scoped to tenant and user."""

from __future__ import annotations

from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from coursegen.jobs.errors import NotFoundError, ValidationError
from coursegen.notifications.models import (
    NotificationCreate,
    NotificationPriority,
    NotificationType,
    NotificationView,
)
from coursegen.storage.common import (
    Clock,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from coursegen.storage.sqlmodel_models import Notification


class NotificationRepository:
    def __init__(
        self,
        db_path: Path,
        *,
        clock: Clock = utc_now,
        sqlite_busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def create(self, payload: NotificationCreate) -> NotificationView:
        if not payload.tenant_id or not payload.user_id:
            raise ValidationError("Notification requires tenant_id and user_id.")
        with Session(self.engine) as session:
            row = Notification(
                notification_id=str(uuid4()),
                tenant_id=payload.tenant_id,
                user_id=payload.user_id,
                notification_type=payload.notification_type.value,
                priority=payload.priority.value,
                title=payload.title,
                message=payload.message,
                action_url=payload.action_url,
                job_id=payload.job_id,
                course_id=payload.course_id,
                task_id=payload.task_id,
                sme_id=payload.sme_id,
                read=False,
                created_at=to_db_datetime(self.clock()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_view(row)

    def list_for_user(
        self,
        *,
        tenant_id: str,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[NotificationView]:
        statement = select(Notification).where(
            Notification.tenant_id == tenant_id,
            Notification.user_id == user_id,
        )
        if unread_only:
            statement = statement.where(col(Notification.read).is_(False))
        statement = statement.order_by(col(Notification.created_at).desc()).limit(max(1, limit))
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_view(row) for row in rows]

    def unread_count(self, *, tenant_id: str, user_id: str) -> int:
        with Session(self.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(Notification)
                .where(
                    Notification.tenant_id == tenant_id,
                    Notification.user_id == user_id,
                    col(Notification.read).is_(False),
                ),
            ).one()
        return int(count)

    def mark_read(self, *, tenant_id: str, user_id: str, notification_id: str) -> NotificationView:
        """Mark one notification read; only its owner in the same tenant may do so."""

        now = self.clock()
        with Session(self.engine) as session:
            row = session.exec(
                select(Notification).where(
                    Notification.notification_id == notification_id,
                    Notification.tenant_id == tenant_id,
                    Notification.user_id == user_id,
                ),
            ).one_or_none()
            if row is None:
                raise NotFoundError(f"Notification not found: {notification_id}")
            if not row.read:
                row.read = True
                row.read_at = to_db_datetime(now)
                session.add(row)
                session.commit()
                session.refresh(row)
            return _to_view(row)

    def mark_all_read(self, *, tenant_id: str, user_id: str) -> int:
        now = self.clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Notification)
                .where(
                    col(Notification.tenant_id) == tenant_id,
                    col(Notification.user_id) == user_id,
                    col(Notification.read).is_(False),
                )
                .values(read=True, read_at=to_db_datetime(now))
                .execution_options(synchronize_session=False),
            )
            session.commit()
        return int(result.rowcount)


def _to_view(row: Notification) -> NotificationView:
    return NotificationView(
        notification_id=row.notification_id,
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        notification_type=NotificationType(row.notification_type),
        priority=NotificationPriority(row.priority),
        title=row.title,
        message=row.message,
        action_url=row.action_url,
        job_id=row.job_id,
        course_id=row.course_id,
        task_id=row.task_id,
        sme_id=row.sme_id,
        read=row.read,
        created_at=to_utc_aware_datetime(row.created_at),
        read_at=optional_utc(row.read_at),
    )
