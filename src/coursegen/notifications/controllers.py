"""Controllers for notification CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from coursegen.config import Settings
from coursegen.runtime import open_runtime


@dataclass(slots=True)
class NotificationListCommand:
    db_path: Path | None
    tenant_id: str
    user_id: str
    unread_only: bool = False
    limit: int = 50
    as_json: bool = False


@dataclass(slots=True)
class NotificationReadCommand:
    db_path: Path | None
    tenant_id: str
    user_id: str
    notification_id: str | None = None


class NotificationsCliController:
    """Reads and acknowledges a user's notifications."""

    def list_notifications(self, command: NotificationListCommand) -> list[str]:
        with open_runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            items = runtime.notifications.list_for_user(
                tenant_id=command.tenant_id,
                user_id=command.user_id,
                unread_only=command.unread_only,
                limit=command.limit,
            )
            unread = runtime.notifications.unread_count(
                tenant_id=command.tenant_id,
                user_id=command.user_id,
            )
        if command.as_json:
            return [json.dumps([item.to_wire() for item in items], ensure_ascii=False, indent=2)]

        lines = [f"Notifications: {len(items)} (unread={unread})"]
        for item in items:
            marker = " " if item.read else "*"
            lines.append(
                f"{marker} {item.notification_id} {item.created_at.isoformat()} "
                f"[{item.priority.value}] {item.notification_type.value}: {item.title}",
            )
        return lines

    def mark_read(self, command: NotificationReadCommand) -> list[str]:
        with open_runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            if command.notification_id is None:
                count = runtime.notifications.mark_all_read(
                    tenant_id=command.tenant_id,
                    user_id=command.user_id,
                )
                return [f"Marked read: {count}"]
            item = runtime.notifications.mark_read(
                tenant_id=command.tenant_id,
                user_id=command.user_id,
                notification_id=command.notification_id,
            )
        return [f"Marked read: {item.notification_id}"]
