"""Per-user notification inbox.

Reads and maintains the rows ``MentionNotifier`` writes.  Every call is
scoped to one user: marking or deleting another user's notification is a
no-op that reports nothing changed, never an error.  An optional
``workspace_id`` narrows listing, counting and bulk updates to one
workspace.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

from huddle.messaging.models import NOTIFICATIONS_TABLE
from huddle.store.base import DELETE, INSERT, ChangeEvent, Filter, OrderBy, Store, Subscription, eq

log = logging.getLogger(__name__)

NotificationCallback = Callable[[str, "Notification"], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class Notification:
    id: str
    user_id: str
    content: str
    notification_type: str
    is_read: bool
    message_id: str | None = None
    sender_name: str | None = None
    thread_id: str | None = None
    thread_type: str | None = None
    workspace_id: str | None = None
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "Notification":
        missing = [k for k in ("id", "user_id") if not row.get(k)]
        if missing:
            raise ValueError(f"notification row missing {', '.join(missing)}")
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            content=row.get("content") or "",
            notification_type=row.get("notification_type") or "",
            is_read=bool(row.get("is_read")),
            message_id=row.get("message_id"),
            sender_name=row.get("sender_name"),
            thread_id=row.get("thread_id"),
            thread_type=row.get("thread_type"),
            workspace_id=row.get("workspace_id"),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "notification_type": self.notification_type,
            "is_read": self.is_read,
            "message_id": self.message_id,
            "sender_name": self.sender_name,
            "thread_id": self.thread_id,
            "thread_type": self.thread_type,
            "workspace_id": self.workspace_id,
            "created_at": self.created_at,
        }


def _scope(user_id: str, workspace_id: str | None = None, thread_id: str | None = None) -> list[Filter]:
    filters = [eq("user_id", user_id)]
    if workspace_id:
        filters.append(eq("workspace_id", workspace_id))
    if thread_id:
        filters.append(eq("thread_id", thread_id))
    return filters


class NotificationInbox:
    def __init__(self, store: Store) -> None:
        self._store = store

    def _parse(self, rows: list[dict]) -> list[Notification]:
        notes: list[Notification] = []
        for row in rows:
            try:
                notes.append(Notification.from_row(row))
            except ValueError as exc:
                log.warning("Skipping malformed notification row: %s", exc)
        return notes

    async def list_for(
        self,
        user_id: str,
        workspace_id: str | None = None,
        unread_only: bool = False,
        notification_type: str | None = None,
        limit: int | None = None,
    ) -> list[Notification]:
        """Newest first."""
        filters = _scope(user_id, workspace_id)
        if unread_only:
            filters.append(eq("is_read", False))
        if notification_type:
            filters.append(eq("notification_type", notification_type))
        rows = await self._store.query(
            NOTIFICATIONS_TABLE, filters, OrderBy("created_at", descending=True), limit=limit,
        )
        return self._parse(rows)

    async def unread_count(self, user_id: str, workspace_id: str | None = None,
                           thread_id: str | None = None) -> int:
        filters = _scope(user_id, workspace_id, thread_id) + [eq("is_read", False)]
        return len(await self._store.query(NOTIFICATIONS_TABLE, filters))

    async def mark_read(self, user_id: str, notification_id: str) -> bool:
        """True when the notification exists and belongs to *user_id*."""
        changed = await self._store.update(
            NOTIFICATIONS_TABLE, [eq("id", notification_id), eq("user_id", user_id)], {"is_read": True},
        )
        return bool(changed)

    async def mark_all_read(self, user_id: str, workspace_id: str | None = None) -> int:
        filters = _scope(user_id, workspace_id) + [eq("is_read", False)]
        changed = await self._store.update(NOTIFICATIONS_TABLE, filters, {"is_read": True})
        log.info("marked %d notification(s) read for %s", len(changed), user_id)
        return len(changed)

    async def mark_thread_read(self, user_id: str, thread_id: str, workspace_id: str | None = None) -> int:
        filters = _scope(user_id, workspace_id, thread_id) + [eq("is_read", False)]
        changed = await self._store.update(NOTIFICATIONS_TABLE, filters, {"is_read": True})
        return len(changed)

    async def delete(self, user_id: str, notification_id: str) -> bool:
        removed = await self._store.delete(
            NOTIFICATIONS_TABLE, [eq("id", notification_id), eq("user_id", user_id)],
        )
        return removed > 0

    def watch(self, user_id: str, callback: NotificationCallback,
              workspace_id: str | None = None) -> Subscription:
        """Live changes to *user_id*'s notifications.

        *callback* receives the change kind and the notification.  With a
        workspace set, new notifications from other workspaces are dropped;
        updates and deletes always pass so counts stay correct.
        """

        def _on_change(event: ChangeEvent):
            row = event.old if event.kind == DELETE else event.new
            try:
                note = Notification.from_row(row)
            except ValueError as exc:
                log.warning("Dropping malformed notification event: %s", exc)
                return None
            if event.kind == INSERT and workspace_id and note.workspace_id != workspace_id:
                return None
            return callback(event.kind, note)

        return self._store.subscribe(NOTIFICATIONS_TABLE, _on_change, filters=[eq("user_id", user_id)])
