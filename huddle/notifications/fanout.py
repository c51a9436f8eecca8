"""Mention notification fan-out.

Runs after a message has been stored.  One notification row is created per
distinct mentioned user; a failure for one recipient is logged and skipped,
never rolled back into the others and never surfaced as a send failure.

Notification ids are derived from ``(message_id, user_id)``, so a repeated
fan-out for the same message hits a duplicate key in the store instead of
notifying twice.  That protection is only as strong as the store's primary
key; callers should still run fan-out once per send.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from huddle.messaging.models import NOTIFICATIONS_TABLE
from huddle.observability.metrics import MetricsRegistry
from huddle.store.base import DuplicateRowError, Store

log = logging.getLogger(__name__)

SNIPPET_CHARS = 100
ELLIPSIS = "..."
MENTION_NOTIFICATION = "mention"

_NOTIFICATION_NS = uuid.UUID("6f1c7f0e-4a49-4b8e-9d1b-6f2a3c1d9e55")


def truncate(text: str, limit: int = SNIPPET_CHARS) -> str:
    """Cut *text* to *limit* characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + ELLIPSIS


def notification_id(message_id: str, user_id: str) -> str:
    return str(uuid.uuid5(_NOTIFICATION_NS, f"{message_id}:{user_id}"))


@dataclass
class FanoutReport:
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {"created": self.created, "skipped": self.skipped, "failed": self.failed, "ok": self.ok}


class MentionNotifier:
    """Creates one durable ``mention`` notification per recipient."""

    def __init__(self, store: Store, snippet_chars: int = SNIPPET_CHARS,
                 metrics: MetricsRegistry | None = None) -> None:
        self._store = store
        self.snippet_chars = snippet_chars
        self.metrics = metrics or MetricsRegistry()
        self._delivered: set[tuple[str, str]] = set()

    def build(self, user_id: str, sender_display_name: str, message_content: str, thread_id: str,
              thread_type: str, message_id: str, workspace_id: str | None = None) -> dict:
        sender = sender_display_name or "Someone"
        return {
            "id": notification_id(message_id, user_id),
            "user_id": user_id,
            "message_id": message_id,
            "content": f"{sender} mentioned you: {truncate(message_content, self.snippet_chars)}",
            "sender_name": sender,
            "thread_id": thread_id,
            "thread_type": thread_type,
            "workspace_id": workspace_id,
            "notification_type": MENTION_NOTIFICATION,
            "is_read": False,
        }

    async def notify_mentions(
        self,
        mentioned_user_ids: list[str],
        sender_display_name: str,
        message_content: str,
        thread_id: str,
        thread_type: str,
        message_id: str,
        workspace_id: str | None = None,
        sender_id: str | None = None,
    ) -> FanoutReport:
        report = FanoutReport()
        seen: set[str] = set()
        for user_id in mentioned_user_ids:
            if not user_id or user_id in seen:
                continue
            seen.add(user_id)
            if user_id == sender_id:
                # No notification for mentioning yourself
                report.skipped.append(user_id)
                self.metrics.inc("huddle_notifications_total", outcome="skipped")
                continue
            if (message_id, user_id) in self._delivered:
                report.skipped.append(user_id)
                self.metrics.inc("huddle_notifications_total", outcome="skipped")
                continue

            row = self.build(user_id, sender_display_name, message_content, thread_id,
                             thread_type, message_id, workspace_id)
            try:
                await self._store.insert(NOTIFICATIONS_TABLE, row)
            except DuplicateRowError:
                log.debug("notification for %s on %s already exists", user_id, message_id)
                self._delivered.add((message_id, user_id))
                report.skipped.append(user_id)
                self.metrics.inc("huddle_notifications_total", outcome="skipped")
                continue
            except Exception as exc:
                log.warning("Mention notification for %s on message %s failed: %s", user_id, message_id, exc)
                report.failed[user_id] = str(exc)
                self.metrics.inc("huddle_notifications_total", outcome="failed")
                continue
            self._delivered.add((message_id, user_id))
            report.created.append(user_id)
            self.metrics.inc("huddle_notifications_total", outcome="created")

        log.info("fan-out for %s: created=%s skipped=%s failed=%s",
                 message_id, report.created, report.skipped, list(report.failed))
        return report
