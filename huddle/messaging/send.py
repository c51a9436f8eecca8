"""Send path: persist a message, reconcile it locally, fan out mentions.

Order of operations
-------------------
1. decode mentions from the storage-format content
2. insert the message row                       (failure propagates)
3. merge the stored row into the sender's window (live event dedupes later)
4. touch the conversation's ``last_message_at``  (best-effort)
5. render display text and fan out notifications (best-effort, once)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from huddle.mentions.codec import extract_mentions
from huddle.mentions.names import DisplayNameCache, render_display
from huddle.messaging.models import CONVERSATIONS_TABLE, MESSAGES_TABLE, Message
from huddle.messaging.sync import ThreadSyncEngine
from huddle.notifications.fanout import FanoutReport, MentionNotifier
from huddle.store.base import Store, eq

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Sender:
    id: str
    display_name: str


@dataclass
class SendResult:
    message: Message
    display_text: str
    notifications: FanoutReport

    def to_dict(self) -> dict:
        return {
            "message": self.message.to_dict(),
            "display_text": self.display_text,
            "notifications": self.notifications.to_dict(),
        }


class MessageSender:
    def __init__(self, store: Store, engine: ThreadSyncEngine, notifier: MentionNotifier,
                 names: DisplayNameCache) -> None:
        self.store = store
        self.engine = engine
        self.notifier = notifier
        self.names = names

    async def send(
        self,
        content: str,
        thread_id: str,
        thread_type: str,
        sender: Sender,
        workspace_id: str | None = None,
    ) -> SendResult:
        """Store *content* (storage format) in *thread_id* and notify mentions.

        Raises ``ValueError`` for blank content; store errors on the message
        insert propagate unchanged.
        """
        content = (content or "").strip()
        if not content:
            raise ValueError("message content is empty")
        if not thread_id:
            raise ValueError("thread_id is required")

        mentioned = extract_mentions(content)
        row = await self.store.insert(MESSAGES_TABLE, {
            "thread_id": thread_id,
            "thread_type": thread_type,
            "sender_id": sender.id,
            "content": content,
            "mentioned_user_ids": mentioned,
            "workspace_id": workspace_id,
        })
        message = Message.from_row(row)
        self.engine.on_live_insert(message)
        self.engine.metrics.inc("huddle_messages_sent_total")

        try:
            await self.store.update(
                CONVERSATIONS_TABLE, [eq("thread_id", thread_id)],
                {"last_message_at": datetime.now(UTC).isoformat()},
            )
        except Exception as exc:
            log.warning("Could not update conversation %s: %s", thread_id, exc)

        display_text = await render_display(content, self.names)
        report = FanoutReport()
        if mentioned:
            report = await self.notifier.notify_mentions(
                mentioned,
                sender.display_name,
                display_text,
                thread_id,
                thread_type,
                message.id,
                workspace_id=workspace_id,
                sender_id=sender.id,
            )
        return SendResult(message=message, display_text=display_text, notifications=report)
