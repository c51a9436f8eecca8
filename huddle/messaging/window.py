"""Per-thread message window.

A window is the slice of one thread a viewer has loaded: oldest first,
unique by id, ordered by ``(created_at, id)``.  It grows backward through
pagination and forward through live inserts.

Every mutation builds the new list and assigns it in one statement with no
await in between, so under the event loop no reader ever sees a
half-applied change.

``generation`` counts refreshes.  A page fetched under an older generation
belongs to a window that no longer exists and must be dropped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from huddle.messaging.models import Message

log = logging.getLogger(__name__)


@dataclass
class ThreadWindow:
    thread_id: str
    messages: list[Message] = field(default_factory=list)
    has_more: bool = False
    oldest_loaded_at: str | None = None
    loading: bool = False
    refreshing: bool = False
    initialized: bool = False
    generation: int = 0

    @property
    def ids(self) -> set[str]:
        return {m.id for m in self.messages}

    @property
    def newest(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def contains(self, message_id: str) -> bool:
        return any(m.id == message_id for m in self.messages)

    def merge(self, incoming: list[Message]) -> list[Message]:
        """Add messages not already present; returns the ones added."""
        present = self.ids
        added: list[Message] = []
        for message in incoming:
            if message.thread_id != self.thread_id:
                log.warning("message %s belongs to %s, not %s", message.id, message.thread_id, self.thread_id)
                continue
            if message.id in present:
                continue
            present.add(message.id)
            added.append(message)
        if not added:
            return []
        tail = self.messages[-1].sort_key if self.messages else None
        ordered_added = sorted(added, key=lambda m: m.sort_key)
        if tail is None or ordered_added[0].sort_key > tail:
            self.messages = self.messages + ordered_added
        else:
            self.messages = sorted(self.messages + ordered_added, key=lambda m: m.sort_key)
        return added

    def reset(self, messages: list[Message]) -> None:
        self.messages = []
        self.merge(messages)

    def snapshot(self) -> list[Message]:
        return list(self.messages)

    def to_dict(self) -> dict:
        return {
            "thread_id": self.thread_id,
            "messages": [m.to_dict() for m in self.messages],
            "has_more": self.has_more,
            "oldest_loaded_at": self.oldest_loaded_at,
            "loading": self.loading,
            "refreshing": self.refreshing,
        }
