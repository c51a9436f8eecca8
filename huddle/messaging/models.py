"""Message record as the messaging core sees it."""
from __future__ import annotations

from dataclasses import dataclass, field

MESSAGES_TABLE = "messages"
CONVERSATIONS_TABLE = "conversations"
NOTIFICATIONS_TABLE = "notifications"


@dataclass(frozen=True)
class Message:
    id: str
    thread_id: str
    sender_id: str
    content: str                 # storage format: mentions as tokens
    created_at: str              # ISO 8601, sorts lexicographically
    thread_type: str = ""
    workspace_id: str | None = None
    mentioned_user_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.created_at, self.id)

    @classmethod
    def from_row(cls, row: dict) -> "Message":
        """Build from a store row.  Raises ``ValueError`` for rows missing keys."""
        missing = [k for k in ("id", "thread_id", "created_at") if not row.get(k)]
        if missing:
            raise ValueError(f"message row missing {', '.join(missing)}")
        return cls(
            id=str(row["id"]),
            thread_id=str(row["thread_id"]),
            sender_id=str(row.get("sender_id") or ""),
            content=row.get("content") or "",
            created_at=str(row["created_at"]),
            thread_type=row.get("thread_type") or "",
            workspace_id=row.get("workspace_id"),
            mentioned_user_ids=tuple(row.get("mentioned_user_ids") or ()),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "thread_type": self.thread_type,
            "sender_id": self.sender_id,
            "content": self.content,
            "mentioned_user_ids": list(self.mentioned_user_ids),
            "workspace_id": self.workspace_id,
            "created_at": self.created_at,
        }
