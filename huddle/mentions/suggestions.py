"""@mention suggestions — trigger detection and candidate filtering.

``detect_trigger`` finds the "@" the user is currently typing after;
``filter_candidates`` narrows the workspace member list to at most five
matches in their original order.

The candidate pool must already be scoped to the current workspace.  The
send path trusts whatever ids the editor produced, so scoping here is the
only thing that keeps non-members out of a thread's mentions.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from huddle.mentions.codec import UNKNOWN_USER
from huddle.store.base import PROFILES_TABLE, WORKSPACE_MEMBERS_TABLE, Store, eq, is_in

log = logging.getLogger(__name__)

MAX_SUGGESTIONS = 5
ESCAPE_CHAR = "\\"


@dataclass(frozen=True)
class Member:
    id: str
    full_name: str | None = None
    email: str | None = None

    @property
    def display_name(self) -> str:
        return self.full_name or UNKNOWN_USER

    @property
    def initials(self) -> str:
        source = self.full_name or self.email or "?"
        parts = [p for p in source.replace("@", " ").split() if p]
        return "".join(p[0] for p in parts[:2]).upper() or "?"

    @classmethod
    def from_profile(cls, row: dict) -> "Member":
        return cls(id=str(row["id"]), full_name=row.get("full_name"), email=row.get("email"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "display_name": self.display_name,
            "initials": self.initials,
        }


@dataclass(frozen=True)
class Trigger:
    active: bool
    query: str = ""
    trigger_start: int = -1


INACTIVE = Trigger(active=False)


def detect_trigger(text: str, cursor: int) -> Trigger:
    """Locate an active "@" trigger ending at *cursor*.

    The nearest unescaped "@" at or before the cursor counts when no other
    "@" and no line break sits between it and the cursor.
    """
    cursor = max(0, min(cursor, len(text)))
    at = text.rfind("@", 0, cursor)
    if at < 0:
        return INACTIVE
    if at > 0 and text[at - 1] == ESCAPE_CHAR:
        return INACTIVE
    query = text[at + 1:cursor]
    if "\n" in query or "\r" in query:
        return INACTIVE
    return Trigger(active=True, query=query, trigger_start=at)


def filter_candidates(query: str, scoped_users: list[Member], limit: int = MAX_SUGGESTIONS) -> list[Member]:
    """Case-insensitive substring match on display name or e-mail."""
    if not query:
        return list(scoped_users[:limit])
    needle = query.lower()
    matches: list[Member] = []
    for user in scoped_users:
        name_match = needle in user.display_name.lower()
        email_match = bool(user.email) and needle in user.email.lower()
        if name_match or email_match:
            matches.append(user)
            if len(matches) >= limit:
                break
    return matches


async def load_scoped_members(store: Store, workspace_id: str | None) -> list[Member]:
    """Profiles of the members of *workspace_id*.

    Without a workspace every profile is eligible.  When the membership
    lookup fails the pool is empty rather than unscoped.
    """
    try:
        if not workspace_id:
            rows = await store.query(PROFILES_TABLE)
            return [Member.from_profile(r) for r in rows]
        members = await store.query(WORKSPACE_MEMBERS_TABLE, [eq("workspace_id", workspace_id)])
        member_ids = [m["user_id"] for m in members if m.get("user_id")]
        if not member_ids:
            return []
        rows = await store.query(PROFILES_TABLE, [is_in("id", member_ids)])
    except Exception as exc:
        log.warning("Could not load members for workspace %s: %s", workspace_id, exc)
        return []
    by_id = {str(r["id"]): Member.from_profile(r) for r in rows}
    # Keep membership order
    return [by_id[uid] for uid in member_ids if uid in by_id]
