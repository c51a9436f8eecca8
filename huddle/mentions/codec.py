"""Mention codec — storage tokens ↔ display text.

Message bodies are persisted in *storage format*, where each mention is an
id-bearing token::

    Hey @{userId:u-42} can you review?

and rendered in *display format* by substituting the referenced user's
current name::

    Hey @Alice can you review?

Names are a read-time projection, so a message stays correct after the
user renames.  ``reverse_map`` goes the other way for text the user has
just edited in display form.

Known limitation of ``reverse_map``: display text alone cannot tell apart
two users sharing a name, nor "@Al" from the start of "@Alice".  The rules
are: the longest known name at a position wins, and for identical names
the most recently remembered id wins.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable

log = logging.getLogger(__name__)

UNKNOWN_USER = "Unknown User"

TOKEN_PREFIX = "@{userId:"
TOKEN_SUFFIX = "}"
TOKEN_RE = re.compile(r"@\{userId:([^}]+)\}")


def encode_token(user_id: str) -> str:
    """Return the storage token for *user_id*."""
    if not user_id or TOKEN_SUFFIX in user_id:
        raise ValueError(f"cannot encode mention for user id {user_id!r}")
    return f"{TOKEN_PREFIX}{user_id}{TOKEN_SUFFIX}"


def _dedupe(ids: Iterable[str]) -> list[str]:
    found: list[str] = []
    seen: set[str] = set()
    for user_id in ids:
        if user_id not in seen:
            found.append(user_id)
            seen.add(user_id)
    return found


@dataclass(frozen=True)
class DecodedContent:
    storage_text: str
    mentioned_user_ids: tuple[str, ...]

    def unique_user_ids(self) -> list[str]:
        """Distinct ids in order of first appearance."""
        return _dedupe(self.mentioned_user_ids)

    def resolve_display(self, name_lookup: Callable[[str], str | None]) -> str:
        """Render display text; unresolvable ids become ``@Unknown User``."""
        names: dict[str, str] = {}
        for user_id in self.unique_user_ids():
            try:
                name = name_lookup(user_id)
            except Exception as exc:
                log.warning("Name lookup failed for %s: %s", user_id, exc)
                name = None
            names[user_id] = name or UNKNOWN_USER
        return TOKEN_RE.sub(lambda m: "@" + names[m.group(1)], self.storage_text)


def decode(storage_text: str) -> DecodedContent:
    """Scan *storage_text* for tokens, left to right, non-overlapping."""
    ids = tuple(m.group(1) for m in TOKEN_RE.finditer(storage_text or ""))
    return DecodedContent(storage_text=storage_text or "", mentioned_user_ids=ids)


def extract_mentions(storage_text: str) -> list[str]:
    """Distinct mentioned user ids, first appearance first."""
    return decode(storage_text).unique_user_ids()


class NameTable:
    """Display name → user id, last write wins per exact name string."""

    def __init__(self) -> None:
        self._ids: dict[str, str] = {}

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, str]]) -> "NameTable":
        table = cls()
        for user_id, name in pairs:
            table.remember(user_id, name)
        return table

    @classmethod
    def from_members(cls, members: Iterable) -> "NameTable":
        return cls.from_pairs((m.id, m.display_name) for m in members)

    def remember(self, user_id: str, name: str | None, allow_placeholder: bool = False) -> None:
        """Map *name* to *user_id*.  The unknown-user placeholder is ignored
        unless *allow_placeholder* is set."""
        if not name or (name == UNKNOWN_USER and not allow_placeholder):
            return
        # Re-insert so iteration order reflects recency
        self._ids.pop(name, None)
        self._ids[name] = user_id

    def merged(self, other: "NameTable") -> "NameTable":
        """New table with *other* layered over this one; *other* wins on clashes."""
        table = NameTable()
        table._ids = dict(self._ids)
        for name, user_id in other._ids.items():
            table._ids.pop(name, None)
            table._ids[name] = user_id
        return table

    def get(self, name: str) -> str | None:
        return self._ids.get(name)

    def names(self) -> list[str]:
        return list(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, name: object) -> bool:
        return name in self._ids


def reverse_map(display_text: str, names: NameTable | dict[str, str]) -> str:
    """Replace ``@Name`` for every known name with that user's token."""
    table = names if isinstance(names, NameTable) else NameTable.from_pairs(
        (user_id, name) for name, user_id in names.items()
    )
    if not display_text or not len(table):
        return display_text
    # Longest first so "@Alice" is not consumed as "@Al" + "ice"
    ordered = sorted(table.names(), key=len, reverse=True)
    pattern = re.compile("@(" + "|".join(re.escape(n) for n in ordered) + ")")
    return pattern.sub(lambda m: encode_token(table.get(m.group(1))), display_text)
