"""Mention-aware text editor model.

Holds one logical value in two forms:

  storage_value   what gets persisted, mentions as ``@{userId:...}`` tokens
  display_value   what the user sees and edits, mentions as ``@Name``

Storage is the source of truth.  Every user edit arrives as display text
and is mapped back to storage from that same snapshot; a committed
suggestion rewrites both forms in one step.

States
------
IDLE        dropdown closed
SUGGESTING  dropdown open, ``selected_index`` marks the highlighted member

Keys while SUGGESTING: ArrowDown / ArrowUp wrap through the candidates,
Enter commits the highlighted one, Escape closes.  Anything else is left
to normal text editing and re-evaluated on the next ``change``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from huddle.mentions.codec import (
    TOKEN_RE,
    UNKNOWN_USER,
    NameTable,
    decode,
    encode_token,
    extract_mentions,
    reverse_map,
)
from huddle.mentions.names import DisplayNameCache, resolve_names
from huddle.mentions.suggestions import MAX_SUGGESTIONS, Member, detect_trigger, filter_candidates

log = logging.getLogger(__name__)

KEY_UP = "ArrowUp"
KEY_DOWN = "ArrowDown"
KEY_ENTER = "Enter"
KEY_ESCAPE = "Escape"


class EditorState(str, Enum):
    IDLE = "idle"
    SUGGESTING = "suggesting"


@dataclass(frozen=True)
class Commit:
    display_text: str
    storage_text: str
    cursor: int
    user_id: str


def map_cursor(storage_text: str, names: dict[str, str], cursor: int) -> int:
    """Translate a position in *storage_text* to the rendered display text."""
    shift = 0
    for match in TOKEN_RE.finditer(storage_text):
        rendered = "@" + names.get(match.group(1), "")
        if match.end() <= cursor:
            shift += len(rendered) - (match.end() - match.start())
        elif match.start() < cursor:
            # Inside a token: land just after the rendered name
            return match.start() + shift + len(rendered)
        else:
            break
    return cursor + shift


class MentionEditor:
    def __init__(
        self,
        members: Iterable[Member],
        names: NameTable | None = None,
        max_suggestions: int = MAX_SUGGESTIONS,
    ) -> None:
        self.members = list(members)
        self.names = names if names is not None else NameTable.from_members(self.members)
        # Ids this editor rendered as the unknown-user placeholder
        self._unnamed = NameTable()
        self.max_suggestions = max_suggestions
        self._storage = ""
        self._display = ""
        self._cursor = 0
        self._revision = 0
        self._state = EditorState.IDLE
        self._candidates: list[Member] = []
        self._selected_index = 0

    # ── Read-only view ────────────────────────────────────────────────────

    @property
    def storage_value(self) -> str:
        return self._storage

    @property
    def display_value(self) -> str:
        return self._display

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def revision(self) -> int:
        return self._revision

    @property
    def state(self) -> EditorState:
        return self._state

    @property
    def candidates(self) -> list[Member]:
        return list(self._candidates)

    @property
    def selected_index(self) -> int:
        return self._selected_index

    @property
    def highlighted(self) -> Member | None:
        if self._state is not EditorState.SUGGESTING or not self._candidates:
            return None
        return self._candidates[self._selected_index]

    @property
    def mentioned_user_ids(self) -> list[str]:
        return extract_mentions(self._storage)

    # ── Suggestion state ──────────────────────────────────────────────────

    def _close(self) -> None:
        self._state = EditorState.IDLE
        self._candidates = []
        self._selected_index = 0

    def _set_candidates(self, candidates: list[Member]) -> None:
        if [c.id for c in candidates] != [c.id for c in self._candidates]:
            self._selected_index = 0
        self._candidates = candidates

    def _evaluate(self) -> None:
        trigger = detect_trigger(self._display, self._cursor)
        if not trigger.active:
            self._close()
            return
        candidates = filter_candidates(trigger.query, self.members, self.max_suggestions)
        if not candidates:
            self._close()
            return
        self._set_candidates(candidates)
        self._state = EditorState.SUGGESTING

    def _remember(self, user_id: str, name: str) -> None:
        if name == UNKNOWN_USER:
            self._unnamed.remember(user_id, name, allow_placeholder=True)
        else:
            self.names.remember(user_id, name)

    def _reverse(self, display_text: str) -> str:
        table = self.names.merged(self._unnamed) if len(self._unnamed) else self.names
        return reverse_map(display_text, table)

    # ── User input ────────────────────────────────────────────────────────

    def change(self, display_text: str, cursor: int) -> None:
        """Apply a user edit made to the display text."""
        self._revision += 1
        self._display = display_text
        self._storage = self._reverse(display_text)
        self._cursor = max(0, min(cursor, len(display_text)))
        self._evaluate()

    def move_cursor(self, cursor: int) -> None:
        self._cursor = max(0, min(cursor, len(self._display)))
        self._evaluate()

    def handle_key(self, key: str) -> bool:
        """Route a key press; returns True when the dropdown consumed it."""
        if self._state is not EditorState.SUGGESTING:
            return False
        count = len(self._candidates)
        if key == KEY_ESCAPE:
            self._close()
            return True
        if key == KEY_DOWN:
            self._selected_index = (self._selected_index + 1) % count
            return True
        if key == KEY_UP:
            self._selected_index = (self._selected_index - 1) % count
            return True
        if key == KEY_ENTER:
            self.select(self._candidates[self._selected_index])
            return True
        return False

    def blur(self, inside_dropdown: bool = False) -> None:
        if not inside_dropdown:
            self._close()

    def select(self, member: Member) -> Commit | None:
        """Commit *member* at the active trigger.  None when no trigger is active."""
        display, cursor = self._display, self._cursor
        trigger = detect_trigger(display, cursor)
        if not trigger.active:
            self._close()
            return None
        start = trigger.trigger_start
        mention = "@" + member.display_name + " "
        before, after = display[:start], display[cursor:]
        new_display = before + mention + after
        new_storage = (
            self._reverse(before) + encode_token(member.id) + " " + self._reverse(after)
        )
        self._remember(member.id, member.display_name)
        self._display, self._storage = new_display, new_storage
        self._cursor = start + len(mention)
        self._revision += 1
        self._close()
        return Commit(display_text=new_display, storage_text=new_storage, cursor=self._cursor, user_id=member.id)

    def clear(self) -> None:
        self._revision += 1
        self._unnamed = NameTable()
        self._display = self._storage = ""
        self._cursor = 0
        self._close()

    # ── Mounting existing content ─────────────────────────────────────────

    async def hydrate(self, storage_text: str, cache: DisplayNameCache) -> bool:
        """Load stored content, resolving names asynchronously.

        Until resolution finishes the raw tokens are shown.  If the user
        edits in the meantime the resolved text is dropped and False is
        returned.
        """
        self._revision += 1
        revision = self._revision
        self._storage = self._display = storage_text
        self._cursor = len(storage_text)
        self._close()

        names = await resolve_names(storage_text, cache)
        if revision != self._revision:
            log.debug("discarding stale name resolution (rev %s, now %s)", revision, self._revision)
            return False

        self._unnamed = NameTable()
        for user_id, name in names.items():
            self._remember(user_id, name)
        self._cursor = map_cursor(storage_text, names, self._cursor)
        self._display = decode(storage_text).resolve_display(names.get)
        return True
