"""Store contracts shared by every persistence adapter.

The messaging core never talks to a database directly.  It issues four
kinds of calls against whatever backs the collaboration app:

  query      rows matching filters, ordered, limited
  insert     one row in, the stored row (with server-assigned fields) out
  update     / delete: tolerated, not relied on by the sync engine
  subscribe  row-level change events, at-least-once delivery

plus ``lookup_profile`` for display-name resolution.

Adapters
--------
``MemoryStore``     in-process, used by tests and local development
``RestStore``       PostgREST / Supabase REST over httpx (polling feed)
``FirestoreStore``  Google Cloud Firestore (``on_snapshot`` feed)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, Union

log = logging.getLogger(__name__)

FILTER_OPS = ("eq", "neq", "lt", "lte", "gt", "gte", "in")

# Tables every adapter reads for people; messaging tables live in huddle.messaging.models
PROFILES_TABLE = "profiles"
WORKSPACE_MEMBERS_TABLE = "workspace_members"

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"

# Subscription status values passed to ``on_status`` callbacks
CONNECTED = "connected"
DISCONNECTED = "disconnected"
RECONNECTED = "reconnected"


class StoreError(Exception):
    """A read, write or subscribe call against the backing store failed."""


class DuplicateRowError(StoreError):
    """An insert collided with an existing primary key."""


@dataclass(frozen=True)
class Filter:
    column: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPS:
            raise ValueError(f"unsupported filter op {self.op!r}")

    def matches(self, row: dict) -> bool:
        current = row.get(self.column)
        if self.op == "eq":
            return current == self.value
        if self.op == "neq":
            return current != self.value
        if self.op == "in":
            return current in self.value
        if current is None:
            return False
        if self.op == "lt":
            return current < self.value
        if self.op == "lte":
            return current <= self.value
        if self.op == "gt":
            return current > self.value
        return current >= self.value


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def is_in(column: str, values: list) -> Filter:
    return Filter(column, "in", list(values))


def matches_all(row: dict, filters: list[Filter] | None) -> bool:
    return all(f.matches(row) for f in filters or [])


@dataclass(frozen=True)
class OrderBy:
    column: str
    descending: bool = False


@dataclass(frozen=True)
class ChangeEvent:
    """One row-level change delivered by a subscription."""
    kind: str                 # INSERT | UPDATE | DELETE
    table: str
    new: dict = field(default_factory=dict)
    old: dict = field(default_factory=dict)


ChangeCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]
StatusCallback = Callable[[str], None]


class Subscription:
    """Handle for one live subscription.

    Owned by whoever opened it; ``close()`` detaches the callback and runs
    the adapter's teardown exactly once.
    """

    def __init__(
        self,
        table: str,
        callback: ChangeCallback,
        filters: list[Filter] | None = None,
        on_status: StatusCallback | None = None,
        teardown: Callable[[], None] | None = None,
    ) -> None:
        self.table = table
        self.filters = list(filters or [])
        self._callback = callback
        self._on_status = on_status
        self._teardown = teardown
        self.closed = False

    def wants(self, event: ChangeEvent) -> bool:
        if self.closed or event.table != self.table:
            return False
        row = event.new or event.old
        return matches_all(row, self.filters)

    async def deliver(self, event: ChangeEvent) -> None:
        if not self.wants(event):
            return
        result = self._callback(event)
        if result is not None:
            await result

    def status(self, value: str) -> None:
        if self.closed or self._on_status is None:
            return
        try:
            self._on_status(value)
        except Exception as exc:
            log.warning("Subscription status handler failed for %s: %s", self.table, exc)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._teardown is not None:
            self._teardown()


class Store(Protocol):
    async def query(
        self,
        table: str,
        filters: list[Filter] | None = None,
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[dict]: ...

    async def insert(self, table: str, row: dict) -> dict: ...

    async def update(self, table: str, filters: list[Filter], values: dict) -> list[dict]: ...

    async def delete(self, table: str, filters: list[Filter]) -> int: ...

    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        filters: list[Filter] | None = None,
        on_status: StatusCallback | None = None,
    ) -> Subscription: ...

    async def lookup_profile(self, user_id: str) -> dict | None: ...
