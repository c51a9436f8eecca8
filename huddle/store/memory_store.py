"""In-process store with a live change feed.

Rows live in plain lists per table.  Every write publishes a
``ChangeEvent`` to matching subscriptions as a separate asyncio task, so
callbacks run after the writer resumes, the same ordering a remote feed
gives.  ``flush()`` waits for all pending deliveries (handy in tests).

``disconnect()`` / ``reconnect()`` simulate a dropped feed: events written
while disconnected are lost, never replayed.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections import defaultdict
from datetime import UTC, datetime, timedelta

from huddle.store.base import (
    CONNECTED,
    DELETE,
    DISCONNECTED,
    INSERT,
    PROFILES_TABLE,
    RECONNECTED,
    UPDATE,
    ChangeCallback,
    ChangeEvent,
    DuplicateRowError,
    Filter,
    OrderBy,
    StatusCallback,
    Subscription,
    matches_all,
)

log = logging.getLogger(__name__)


class MemoryStore:
    """Async in-memory implementation of the ``Store`` protocol."""

    def __init__(self, duplicate_deliveries: bool = False) -> None:
        self._tables: dict[str, list[dict]] = defaultdict(list)
        self._subscriptions: list[Subscription] = []
        self._pending: set[asyncio.Task] = set()
        self._last_ts: datetime | None = None
        self.connected = True
        # At-least-once simulation: publish every event twice
        self.duplicate_deliveries = duplicate_deliveries

    # ── Internal ──────────────────────────────────────────────────────────

    def _now(self) -> str:
        now = datetime.now(UTC)
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now.isoformat()

    def _publish(self, event: ChangeEvent) -> None:
        if not self.connected:
            log.debug("feed disconnected; dropping %s on %s", event.kind, event.table)
            return
        copies = 2 if self.duplicate_deliveries else 1
        for sub in list(self._subscriptions):
            if not sub.wants(event):
                continue
            for _ in range(copies):
                task = asyncio.get_running_loop().create_task(self._deliver(sub, event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    async def _deliver(self, sub: Subscription, event: ChangeEvent) -> None:
        try:
            await sub.deliver(event)
        except Exception:
            log.exception("change callback failed for %s", event.table)

    # ── Seeding (tests / local dev) ───────────────────────────────────────

    def seed(self, table: str, rows: list[dict]) -> None:
        """Load rows without publishing events."""
        for row in rows:
            self._tables[table].append(dict(row))

    def rows(self, table: str) -> list[dict]:
        return copy.deepcopy(self._tables[table])

    # ── Store protocol ────────────────────────────────────────────────────

    async def query(
        self,
        table: str,
        filters: list[Filter] | None = None,
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        rows = [r for r in self._tables[table] if matches_all(r, filters)]
        if order_by is not None:
            rows.sort(key=lambda r: (r.get(order_by.column) is None, r.get(order_by.column)),
                      reverse=order_by.descending)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def insert(self, table: str, row: dict) -> dict:
        stored = dict(row)
        stored.setdefault("id", str(uuid.uuid4()))
        if any(r.get("id") == stored["id"] for r in self._tables[table]):
            raise DuplicateRowError(f"{table}: duplicate id {stored['id']}")
        stored.setdefault("created_at", self._now())
        self._tables[table].append(stored)
        self._publish(ChangeEvent(kind=INSERT, table=table, new=copy.deepcopy(stored)))
        return copy.deepcopy(stored)

    async def update(self, table: str, filters: list[Filter], values: dict) -> list[dict]:
        changed: list[dict] = []
        for row in self._tables[table]:
            if matches_all(row, filters):
                old = copy.deepcopy(row)
                row.update(values)
                changed.append(copy.deepcopy(row))
                self._publish(ChangeEvent(kind=UPDATE, table=table, new=copy.deepcopy(row), old=old))
        return changed

    async def delete(self, table: str, filters: list[Filter]) -> int:
        kept, removed = [], []
        for row in self._tables[table]:
            (removed if matches_all(row, filters) else kept).append(row)
        self._tables[table] = kept
        for row in removed:
            self._publish(ChangeEvent(kind=DELETE, table=table, old=copy.deepcopy(row)))
        return len(removed)

    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        filters: list[Filter] | None = None,
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        sub = Subscription(
            table,
            callback,
            filters=filters,
            on_status=on_status,
            teardown=lambda: self._subscriptions.remove(sub),
        )
        self._subscriptions.append(sub)
        sub.status(CONNECTED)
        return sub

    async def lookup_profile(self, user_id: str) -> dict | None:
        for row in self._tables[PROFILES_TABLE]:
            if row.get("id") == user_id:
                return dict(row)
        return None

    # ── Feed control ──────────────────────────────────────────────────────

    def disconnect(self) -> None:
        self.connected = False
        for sub in list(self._subscriptions):
            sub.status(DISCONNECTED)

    def reconnect(self) -> None:
        self.connected = True
        for sub in list(self._subscriptions):
            sub.status(RECONNECTED)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def flush(self) -> None:
        """Wait until every published event has been delivered."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
