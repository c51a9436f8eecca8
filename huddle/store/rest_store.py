"""PostgREST / Supabase REST adapter.

Env vars (via ``Settings``):
  SUPABASE_URL   — project URL e.g. https://xyz.supabase.co
  SUPABASE_KEY   — anon or service key, sent as ``apikey`` and bearer token

Tables are addressed as ``{base_url}/rest/v1/{table}``.  Filters use the
PostgREST query syntax (``thread_id=eq.t1``, ``created_at=lt.<ts>``).

The live feed is a polling loop.  Each tick asks for rows at or after the
newest ``created_at`` seen so far and publishes them as INSERT events,
skipping ids already delivered at that exact timestamp, so rows that share
the high-water mark are neither lost nor repeated.  Update and delete
events are not observable this way.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

import httpx

from huddle.store.base import (
    CONNECTED,
    DISCONNECTED,
    INSERT,
    PROFILES_TABLE,
    RECONNECTED,
    ChangeCallback,
    ChangeEvent,
    DuplicateRowError,
    Filter,
    OrderBy,
    StatusCallback,
    StoreError,
    Subscription,
    eq,
    gte,
)

log = logging.getLogger(__name__)

POLL_BATCH = 500


def _format_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def filter_params(filters: list[Filter] | None) -> list[tuple[str, str]]:
    params: list[tuple[str, str]] = []
    for f in filters or []:
        if f.op == "in":
            joined = ",".join(_format_value(v) for v in f.value)
            params.append((f.column, f"in.({joined})"))
        else:
            params.append((f.column, f"{f.op}.{_format_value(f.value)}"))
    return params


@dataclass
class FeedCursor:
    """High-water mark of a polling feed plus the ids delivered at it."""

    since: str | None = None
    seen: set[str] = field(default_factory=set)

    def delivered(self, row: dict) -> bool:
        return row.get("created_at") == self.since and str(row.get("id")) in self.seen

    def advance(self, row: dict) -> None:
        created = row.get("created_at")
        if not created:
            return
        if created != self.since:
            self.since = created
            self.seen = set()
        if row.get("id") is not None:
            self.seen.add(str(row["id"]))


class RestStore:
    """Store adapter for a PostgREST endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        poll_interval: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers

    def _url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    async def _request(self, method: str, table: str, **kwargs) -> httpx.Response:
        headers = {**self._headers, **kwargs.pop("headers", {})}
        try:
            response = await self._client.request(method, self._url(table), headers=headers, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 409:
                raise DuplicateRowError(f"{table}: {exc.response.text}") from exc
            raise StoreError(f"{method} {table} failed: HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise StoreError(f"{method} {table} failed: {exc}") from exc

    # ── Store protocol ────────────────────────────────────────────────────

    async def query(
        self,
        table: str,
        filters: list[Filter] | None = None,
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        params = [("select", "*"), *filter_params(filters)]
        if order_by is not None:
            direction = "desc" if order_by.descending else "asc"
            params.append(("order", f"{order_by.column}.{direction}"))
        if limit is not None:
            params.append(("limit", str(limit)))
        response = await self._request("GET", table, params=params)
        return response.json()

    async def insert(self, table: str, row: dict) -> dict:
        response = await self._request(
            "POST", table, json=row, headers={"Prefer": "return=representation"},
        )
        payload = response.json()
        if isinstance(payload, list):
            if not payload:
                raise StoreError(f"insert into {table} returned no row")
            return payload[0]
        return payload

    async def update(self, table: str, filters: list[Filter], values: dict) -> list[dict]:
        response = await self._request(
            "PATCH", table, params=filter_params(filters), json=values,
            headers={"Prefer": "return=representation"},
        )
        return response.json()

    async def delete(self, table: str, filters: list[Filter]) -> int:
        response = await self._request(
            "DELETE", table, params=filter_params(filters),
            headers={"Prefer": "return=representation"},
        )
        return len(response.json())

    async def lookup_profile(self, user_id: str) -> dict | None:
        rows = await self.query(PROFILES_TABLE, [Filter("id", "eq", user_id)], limit=1)
        return rows[0] if rows else None

    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        filters: list[Filter] | None = None,
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        task: asyncio.Task | None = None

        def _teardown() -> None:
            if task is not None:
                task.cancel()

        sub = Subscription(table, callback, filters=filters, on_status=on_status, teardown=_teardown)
        task = asyncio.get_running_loop().create_task(self._poll(sub))
        return sub

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Polling feed ──────────────────────────────────────────────────────

    async def _prime(self, sub: Subscription) -> FeedCursor:
        """Cursor at the current newest row, so existing rows are not replayed."""
        rows = await self.query(
            sub.table, sub.filters, OrderBy("created_at", descending=True), limit=1,
        )
        cursor = FeedCursor()
        if not rows or not rows[0].get("created_at"):
            return cursor
        cursor.since = rows[0]["created_at"]
        peers = await self.query(sub.table, [*sub.filters, eq("created_at", cursor.since)])
        cursor.seen = {str(r["id"]) for r in peers if r.get("id") is not None}
        return cursor

    async def poll_once(self, sub: Subscription, cursor: FeedCursor) -> FeedCursor:
        """Publish rows not yet delivered; return the advanced cursor."""
        filters = list(sub.filters)
        if cursor.since is not None:
            filters.append(gte("created_at", cursor.since))
        # Rows already seen at the boundary come back too; leave room for new ones
        limit = POLL_BATCH + len(cursor.seen)
        rows = await self.query(sub.table, filters, OrderBy("created_at"), limit=limit)
        for row in rows:
            if cursor.delivered(row):
                continue
            try:
                await sub.deliver(ChangeEvent(kind=INSERT, table=sub.table, new=row))
            except Exception:
                log.exception("change callback failed for %s", sub.table)
            cursor.advance(row)
        return cursor

    async def _poll(self, sub: Subscription) -> None:
        cursor: FeedCursor | None = None
        healthy = True
        while not sub.closed:
            try:
                if cursor is None:
                    cursor = await self._prime(sub)
                    sub.status(CONNECTED)
                else:
                    cursor = await self.poll_once(sub, cursor)
                if not healthy:
                    healthy = True
                    sub.status(RECONNECTED)
            except StoreError as exc:
                if healthy:
                    log.warning("Polling feed for %s lost: %s", sub.table, exc)
                    healthy = False
                    sub.status(DISCONNECTED)
            await asyncio.sleep(self.poll_interval)
