"""Firestore persistence layer — messaging tables.

Firestore schema
================
profiles/{uid}
  └── full_name (or display_name), email, created_at
workspace_members/{membership_id}
  └── workspace_id, user_id, role
messages/{message_id}
  └── thread_id, thread_type, sender_id, content, mentioned_user_ids,
      workspace_id, created_at
conversations/{conversation_id}
  └── thread_id, thread_type, title, participants[], last_message_at
notifications/{notification_id}
  └── user_id, message_id, content, sender_name, thread_id, thread_type,
      workspace_id, notification_type, is_read, created_at

Timestamps are ISO 8601 strings (they sort lexicographically), matching
the REST and in-memory adapters.  The ``id`` column is the document id, so
``eq("id", ...)`` and ``is_in("id", [...])`` filter on document keys, and
``in`` lists longer than Firestore allows are split into several queries.
The client library is synchronous; calls run on a worker thread so the
event loop never blocks.
"""
from __future__ import annotations

import asyncio
import logging
import os
import uuid
from datetime import UTC, datetime
from typing import Any

from google.api_core import exceptions as gexc  # type: ignore
from google.cloud import firestore  # type: ignore
from google.cloud.firestore_v1.base_query import FieldFilter  # type: ignore
from google.cloud.firestore_v1.field_path import FieldPath  # type: ignore

from huddle.store.base import (
    CONNECTED,
    DELETE,
    INSERT,
    PROFILES_TABLE,
    UPDATE,
    ChangeCallback,
    ChangeEvent,
    DuplicateRowError,
    Filter,
    OrderBy,
    StatusCallback,
    StoreError,
    Subscription,
)

log = logging.getLogger(__name__)

_OPS = {"eq": "==", "neq": "!=", "lt": "<", "lte": "<=", "gt": ">", "gte": ">=", "in": "in"}
_CHANGE_KINDS = {"ADDED": INSERT, "MODIFIED": UPDATE, "REMOVED": DELETE}
# Most values a single "in" filter may carry
_IN_LIMIT = 30


class FirestoreStore:
    """Stores messages, conversations, notifications and profiles in Firestore."""

    def __init__(self, project_id: str | None = None, client: Any = None) -> None:
        project_id = project_id or os.getenv("GCP_PROJECT_ID", "")
        self.db = client or firestore.Client(project=project_id or None)

    # ── helpers ──────────────────────────────────────────────
    def _now(self) -> str:
        return datetime.now(UTC).isoformat()

    def _profile_ref(self, uid: str):
        return self.db.collection(PROFILES_TABLE).document(uid)

    def _field_filter(self, table: str, f: Filter) -> FieldFilter:
        if f.column != "id":
            return FieldFilter(f.column, _OPS[f.op], f.value)
        # Document ids are keys, not fields
        doc = self.db.collection(table).document
        value = [doc(str(v)) for v in f.value] if f.op == "in" else doc(str(f.value))
        return FieldFilter(FieldPath.document_id(), _OPS[f.op], value)

    def _build_query(self, table: str, filters: list[Filter] | None, order_by: OrderBy | None,
                     limit: int | None):
        query = self.db.collection(table)
        for f in filters or []:
            query = query.where(filter=self._field_filter(table, f))
        if order_by is not None:
            direction = firestore.Query.DESCENDING if order_by.descending else firestore.Query.ASCENDING
            query = query.order_by(order_by.column, direction=direction)
        if limit is not None:
            query = query.limit(limit)
        return query

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except gexc.AlreadyExists as exc:
            raise DuplicateRowError(str(exc)) from exc
        except gexc.GoogleAPICallError as exc:
            raise StoreError(str(exc)) from exc

    # ── Profiles ────────────────────────────────────────────
    async def lookup_profile(self, user_id: str) -> dict | None:
        doc = await self._run(self._profile_ref(user_id).get)
        if not doc.exists:
            return None
        data = doc.to_dict()
        return {
            "id": user_id,
            "full_name": data.get("display_name") or data.get("full_name"),
            "email": data.get("email"),
        }

    # ── Store protocol ──────────────────────────────────────
    async def query(
        self,
        table: str,
        filters: list[Filter] | None = None,
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        filters = list(filters or [])
        if any(f.op == "in" and not f.value for f in filters):
            return []
        wide = next((f for f in filters if f.op == "in" and len(f.value) > _IN_LIMIT), None)
        if wide is None:
            query = self._build_query(table, filters, order_by, limit)

            def _fetch() -> list[dict]:
                return [{"id": d.id, **d.to_dict()} for d in query.stream()]

            return await self._run(_fetch)

        rest = [f for f in filters if f is not wide]
        rows: list[dict] = []
        for start in range(0, len(wide.value), _IN_LIMIT):
            chunk = Filter(wide.column, "in", wide.value[start:start + _IN_LIMIT])
            rows.extend(await self.query(table, rest + [chunk], order_by, limit))
        if order_by is not None:
            column = order_by.column
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=order_by.descending)
        return rows[:limit] if limit is not None else rows

    async def insert(self, table: str, row: dict) -> dict:
        data = dict(row)
        doc_id = data.pop("id", None) or str(uuid.uuid4())
        data.setdefault("created_at", self._now())
        ref = self.db.collection(table).document(doc_id)
        await self._run(ref.create, data)
        return {"id": doc_id, **data}

    async def update(self, table: str, filters: list[Filter], values: dict) -> list[dict]:
        query = self._build_query(table, filters, None, None)

        def _apply() -> list[dict]:
            changed = []
            for d in query.stream():
                d.reference.update(values)
                changed.append({"id": d.id, **d.to_dict(), **values})
            return changed

        return await self._run(_apply)

    async def delete(self, table: str, filters: list[Filter]) -> int:
        query = self._build_query(table, filters, None, None)

        def _apply() -> int:
            count = 0
            for d in query.stream():
                d.reference.delete()
                count += 1
            return count

        return await self._run(_apply)

    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        filters: list[Filter] | None = None,
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        loop = asyncio.get_running_loop()
        query = self._build_query(table, filters, None, None)
        initial = True
        watch = None

        def _teardown() -> None:
            if watch is not None:
                watch.unsubscribe()

        sub = Subscription(table, callback, filters=filters, on_status=on_status, teardown=_teardown)

        def _on_snapshot(_docs, changes, _read_time) -> None:
            # Runs on the listener thread; hop back onto the loop
            nonlocal initial
            if initial:
                initial = False
                loop.call_soon_threadsafe(sub.status, CONNECTED)
                return
            for change in changes:
                kind = _CHANGE_KINDS.get(change.type.name)
                if kind is None:
                    continue
                row = {"id": change.document.id, **(change.document.to_dict() or {})}
                event = ChangeEvent(
                    kind=kind,
                    table=table,
                    new=row if kind != DELETE else {},
                    old=row if kind == DELETE else {},
                )
                asyncio.run_coroutine_threadsafe(sub.deliver(event), loop)

        watch = query.on_snapshot(_on_snapshot)
        return sub
