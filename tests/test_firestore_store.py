import asyncio
from types import SimpleNamespace

import pytest
from google.api_core import exceptions as gexc
from google.cloud import firestore
from google.cloud.firestore_v1.field_path import FieldPath

from huddle.mentions.suggestions import load_scoped_members
from huddle.store.base import CONNECTED, DELETE, INSERT, DuplicateRowError, OrderBy, StoreError, eq, is_in, lt
from huddle.store.firestore_store import FirestoreStore

_CMP = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a is not None and a < b,
    "<=": lambda a, b: a is not None and a <= b,
    ">": lambda a, b: a is not None and a > b,
    ">=": lambda a, b: a is not None and a >= b,
    "in": lambda a, b: a in b,
}


class FakeSnapshot:
    def __init__(self, ref: "FakeDocRef") -> None:
        self.id = ref.id
        self.reference = ref
        self.exists = ref.id in ref.table
        self._data = dict(ref.table.get(ref.id, {}))

    def to_dict(self) -> dict:
        return dict(self._data)


class FakeDocRef:
    def __init__(self, table: dict, doc_id: str) -> None:
        self.table = table
        self.id = doc_id

    def __eq__(self, other: object) -> bool:
        return isinstance(other, FakeDocRef) and other.table is self.table and other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    def get(self) -> FakeSnapshot:
        return FakeSnapshot(self)

    def create(self, data: dict) -> None:
        if self.id in self.table:
            raise gexc.AlreadyExists(f"document {self.id} exists")
        self.table[self.id] = dict(data)

    def update(self, values: dict) -> None:
        self.table[self.id].update(values)

    def delete(self) -> None:
        self.table.pop(self.id, None)


def _field(snapshot: FakeSnapshot, path: str):
    # Document-id filters compare references, not fields
    if path == FieldPath.document_id():
        return snapshot.reference
    return snapshot.to_dict().get(path)


class FakeQuery:
    def __init__(self, client: "FakeClient", table: dict) -> None:
        self.client = client
        self.table = table
        self.filters: list = []
        self.order: tuple[str, str] | None = None
        self.max_rows: int | None = None
        self.listener = None

    def _copy(self) -> "FakeQuery":
        clone = FakeQuery(self.client, self.table)
        clone.filters, clone.order, clone.max_rows = list(self.filters), self.order, self.max_rows
        return clone

    def where(self, filter) -> "FakeQuery":  # noqa: A002
        clone = self._copy()
        clone.filters.append(filter)
        return clone

    def order_by(self, column: str, direction: str) -> "FakeQuery":
        clone = self._copy()
        clone.order = (column, direction)
        return clone

    def limit(self, count: int) -> "FakeQuery":
        clone = self._copy()
        clone.max_rows = count
        return clone

    def document(self, doc_id: str) -> FakeDocRef:
        return FakeDocRef(self.table, doc_id)

    def stream(self):
        self.client.streams += 1
        if self.client.fail:
            raise gexc.ServiceUnavailable("firestore down")
        docs = [FakeDocRef(self.table, doc_id).get() for doc_id in list(self.table)]
        docs = [d for d in docs
                if all(_CMP[f.op_string](_field(d, f.field_path), f.value) for f in self.filters)]
        if self.order is not None:
            column, direction = self.order
            docs.sort(key=lambda d: d.to_dict().get(column), reverse=direction == firestore.Query.DESCENDING)
        if self.max_rows is not None:
            docs = docs[:self.max_rows]
        return iter(docs)

    def on_snapshot(self, callback):  # noqa: ANN001
        self.client.listeners.append(callback)
        return SimpleNamespace(unsubscribe=lambda: self.client.listeners.remove(callback))


class FakeClient:
    def __init__(self) -> None:
        self.tables: dict[str, dict] = {}
        self.listeners: list = []
        self.fail = False
        self.streams = 0

    def collection(self, name: str) -> FakeQuery:
        return FakeQuery(self, self.tables.setdefault(name, {}))


def _change(kind: str, doc_id: str, data: dict) -> SimpleNamespace:
    document = SimpleNamespace(id=doc_id, to_dict=lambda: dict(data))
    return SimpleNamespace(type=SimpleNamespace(name=kind), document=document)


@pytest.mark.asyncio
async def test_insert_and_query_newest_first() -> None:
    store = FirestoreStore(client=FakeClient())
    for i in range(3):
        await store.insert("messages", {"id": f"m{i}", "thread_id": "t1", "created_at": f"2024-01-0{i + 1}"})
    await store.insert("messages", {"id": "x", "thread_id": "t2", "created_at": "2024-01-09"})

    rows = await store.query("messages", [eq("thread_id", "t1"), lt("created_at", "2024-01-03")],
                             OrderBy("created_at", descending=True), limit=1)

    assert [r["id"] for r in rows] == ["m1"]


@pytest.mark.asyncio
async def test_insert_assigns_id_and_timestamp() -> None:
    store = FirestoreStore(client=FakeClient())
    row = await store.insert("messages", {"thread_id": "t1"})
    assert row["id"]
    assert row["created_at"]


@pytest.mark.asyncio
async def test_duplicate_create_maps_to_duplicate_row() -> None:
    store = FirestoreStore(client=FakeClient())
    await store.insert("notifications", {"id": "n1"})
    with pytest.raises(DuplicateRowError):
        await store.insert("notifications", {"id": "n1"})


@pytest.mark.asyncio
async def test_api_errors_map_to_store_error() -> None:
    client = FakeClient()
    client.fail = True
    with pytest.raises(StoreError):
        await FirestoreStore(client=client).query("messages")


@pytest.mark.asyncio
async def test_update_and_delete_by_filter() -> None:
    store = FirestoreStore(client=FakeClient())
    await store.insert("conversations", {"id": "c1", "thread_id": "t1"})
    await store.insert("conversations", {"id": "c2", "thread_id": "t2"})

    changed = await store.update("conversations", [eq("thread_id", "t1")], {"last_message_at": "now"})
    assert [c["id"] for c in changed] == ["c1"]
    assert changed[0]["last_message_at"] == "now"
    assert await store.delete("conversations", [eq("thread_id", "t2")]) == 1


@pytest.mark.asyncio
async def test_lookup_profile_reads_profiles_collection() -> None:
    client = FakeClient()
    client.tables["profiles"] = {"u-1": {"display_name": "Alice", "email": "alice@corp.test"}}
    store = FirestoreStore(client=client)

    assert await store.lookup_profile("u-1") == {"id": "u-1", "full_name": "Alice", "email": "alice@corp.test"}
    assert await store.lookup_profile("u-2") is None


@pytest.mark.asyncio
async def test_snapshot_changes_become_events() -> None:
    client = FakeClient()
    store = FirestoreStore(client=client)
    events = []
    statuses = []
    sub = store.subscribe("messages", events.append, on_status=statuses.append)
    listener = client.listeners[0]

    listener([], [_change("ADDED", "old", {"thread_id": "t1"})], None)   # initial snapshot
    listener([], [_change("ADDED", "m1", {"thread_id": "t1"}),
                  _change("REMOVED", "m0", {"thread_id": "t1"})], None)
    for _ in range(3):
        await asyncio.sleep(0)

    assert statuses == [CONNECTED]
    assert [(e.kind, (e.new or e.old)["id"]) for e in events] == [(INSERT, "m1"), (DELETE, "m0")]

    sub.close()
    assert client.listeners == []


@pytest.mark.asyncio
async def test_id_filters_match_document_ids() -> None:
    client = FakeClient()
    client.tables["profiles"] = {
        "u-1": {"full_name": "Alice"},
        "u-2": {"full_name": "Bob"},
        "u-3": {"full_name": "Cara"},
    }
    store = FirestoreStore(client=client)

    rows = await store.query("profiles", [is_in("id", ["u-3", "u-1"])])
    assert sorted(r["id"] for r in rows) == ["u-1", "u-3"]
    assert [r["id"] for r in await store.query("profiles", [eq("id", "u-2")])] == ["u-2"]
    assert await store.query("profiles", [is_in("id", [])]) == []


@pytest.mark.asyncio
async def test_wide_in_filter_is_split_into_chunks() -> None:
    client = FakeClient()
    client.tables["profiles"] = {f"u-{i:02d}": {"full_name": f"User {i}"} for i in range(70)}
    store = FirestoreStore(client=client)

    rows = await store.query("profiles", [is_in("id", [f"u-{i:02d}" for i in range(65)])])

    assert len(rows) == 65
    assert client.streams == 3


@pytest.mark.asyncio
async def test_scoped_members_on_firestore() -> None:
    client = FakeClient()
    client.tables["profiles"] = {
        "u-1": {"full_name": "Alice", "email": "alice@corp.test"},
        "u-2": {"full_name": "Bob", "email": "bob@corp.test"},
        "u-3": {"full_name": "Cara", "email": "cara@corp.test"},
    }
    client.tables["workspace_members"] = {
        "wm-1": {"workspace_id": "w1", "user_id": "u-2"},
        "wm-2": {"workspace_id": "w1", "user_id": "u-1"},
        "wm-3": {"workspace_id": "w2", "user_id": "u-3"},
    }

    members = await load_scoped_members(FirestoreStore(client=client), "w1")

    assert [m.id for m in members] == ["u-2", "u-1"]
    assert members[1].display_name == "Alice"


@pytest.mark.asyncio
async def test_mark_read_by_document_id() -> None:
    client = FakeClient()
    store = FirestoreStore(client=client)
    await store.insert("notifications", {"id": "n1", "user_id": "u-1", "is_read": False})
    await store.insert("notifications", {"id": "n2", "user_id": "u-1", "is_read": False})

    changed = await store.update("notifications", [eq("id", "n2"), eq("user_id", "u-1")], {"is_read": True})

    assert [c["id"] for c in changed] == ["n2"]
    assert client.tables["notifications"]["n1"]["is_read"] is False
