"""Huddle Messaging Service — v0.1.0

HTTP front for the mention-aware messaging core:
 • thread windows: open (newest page), load older, full refresh
 • send with mention extraction + notification fan-out
 • @mention suggestions scoped to workspace members
 • decode storage text to display text / commit a suggestion
 • per-user notification inbox: list, unread count, mark read, delete
"""
import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.requests import Request as StarletteRequest
from starlette.responses import JSONResponse, PlainTextResponse

# Ensure huddle package is importable when running from service root
_repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", ".."))
if _repo_root not in sys.path:
    sys.path.insert(0, _repo_root)

from huddle.config import Settings, build_change_feed, build_store  # noqa: E402
from huddle.mentions.codec import decode, extract_mentions  # noqa: E402
from huddle.mentions.editor import MentionEditor  # noqa: E402
from huddle.mentions.names import DisplayNameCache, render_display  # noqa: E402
from huddle.mentions.suggestions import detect_trigger, filter_candidates, load_scoped_members  # noqa: E402
from huddle.messaging import MessageSender, Sender, ThreadSyncEngine, ThreadWindow  # noqa: E402
from huddle.notifications.fanout import MentionNotifier  # noqa: E402
from huddle.notifications.inbox import NotificationInbox  # noqa: E402
from huddle.observability.metrics import MetricsRegistry  # noqa: E402
from huddle.store.base import StoreError  # noqa: E402

log = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════
#  Shared services
# ═══════════════════════════════════════════════════════════
settings = Settings.from_env()
metrics = MetricsRegistry()
store = build_store(settings)
change_feed = build_change_feed(settings)
names = DisplayNameCache(store.lookup_profile)
engine = ThreadSyncEngine(store, page_size=settings.page_size, metrics=metrics)
notifier = MentionNotifier(store, snippet_chars=settings.snippet_chars, metrics=metrics)
sender = MessageSender(store, engine, notifier, names)
inbox = NotificationInbox(store)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    relay = change_feed.relay(store, "messages") if change_feed is not None else None
    engine.start()
    log.info("messaging engine subscribed (store=%s, relay=%s)", settings.store, bool(relay))
    try:
        yield
    finally:
        engine.close()
        if relay is not None:
            relay.close()
            await change_feed.aclose()
        if hasattr(store, "aclose"):
            await store.aclose()


app = FastAPI(title="Huddle Messaging", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
async def _store_exc_handler(request: StarletteRequest, exc: StoreError):
    log.warning("Store error on %s %s: %s", request.method, request.url.path, exc)
    metrics.inc("huddle_store_errors_total", method=request.method)
    return JSONResponse(status_code=502, content={"detail": str(exc) or "Store unavailable"})


@app.exception_handler(Exception)
async def _global_exc_handler(request: StarletteRequest, exc: Exception):
    """Convert unhandled exceptions into a proper JSONResponse so the CORS
    middleware can add Access-Control-Allow-Origin headers to error replies."""
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc) or "Internal Server Error"},
    )


# ═══════════════════════════════════════════════════════════
#  Request models
# ═══════════════════════════════════════════════════════════
class SendRequest(BaseModel):
    content: str = Field(min_length=1)
    thread_type: str = Field(default="channel", min_length=1)
    sender_id: str = Field(min_length=1)
    sender_name: str = ""
    workspace_id: str | None = None


class SuggestRequest(BaseModel):
    text: str
    cursor: int = Field(ge=0)
    workspace_id: str | None = None


class DecodeRequest(BaseModel):
    content: str


class SelectRequest(BaseModel):
    display_text: str
    cursor: int = Field(ge=0)
    user_id: str = Field(min_length=1)
    workspace_id: str | None = None


# ═══════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════
async def _window_payload(window: ThreadWindow) -> dict:
    payload = window.to_dict()
    for item in payload["messages"]:
        item["display_text"] = await render_display(item["content"], names)
    return payload


# ═══════════════════════════════════════════════════════════
#  Endpoints
# ═══════════════════════════════════════════════════════════
@app.get("/health")
def health() -> dict:
    return {
        "status": "ok",
        "service": "messaging",
        "version": "0.1.0",
        "store": settings.store,
        "subscribed": engine.subscribed,
        "needs_refresh": engine.needs_refresh,
    }


@app.get("/metrics")
def get_metrics() -> PlainTextResponse:
    metrics.inc("huddle_metrics_scrapes_total")
    return PlainTextResponse(metrics.render_prometheus())


@app.post("/api/threads/{thread_id}/open")
async def open_thread(thread_id: str) -> dict:
    window = await engine.open_thread(thread_id)
    return await _window_payload(window)


@app.post("/api/threads/{thread_id}/older")
async def load_older(thread_id: str) -> dict:
    if engine.window(thread_id) is None:
        raise HTTPException(status_code=404, detail="thread not open")
    added = await engine.load_older(thread_id)
    payload = await _window_payload(engine.window(thread_id))
    payload["added"] = len(added)
    return payload


@app.post("/api/threads/{thread_id}/refresh")
async def refresh_thread(thread_id: str) -> dict:
    window = await engine.refresh_thread(thread_id)
    return await _window_payload(window)


@app.get("/api/threads/{thread_id}")
async def get_thread(thread_id: str) -> dict:
    window = engine.window(thread_id)
    if window is None:
        raise HTTPException(status_code=404, detail="thread not open")
    return await _window_payload(window)


@app.post("/api/threads/{thread_id}/messages")
async def send_message(thread_id: str, req: SendRequest) -> dict:
    try:
        result = await sender.send(
            req.content,
            thread_id,
            req.thread_type,
            Sender(id=req.sender_id, display_name=req.sender_name),
            workspace_id=req.workspace_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return result.to_dict()


@app.post("/api/mentions/suggest")
async def suggest(req: SuggestRequest) -> dict:
    trigger = detect_trigger(req.text, req.cursor)
    if not trigger.active:
        return {"active": False, "query": "", "trigger_start": -1, "candidates": []}
    members = await load_scoped_members(store, req.workspace_id)
    candidates = filter_candidates(trigger.query, members, settings.max_suggestions)
    return {
        "active": True,
        "query": trigger.query,
        "trigger_start": trigger.trigger_start,
        "candidates": [c.to_dict() for c in candidates],
    }


@app.post("/api/mentions/decode")
async def decode_content(req: DecodeRequest) -> dict:
    return {
        "mentions": list(decode(req.content).mentioned_user_ids),
        "mentioned_user_ids": extract_mentions(req.content),
        "display_text": await render_display(req.content, names),
    }


@app.post("/api/mentions/select")
async def select_mention(req: SelectRequest) -> dict:
    members = await load_scoped_members(store, req.workspace_id)
    member = next((m for m in members if m.id == req.user_id), None)
    if member is None:
        raise HTTPException(status_code=404, detail="user is not a member of this workspace")
    editor = MentionEditor(members, max_suggestions=settings.max_suggestions)
    editor.change(req.display_text, req.cursor)
    commit = editor.select(member)
    if commit is None:
        raise HTTPException(status_code=400, detail="no active @mention at cursor")
    return {
        "display_text": commit.display_text,
        "storage_text": commit.storage_text,
        "cursor": commit.cursor,
        "mentioned_user_ids": editor.mentioned_user_ids,
    }


@app.get("/api/users/{user_id}/notifications")
async def list_notifications(
    user_id: str,
    workspace_id: str | None = None,
    unread_only: bool = False,
    limit: int | None = None,
) -> dict:
    notes = await inbox.list_for(user_id, workspace_id=workspace_id, unread_only=unread_only, limit=limit)
    return {
        "notifications": [n.to_dict() for n in notes],
        "unread_count": await inbox.unread_count(user_id, workspace_id=workspace_id),
    }


@app.post("/api/users/{user_id}/notifications/read-all")
async def mark_all_notifications_read(user_id: str, workspace_id: str | None = None) -> dict:
    return {"updated": await inbox.mark_all_read(user_id, workspace_id=workspace_id)}


@app.post("/api/users/{user_id}/notifications/{notification_id}/read")
async def mark_notification_read(user_id: str, notification_id: str) -> dict:
    if not await inbox.mark_read(user_id, notification_id):
        raise HTTPException(status_code=404, detail="notification not found")
    return {"id": notification_id, "is_read": True}


@app.post("/api/users/{user_id}/threads/{thread_id}/notifications/read")
async def mark_thread_notifications_read(user_id: str, thread_id: str, workspace_id: str | None = None) -> dict:
    updated = await inbox.mark_thread_read(user_id, thread_id, workspace_id=workspace_id)
    return {"updated": updated}


@app.delete("/api/users/{user_id}/notifications/{notification_id}")
async def delete_notification(user_id: str, notification_id: str) -> dict:
    if not await inbox.delete(user_id, notification_id):
        raise HTTPException(status_code=404, detail="notification not found")
    return {"id": notification_id, "deleted": True}
