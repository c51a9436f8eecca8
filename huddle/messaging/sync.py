"""Thread pagination & live sync engine.

One ``ThreadSyncEngine`` per viewer session.  It owns:

* a ``ThreadWindow`` per opened thread, created lazily by ``open_thread``;
* one subscription to the ``messages`` table, opened by ``start()`` and
  released by ``close()``.

Growth directions
-----------------
backward  ``load_older`` fetches rows strictly older than the window's
          cursor; serialised per thread by the ``loading`` flag (a second
          call while one is in flight is a no-op, not queued).
forward   ``on_live_insert`` merges rows delivered by the change feed.
          Delivery is at-least-once, and the sender's own insert may race
          the feed, so merging is idempotent by message id.

After the feed reconnects nothing is replayed; ``needs_refresh`` is set
and the caller decides when to ``refresh_thread`` / ``refresh_all``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

from huddle.messaging.models import MESSAGES_TABLE, Message
from huddle.messaging.window import ThreadWindow
from huddle.observability.metrics import MetricsRegistry
from huddle.store.base import (
    DISCONNECTED,
    INSERT,
    RECONNECTED,
    ChangeEvent,
    OrderBy,
    Store,
    Subscription,
    eq,
    lt,
)

log = logging.getLogger(__name__)

PAGE_SIZE = 50

WindowListener = Callable[[str, ThreadWindow], None]


class ThreadSyncEngine:
    def __init__(self, store: Store, page_size: int = PAGE_SIZE, metrics: MetricsRegistry | None = None) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.store = store
        self.page_size = page_size
        self.metrics = metrics or MetricsRegistry()
        self.needs_refresh = False
        self._windows: dict[str, ThreadWindow] = {}
        self._opening: dict[str, asyncio.Future] = {}
        self._subscription: Subscription | None = None
        self._listeners: list[WindowListener] = []

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> Subscription:
        if self._subscription is None or self._subscription.closed:
            self._subscription = self.store.subscribe(
                MESSAGES_TABLE, self._on_change, on_status=self._on_status,
            )
        return self._subscription

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    async def __aenter__(self) -> "ThreadSyncEngine":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ── Listeners ─────────────────────────────────────────────────────────

    def add_listener(self, listener: WindowListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self, window: ThreadWindow) -> None:
        for listener in list(self._listeners):
            try:
                listener(window.thread_id, window)
            except Exception as exc:
                log.warning("Window listener failed for %s: %s", window.thread_id, exc)

    # ── Windows ───────────────────────────────────────────────────────────

    def window(self, thread_id: str) -> ThreadWindow | None:
        return self._windows.get(thread_id)

    def open_threads(self) -> list[str]:
        return [t for t, w in self._windows.items() if w.initialized]

    async def _fetch_page(
        self, thread_id: str, before: str | None = None,
    ) -> tuple[list[Message], int, str | None]:
        """Newest-first page from the store, returned oldest-first.

        Also returns the raw row count and the oldest raw ``created_at``, so
        the cursor can move past rows that fail to parse.
        """
        filters = [eq("thread_id", thread_id)]
        if before is not None:
            filters.append(lt("created_at", before))
        direction = "newest" if before is None else "older"
        with self.metrics.track_ms("huddle_page_fetch", page=direction):
            rows = await self.store.query(
                MESSAGES_TABLE, filters, OrderBy("created_at", descending=True), limit=self.page_size,
            )
        messages: list[Message] = []
        for row in rows:
            try:
                messages.append(Message.from_row(row))
            except ValueError as exc:
                log.warning("Skipping malformed message row in %s: %s", thread_id, exc)
        messages.sort(key=lambda m: m.sort_key)
        self.metrics.inc("huddle_pages_fetched_total", page=direction)
        stamps = [str(r["created_at"]) for r in rows if r.get("created_at")]
        return messages, len(rows), min(stamps) if stamps else None

    def _advance_cursor(self, window: ThreadWindow, fetched: int, oldest: str | None) -> None:
        # The cursor follows raw rows, so a page of unparseable rows still moves it
        window.has_more = fetched == self.page_size
        if oldest is not None:
            window.oldest_loaded_at = oldest
        elif fetched:
            log.warning("Page for %s has no timestamps; stopping pagination", window.thread_id)
            window.has_more = False

    async def _load_latest(self, thread_id: str, reset: bool) -> ThreadWindow:
        window = self._windows.setdefault(thread_id, ThreadWindow(thread_id=thread_id))
        self.metrics.set_gauge("huddle_open_threads", len(self._windows))
        if reset:
            # Any page requested before this point is now stale
            window.generation += 1
            window.refreshing = True
        else:
            window.loading = True
        generation = window.generation
        try:
            page, fetched, oldest = await self._fetch_page(thread_id)
        except Exception as exc:
            log.warning("Loading thread %s failed: %s", thread_id, exc)
            raise
        finally:
            if not reset:
                window.loading = False
            elif generation == window.generation:
                window.refreshing = False

        if generation != window.generation:
            log.debug("newest page for %s superseded by a later refresh", thread_id)
            return window
        if reset:
            # Keep live inserts that landed while the page was in flight
            newest = page[-1].sort_key if page else None
            arrived = [m for m in window.messages if newest is None or m.sort_key > newest]
            window.reset(page + arrived)
        else:
            window.merge(page)
        window.oldest_loaded_at = None
        self._advance_cursor(window, fetched, oldest)
        window.initialized = True
        self._notify(window)
        return window

    async def open_thread(self, thread_id: str) -> ThreadWindow:
        """Return the thread's window, fetching the newest page on first open."""
        window = self._windows.get(thread_id)
        if window is not None and window.initialized:
            return window
        pending = self._opening.get(thread_id)
        if pending is None:
            pending = asyncio.ensure_future(self._load_latest(thread_id, reset=False))
            self._opening[thread_id] = pending
            pending.add_done_callback(lambda _f: self._opening.pop(thread_id, None))
        return await asyncio.shield(pending)

    async def refresh_thread(self, thread_id: str) -> ThreadWindow:
        """Full reload of the newest page, e.g. after a feed gap.

        Older pages still in flight are discarded when they land; the window
        restarts from the newest page and is paged back from there.
        """
        return await self._load_latest(thread_id, reset=True)

    async def refresh_all(self) -> None:
        for thread_id in self.open_threads():
            await self.refresh_thread(thread_id)
        self.needs_refresh = False

    async def load_older(self, thread_id: str) -> list[Message]:
        """Prepend the next older page; returns the messages added."""
        window = self._windows.get(thread_id)
        if window is None or not window.initialized:
            return []
        if not window.has_more or window.loading or window.refreshing or window.oldest_loaded_at is None:
            return []

        generation = window.generation
        window.loading = True
        try:
            page, fetched, oldest = await self._fetch_page(thread_id, before=window.oldest_loaded_at)
        except Exception as exc:
            log.warning("Loading older messages for %s failed: %s", thread_id, exc)
            raise
        finally:
            window.loading = False

        if generation != window.generation:
            log.warning("Dropping older page for %s: window was refreshed while it loaded", thread_id)
            return []
        added = window.merge(page)
        if len(added) != len(page):
            log.warning("Older page for %s overlapped the window by %d message(s)",
                        thread_id, len(page) - len(added))
        self._advance_cursor(window, fetched, oldest)
        self._notify(window)
        return added

    # ── Live feed ─────────────────────────────────────────────────────────

    def on_live_insert(self, message: Message) -> bool:
        """Merge one inserted message; True when the window changed."""
        window = self._windows.get(message.thread_id)
        if window is None:
            log.debug("no window for thread %s; ignoring %s", message.thread_id, message.id)
            return False
        added = window.merge([message])
        if not added:
            self.metrics.inc("huddle_live_inserts_total", outcome="duplicate")
            return False
        self.metrics.inc("huddle_live_inserts_total", outcome="merged")
        self._notify(window)
        return True

    def _on_change(self, event: ChangeEvent) -> None:
        if event.kind != INSERT:
            log.debug("ignoring %s on %s", event.kind, event.table)
            return
        try:
            message = Message.from_row(event.new)
        except ValueError as exc:
            log.warning("Dropping malformed insert event: %s", exc)
            return
        self.on_live_insert(message)

    def _on_status(self, status: str) -> None:
        if status == DISCONNECTED:
            log.warning("Message feed disconnected")
        elif status == RECONNECTED:
            log.warning("Message feed reconnected; open threads may have gaps")
            self.needs_refresh = True
