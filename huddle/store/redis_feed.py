"""Redis Streams relay for row change events.

A single process observes the store's feed and republishes each event to
the stream ``changes.{table}``; any number of viewer processes read the
stream and dispatch events to their own subscriptions.  Delivery is
at-least-once: a reader that restarts from ``0`` sees old entries again,
which the sync engine tolerates by deduping on message id.

Env vars (via ``Settings``):
  REDIS_HOST      (default: redis)
  REDIS_PORT      (default: 6379)
  REDIS_PASSWORD  (optional)
"""
from __future__ import annotations

import asyncio
import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from huddle.store.base import (
    CONNECTED,
    DISCONNECTED,
    RECONNECTED,
    ChangeCallback,
    ChangeEvent,
    Filter,
    StatusCallback,
    Store,
    Subscription,
)

log = logging.getLogger(__name__)

_STREAM_MAXLEN = 10_000     # approximate cap per table stream


def stream_name(table: str) -> str:
    return f"changes.{table}"


def encode_event(event: ChangeEvent) -> dict[str, str]:
    return {
        "kind": event.kind,
        "table": event.table,
        "new": json.dumps(event.new),
        "old": json.dumps(event.old),
    }


def decode_event(fields: dict) -> ChangeEvent:
    return ChangeEvent(
        kind=fields.get("kind", ""),
        table=fields.get("table", ""),
        new=json.loads(fields.get("new") or "{}"),
        old=json.loads(fields.get("old") or "{}"),
    )


class RedisChangeFeed:
    """Publishes and consumes ``ChangeEvent`` records over Redis Streams."""

    def __init__(self, client=None, host: str = "redis", port: int = 6379,
                 password: str | None = None, block_ms: int = 1000) -> None:
        self.redis = client or aioredis.Redis(
            host=host, port=port, password=password, decode_responses=True,
        )
        self.block_ms = block_ms

    # ── Producer side ─────────────────────────────────────────────────────

    async def publish(self, event: ChangeEvent) -> str:
        entry_id = await self.redis.xadd(
            stream_name(event.table), encode_event(event), maxlen=_STREAM_MAXLEN, approximate=True,
        )
        log.debug("relayed %s on %s as %s", event.kind, event.table, entry_id)
        return entry_id

    def relay(self, store: Store, table: str) -> Subscription:
        """Forward every change on *table* from *store* to Redis."""
        return store.subscribe(table, self.publish)

    # ── Consumer side ─────────────────────────────────────────────────────

    async def run_once(self, sub: Subscription, last_id: str) -> str:
        """Read one batch for *sub*; return the id to resume from."""
        messages = await self.redis.xread(
            streams={stream_name(sub.table): last_id}, count=100, block=self.block_ms,
        )
        for _stream, entries in messages or []:
            for entry_id, fields in entries:
                try:
                    await sub.deliver(decode_event(fields))
                except Exception:
                    log.exception("change callback failed for %s", sub.table)
                last_id = entry_id
        return last_id

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
        task = asyncio.get_running_loop().create_task(self._consume(sub))
        return sub

    async def _consume(self, sub: Subscription, retry_seconds: float = 0.5) -> None:
        last_id = "$"
        healthy = True
        sub.status(CONNECTED)
        while not sub.closed:
            try:
                last_id = await self.run_once(sub, last_id)
                if not healthy:
                    healthy = True
                    sub.status(RECONNECTED)
            except RedisError as exc:
                if healthy:
                    log.warning("Redis feed for %s lost: %s", sub.table, exc)
                    healthy = False
                    sub.status(DISCONNECTED)
                await asyncio.sleep(retry_seconds)

    async def aclose(self) -> None:
        await self.redis.aclose()
