"""Display-name resolution for mention tokens.

``DisplayNameCache`` is a read-through cache in front of the profile store.
It is passed explicitly to whoever renders messages; nothing here is
module-global.  Entries are append-only: once a name is resolved for an id
it is reused for the life of the cache.  Misses are not cached, so a
profile created later still resolves.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from huddle.mentions.codec import UNKNOWN_USER, decode

log = logging.getLogger(__name__)

ProfileLookup = Callable[[str], Awaitable[dict | None]]


def profile_name(profile: dict | None) -> str | None:
    if not profile:
        return None
    return profile.get("full_name") or profile.get("display_name") or None


class DisplayNameCache:
    def __init__(self, lookup: ProfileLookup) -> None:
        self._lookup = lookup
        self._names: dict[str, str] = {}
        self.lookups = 0

    def peek(self, user_id: str) -> str | None:
        return self._names.get(user_id)

    def prime(self, user_id: str, name: str | None) -> None:
        if name:
            self._names[user_id] = name

    async def resolve(self, user_id: str) -> str | None:
        cached = self._names.get(user_id)
        if cached is not None:
            return cached
        self.lookups += 1
        try:
            name = profile_name(await self._lookup(user_id))
        except Exception as exc:
            log.warning("Profile lookup failed for %s: %s", user_id, exc)
            return None
        if name:
            # Concurrent resolvers may race here; they write the same value
            self._names[user_id] = name
        return name

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._names

    def __len__(self) -> int:
        return len(self._names)


async def resolve_names(storage_text: str, cache: DisplayNameCache) -> dict[str, str]:
    """Resolve every mentioned id concurrently; unknown ids map to ``Unknown User``."""
    ids = decode(storage_text).unique_user_ids()
    resolved = await asyncio.gather(*(cache.resolve(user_id) for user_id in ids))
    return {user_id: name or UNKNOWN_USER for user_id, name in zip(ids, resolved)}


async def render_display(storage_text: str, cache: DisplayNameCache) -> str:
    names = await resolve_names(storage_text, cache)
    return decode(storage_text).resolve_display(names.get)
