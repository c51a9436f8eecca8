"""Tests for the display-name cache and async rendering."""

import asyncio

import pytest

from huddle.mentions.codec import UNKNOWN_USER, encode_token
from huddle.mentions.names import DisplayNameCache, profile_name, render_display, resolve_names


class FakeProfiles:
    def __init__(self, profiles: dict[str, dict], fail_for: set[str] | None = None) -> None:
        self.profiles = profiles
        self.fail_for = fail_for or set()
        self.calls: list[str] = []

    async def lookup(self, user_id: str) -> dict | None:
        self.calls.append(user_id)
        await asyncio.sleep(0)
        if user_id in self.fail_for:
            raise RuntimeError("lookup failed")
        return self.profiles.get(user_id)


def test_profile_name_prefers_full_name() -> None:
    assert profile_name({"full_name": "Alice", "display_name": "al"}) == "Alice"
    assert profile_name({"display_name": "al"}) == "al"
    assert profile_name({"full_name": ""}) is None
    assert profile_name(None) is None


@pytest.mark.asyncio
async def test_cache_reads_through_once_per_id() -> None:
    profiles = FakeProfiles({"u-1": {"full_name": "Alice"}})
    cache = DisplayNameCache(profiles.lookup)

    assert await cache.resolve("u-1") == "Alice"
    assert await cache.resolve("u-1") == "Alice"
    assert profiles.calls == ["u-1"]
    assert "u-1" in cache


@pytest.mark.asyncio
async def test_cache_does_not_remember_misses() -> None:
    profiles = FakeProfiles({})
    cache = DisplayNameCache(profiles.lookup)

    assert await cache.resolve("u-2") is None
    profiles.profiles["u-2"] = {"full_name": "Bea"}
    assert await cache.resolve("u-2") == "Bea"
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_cache_swallows_lookup_errors() -> None:
    profiles = FakeProfiles({}, fail_for={"u-3"})
    cache = DisplayNameCache(profiles.lookup)
    assert await cache.resolve("u-3") is None


@pytest.mark.asyncio
async def test_render_display_resolves_all_tokens() -> None:
    profiles = FakeProfiles({"u-1": {"full_name": "Alice"}}, fail_for={"u-9"})
    cache = DisplayNameCache(profiles.lookup)
    text = f"{encode_token('u-1')}, {encode_token('u-2')} and {encode_token('u-9')}"

    display = await render_display(text, cache)

    assert display == f"@Alice, @{UNKNOWN_USER} and @{UNKNOWN_USER}"


@pytest.mark.asyncio
async def test_resolve_names_concurrent_writers_agree() -> None:
    profiles = FakeProfiles({"u-1": {"full_name": "Alice"}})
    cache = DisplayNameCache(profiles.lookup)
    text = encode_token("u-1")

    results = await asyncio.gather(resolve_names(text, cache), resolve_names(text, cache))

    assert results == [{"u-1": "Alice"}, {"u-1": "Alice"}]
    assert cache.peek("u-1") == "Alice"


def test_prime_seeds_cache_without_lookup() -> None:
    cache = DisplayNameCache(FakeProfiles({}).lookup)
    cache.prime("u-5", "Eve")
    cache.prime("u-6", "")
    assert cache.peek("u-5") == "Eve"
    assert cache.peek("u-6") is None
