"""Tests for the mention codec: tokens, decoding, display rendering, reverse mapping."""

import pytest

from huddle.mentions.codec import (
    UNKNOWN_USER,
    NameTable,
    decode,
    encode_token,
    extract_mentions,
    reverse_map,
)


# ── encode_token ───────────────────────────────────────────────────────────────

def test_encode_token_embeds_raw_id() -> None:
    assert encode_token("u-42") == "@{userId:u-42}"


def test_encode_token_rejects_unencodable_ids() -> None:
    with pytest.raises(ValueError):
        encode_token("")
    with pytest.raises(ValueError):
        encode_token("bad}id")


# ── decode ─────────────────────────────────────────────────────────────────────

def test_decode_round_trips_single_token_in_text() -> None:
    text = f"before {encode_token('u-1')} after"
    assert list(decode(text).mentioned_user_ids) == ["u-1"]


def test_decode_keeps_duplicates_in_order() -> None:
    text = f"{encode_token('a')} {encode_token('b')} {encode_token('a')}"
    decoded = decode(text)
    assert decoded.mentioned_user_ids == ("a", "b", "a")
    assert decoded.unique_user_ids() == ["a", "b"]
    assert extract_mentions(text) == ["a", "b"]


def test_decode_ignores_plain_at_names() -> None:
    assert decode("ping @Alice and mail bob@example.com").mentioned_user_ids == ()


def test_decode_handles_empty_text() -> None:
    assert decode("").mentioned_user_ids == ()


# ── resolve_display ────────────────────────────────────────────────────────────

def test_resolve_display_substitutes_names() -> None:
    text = f"Hey {encode_token('u-42')} can you review?"
    display = decode(text).resolve_display({"u-42": "Alice"}.get)
    assert display == "Hey @Alice can you review?"


def test_resolve_display_falls_back_to_unknown_user() -> None:
    display = decode(f"cc {encode_token('gone')}").resolve_display(lambda _uid: None)
    assert display == f"cc @{UNKNOWN_USER}"


def test_resolve_display_never_raises_on_lookup_error() -> None:
    def boom(_uid: str) -> str:
        raise RuntimeError("profile store down")

    display = decode(f"{encode_token('x')}!").resolve_display(boom)
    assert display == f"@{UNKNOWN_USER}!"


# ── reverse_map ────────────────────────────────────────────────────────────────

def test_reverse_map_restores_storage_text() -> None:
    storage = f"Hey {encode_token('u-42')} can you review?"
    display = decode(storage).resolve_display({"u-42": "Alice"}.get)
    table = NameTable.from_pairs([("u-42", "Alice")])
    assert reverse_map(display, table) == storage


def test_reverse_map_accepts_plain_mapping() -> None:
    assert reverse_map("hi @Bob", {"Bob": "u-7"}) == "hi @{userId:u-7}"


def test_reverse_map_escapes_special_characters_in_names() -> None:
    table = NameTable.from_pairs([("u-1", "A.B (QA)+"), ("u-2", "AxB")])
    text = "@A.B (QA)+ and @AxB"
    assert reverse_map(text, table) == "@{userId:u-1} and @{userId:u-2}"


def test_reverse_map_special_name_does_not_match_lookalike() -> None:
    # "." in the name must not behave like a regex wildcard
    table = NameTable.from_pairs([("u-1", "J.R")])
    assert reverse_map("@JxR", table) == "@JxR"


def test_reverse_map_leaves_existing_tokens_alone() -> None:
    table = NameTable.from_pairs([("u-1", "Ann")])
    text = f"{encode_token('u-9')} and @Ann"
    assert reverse_map(text, table) == "@{userId:u-9} and @{userId:u-1}"


def test_reverse_map_without_names_is_identity() -> None:
    assert reverse_map("@Nobody here", NameTable()) == "@Nobody here"


# ── known ambiguity: pinned current behaviour ──────────────────────────────────

def test_reverse_map_duplicate_names_prefer_most_recent_id() -> None:
    table = NameTable()
    table.remember("u-1", "Sam Lee")
    table.remember("u-2", "Sam Lee")
    assert reverse_map("@Sam Lee", table) == "@{userId:u-2}"

    # Re-resolving the first user makes it the most recent again
    table.remember("u-1", "Sam Lee")
    assert reverse_map("@Sam Lee", table) == "@{userId:u-1}"


def test_reverse_map_prefix_names_prefer_longest_match() -> None:
    table = NameTable.from_pairs([("u-al", "Al"), ("u-alice", "Alice")])
    assert reverse_map("@Alice", table) == "@{userId:u-alice}"
    assert reverse_map("@Al ice", table) == "@{userId:u-al} ice"


def test_reverse_map_prefix_name_swallows_longer_unknown_name() -> None:
    # Only "Al" is known, so "@Alice" is read as a mention of Al followed by "ice"
    table = NameTable.from_pairs([("u-al", "Al")])
    assert reverse_map("@Alice", table) == "@{userId:u-al}ice"


def test_name_table_ignores_unknown_placeholder() -> None:
    table = NameTable()
    table.remember("u-1", UNKNOWN_USER)
    table.remember("u-2", None)
    assert len(table) == 0


def test_name_table_placeholder_when_allowed() -> None:
    table = NameTable()
    table.remember("u-1", UNKNOWN_USER, allow_placeholder=True)
    assert table.get(UNKNOWN_USER) == "u-1"


def test_merged_table_prefers_overlay() -> None:
    base = NameTable.from_pairs([("u-1", "Sam"), ("u-2", "Ann")])
    overlay = NameTable.from_pairs([("u-3", "Sam")])
    merged = base.merged(overlay)
    assert merged.get("Sam") == "u-3"
    assert merged.get("Ann") == "u-2"
    assert base.get("Sam") == "u-1"
