"""Runtime configuration read from environment variables.

  HUDDLE_STORE            memory | rest | firestore   (default: memory)
  HUDDLE_PAGE_SIZE        messages per page            (default: 50)
  HUDDLE_MAX_SUGGESTIONS  mention dropdown size        (default: 5)
  HUDDLE_SNIPPET_CHARS    notification snippet bound   (default: 100)
  HUDDLE_POLL_INTERVAL    REST feed poll seconds       (default: 1.0)
  SUPABASE_URL / SUPABASE_KEY    REST store endpoint + key
  GCP_PROJECT_ID                 Firestore project
  REDIS_HOST / REDIS_PORT / REDIS_PASSWORD   change-feed relay (optional)
  ALLOWED_ORIGINS                comma-separated CORS origins
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    store: str = "memory"
    page_size: int = 50
    max_suggestions: int = 5
    snippet_chars: int = 100
    poll_interval: float = 1.0
    supabase_url: str = ""
    supabase_key: str = ""
    gcp_project_id: str = ""
    redis_host: str = ""
    redis_port: int = 6379
    redis_password: str | None = None
    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:3001"])

    @classmethod
    def from_env(cls) -> "Settings":
        raw_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3001")
        return cls(
            store=os.getenv("HUDDLE_STORE", "memory").strip().lower(),
            page_size=_int("HUDDLE_PAGE_SIZE", 50),
            max_suggestions=_int("HUDDLE_MAX_SUGGESTIONS", 5),
            snippet_chars=_int("HUDDLE_SNIPPET_CHARS", 100),
            poll_interval=float(os.getenv("HUDDLE_POLL_INTERVAL", "1.0")),
            supabase_url=os.getenv("SUPABASE_URL", "").strip(),
            supabase_key=os.getenv("SUPABASE_KEY", "").strip(),
            gcp_project_id=os.getenv("GCP_PROJECT_ID", "").strip(),
            redis_host=os.getenv("REDIS_HOST", "").strip(),
            redis_port=_int("REDIS_PORT", 6379),
            redis_password=os.getenv("REDIS_PASSWORD") or None,
            allowed_origins=[x.strip() for x in raw_origins.split(",") if x.strip()],
        )


def build_store(settings: Settings):
    """Instantiate the configured store adapter."""
    if settings.store == "memory":
        from huddle.store.memory_store import MemoryStore
        return MemoryStore()
    if settings.store == "rest":
        if not settings.supabase_url:
            raise ValueError("HUDDLE_STORE=rest requires SUPABASE_URL")
        from huddle.store.rest_store import RestStore
        return RestStore(settings.supabase_url, settings.supabase_key, poll_interval=settings.poll_interval)
    if settings.store == "firestore":
        from huddle.store.firestore_store import FirestoreStore
        return FirestoreStore(project_id=settings.gcp_project_id)
    raise ValueError(f"unknown HUDDLE_STORE {settings.store!r}")


def build_change_feed(settings: Settings):
    """Redis relay when REDIS_HOST is set, otherwise None."""
    if not settings.redis_host:
        return None
    from huddle.store.redis_feed import RedisChangeFeed
    return RedisChangeFeed(host=settings.redis_host, port=settings.redis_port, password=settings.redis_password)
