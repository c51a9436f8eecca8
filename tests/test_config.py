import pytest

from huddle.config import Settings, build_change_feed, build_store
from huddle.store.memory_store import MemoryStore
from huddle.store.rest_store import RestStore


def test_defaults_without_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("HUDDLE_STORE", "HUDDLE_PAGE_SIZE", "ALLOWED_ORIGINS", "REDIS_HOST"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings.from_env()
    assert settings.store == "memory"
    assert settings.page_size == 50
    assert settings.max_suggestions == 5
    assert settings.snippet_chars == 100
    assert settings.allowed_origins == ["http://localhost:3001"]


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HUDDLE_STORE", " REST ")
    monkeypatch.setenv("HUDDLE_PAGE_SIZE", "20")
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://a.test, https://b.test,")
    settings = Settings.from_env()
    assert settings.store == "rest"
    assert settings.page_size == 20
    assert settings.allowed_origins == ["https://a.test", "https://b.test"]


def test_bad_integer_names_the_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HUDDLE_PAGE_SIZE", "fifty")
    with pytest.raises(ValueError, match="HUDDLE_PAGE_SIZE"):
        Settings.from_env()


def test_build_store_variants() -> None:
    assert isinstance(build_store(Settings()), MemoryStore)
    assert isinstance(build_store(Settings(store="rest", supabase_url="https://db.test")), RestStore)
    with pytest.raises(ValueError):
        build_store(Settings(store="rest"))
    with pytest.raises(ValueError):
        build_store(Settings(store="mongo"))


def test_change_feed_is_optional() -> None:
    assert build_change_feed(Settings()) is None
    assert build_change_feed(Settings(redis_host="localhost")) is not None
