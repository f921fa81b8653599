"""Tests for database URL configuration precedence."""

import pytest

from src.db.connection import create_engine_from_config, get_database_url, to_async_url
from src.hughesnet.config import HughesNetConfig, StorageConfig


def test_prefers_hnsync_database_url(monkeypatch):
    monkeypatch.setenv("HNSYNC_DATABASE_URL", "sqlite:///./preferred.db")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./fallback.db")

    assert get_database_url() == "sqlite+aiosqlite:///./preferred.db"


def test_falls_back_to_database_url(monkeypatch):
    monkeypatch.delenv("HNSYNC_DATABASE_URL", raising=False)
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://db/hns")

    assert get_database_url() == "postgresql+asyncpg://db/hns"


def test_defaults_to_platformdirs_path(tmp_path, monkeypatch):
    monkeypatch.delenv("HNSYNC_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))

    url = get_database_url()
    assert url.startswith("sqlite+aiosqlite:///")
    assert url.endswith("hns-sync.db")


def test_to_async_url_leaves_async_urls_alone():
    assert to_async_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"


def test_configured_url_used_without_env(monkeypatch):
    monkeypatch.delenv("HNSYNC_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    assert get_database_url("sqlite:///./configured.db") == "sqlite+aiosqlite:///./configured.db"


def test_env_overrides_configured_url(monkeypatch):
    monkeypatch.setenv("HNSYNC_DATABASE_URL", "sqlite:///./env.db")

    assert get_database_url("sqlite:///./configured.db") == "sqlite+aiosqlite:///./env.db"


def test_blank_configured_url_falls_through(tmp_path, monkeypatch):
    monkeypatch.delenv("HNSYNC_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))

    assert get_database_url("  ").endswith("hns-sync.db")


@pytest.mark.asyncio
async def test_engine_from_config_uses_storage_section(tmp_path, monkeypatch):
    monkeypatch.delenv("HNSYNC_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    path = tmp_path / "from-config.db"
    config = HughesNetConfig(storage=StorageConfig(database_url=f"sqlite:///{path}"))

    engine = create_engine_from_config(config)
    try:
        assert engine.url.database == str(path)
        assert engine.url.drivername == "sqlite+aiosqlite"
    finally:
        await engine.dispose()
