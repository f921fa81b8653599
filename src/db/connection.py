"""Database connection management for the sync engine.

Provides asynchronous database access using SQLAlchemy with aiosqlite.
SQLite is the default; any SQLAlchemy async URL works.

Usage:
    from src.db.connection import create_engine_from_config, init_db, make_session_factory

    engine = create_engine_from_config(load_config("hns-sync.yaml"))
    await init_db(engine)
    sessions = make_session_factory(engine)
    async with sessions() as db:
        ...
"""

import os
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.db.models import Base

if TYPE_CHECKING:
    from src.hughesnet.config import HughesNetConfig


def get_database_url(configured: str | None = None) -> str:
    """Get the async database URL from environment, config, or default SQLite.

    Precedence:
    1. HNSYNC_DATABASE_URL
    2. DATABASE_URL
    3. ``configured`` (the config file's ``storage.database_url``)
    4. sqlite under the platform data directory
    """
    for url in (
        os.environ.get("HNSYNC_DATABASE_URL", ""),
        os.environ.get("DATABASE_URL", ""),
        configured or "",
    ):
        if url.strip():
            return to_async_url(url.strip())

    from src.utils.paths import get_default_db_path
    return f"sqlite+aiosqlite:///{get_default_db_path()}"


def to_async_url(url: str) -> str:
    """Convert sqlite:/// to sqlite+aiosqlite:/// for async support."""
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def create_engine_for_url(url: str | None = None) -> AsyncEngine:
    """Create an async engine, enabling WAL mode for SQLite files."""
    url = to_async_url(url or get_database_url())
    engine = create_async_engine(
        url,
        echo=os.environ.get("SQL_ECHO", "").lower() == "true",
    )

    if url.startswith("sqlite") and ":memory:" not in url:
        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            """Allow concurrent readers alongside the single sync writer."""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.close()

    return engine


def create_engine_from_config(config: "HughesNetConfig") -> AsyncEngine:
    """Create the engine named by ``config.storage``, subject to env overrides."""
    return create_engine_for_url(get_database_url(config.storage.database_url))


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a session factory bound to the engine."""
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables that don't exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
