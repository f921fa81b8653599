"""Key-value storage for sessions, encrypted credentials and order databases.

The sync engine only depends on the narrow ``KeyValueStore`` protocol:
``get`` / ``put`` (with optional TTL) / ``delete``. Expired entries read as
missing; they are removed lazily on the next read.
"""

import logging
import time
from typing import Protocol

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import KeyValueEntry

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Async string key-value store with optional per-entry expiry."""

    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...


def _expiry(ttl_seconds: int | None) -> float | None:
    if ttl_seconds is None:
        return None
    return time.time() + ttl_seconds


class SqlKeyValueStore:
    """KeyValueStore backed by the ``kv_entries`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def get(self, key: str) -> str | None:
        async with self._sessions() as db:
            entry = await db.get(KeyValueEntry, key)
            if entry is None:
                return None
            if entry.expires_at is not None and entry.expires_at <= time.time():
                await db.delete(entry)
                await db.commit()
                logger.debug("Expired kv entry removed: %s", key)
                return None
            return entry.value

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        async with self._sessions() as db:
            entry = await db.get(KeyValueEntry, key)
            if entry is None:
                db.add(KeyValueEntry(key=key, value=value, expires_at=_expiry(ttl_seconds)))
            else:
                entry.value = value
                entry.expires_at = _expiry(ttl_seconds)
            await db.commit()

    async def delete(self, key: str) -> None:
        async with self._sessions() as db:
            await db.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))
            await db.commit()


class MemoryKeyValueStore:
    """In-process KeyValueStore, used by tests and single-shot hosts."""

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, float | None]] = {}

    async def get(self, key: str) -> str | None:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= time.time():
            del self._data[key]
            return None
        return value

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._data[key] = (value, _expiry(ttl_seconds))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

