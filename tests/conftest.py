"""Root-level pytest fixtures for all tests.

Provides shared fixtures for sync engine testing:
- Encryption key and in-memory stores
- A portal config with crawl delays disabled
- File-based SQLite session factory for the SQL stores
"""

import os

import pytest
import pytest_asyncio

from src.hughesnet.config import HughesNetConfig, PortalConfig

# ============================================================================
# Pytest Markers
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests requiring the live portal"
    )


# ============================================================================
# Engine Fixtures
# ============================================================================


@pytest.fixture
def encryption_key() -> bytes:
    """Random 32-byte AES-256 key."""
    return os.urandom(32)


@pytest.fixture
def kv_store():
    """Empty in-memory key-value store."""
    from src.services.kv_store import MemoryKeyValueStore

    return MemoryKeyValueStore()


@pytest.fixture
def trip_store():
    """Empty in-memory trip store."""
    from src.services.trip_store import MemoryTripStore

    return MemoryTripStore()


@pytest.fixture
def fast_config() -> HughesNetConfig:
    """Default config with scan and detail delays disabled."""
    return HughesNetConfig(
        portal=PortalConfig(scan_delay_seconds=0, detail_delay_seconds=0),
    )


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh file-based SQLite database."""
    from src.db.connection import create_engine_for_url, init_db, make_session_factory

    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()
