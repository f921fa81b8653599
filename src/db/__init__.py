"""Database module for sync engine state persistence."""

from src.db.connection import (
    create_engine_for_url,
    create_engine_from_config,
    get_database_url,
    init_db,
    make_session_factory,
)
from src.db.models import Base, KeyValueEntry, TripRow

__all__ = [
    # Models
    "Base",
    "KeyValueEntry",
    "TripRow",
    # Connection
    "create_engine_for_url",
    "create_engine_from_config",
    "get_database_url",
    "init_db",
    "make_session_factory",
]
