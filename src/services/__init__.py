"""Collaborator services for the HughesNet sync engine.

Provides the storage contracts (key-value store, trip store), credential
encryption, and the routing lookup used for trip synthesis.
"""

from src.services.kv_store import KeyValueStore, MemoryKeyValueStore, SqlKeyValueStore
from src.services.trip_store import MemoryTripStore, SqlTripStore, TripStore

__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqlKeyValueStore",
    "TripStore",
    "MemoryTripStore",
    "SqlTripStore",
]
