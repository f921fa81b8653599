"""SQLAlchemy ORM models for the sync engine's state database.

Two tables back the narrow storage contracts the engine depends on:
a key-value table (sessions, encrypted credentials, order databases,
routing cache) and a trip table holding one JSON document per trip.
Uses SQLAlchemy 2.0 style with Mapped and mapped_column.
"""

from datetime import UTC, datetime

from sqlalchemy import Float, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class KeyValueEntry(Base):
    """A single key-value pair with optional expiry.

    Attributes:
        key: Namespaced key, e.g. 'hns:session:<user>'.
        value: Stored string value.
        expires_at: Unix timestamp after which the entry reads as missing,
            or None for entries that never expire.
        updated_at: ISO8601 timestamp of the last write.
    """

    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    __table_args__ = (Index("idx_kv_entries_expires_at", "expires_at"),)

    def __repr__(self) -> str:
        return f"<KeyValueEntry(key={self.key!r}, expires_at={self.expires_at})>"


class TripRow(Base):
    """A persisted trip document.

    Attributes:
        user_id: Owner of the trip.
        trip_id: Trip identifier, unique per user.
        trip_date: ISO date of the trip (YYYY-MM-DD).
        payload: Trip serialized as JSON (camelCase keys).
        updated_at: ISO8601 timestamp of the last write.
    """

    __tablename__ = "trips"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    trip_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    trip_date: Mapped[str] = mapped_column(String(10), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    __table_args__ = (Index("idx_trips_user_date", "user_id", "trip_date"),)

    def __repr__(self) -> str:
        return f"<TripRow(user_id={self.user_id!r}, trip_id={self.trip_id!r})>"
