"""Trip persistence behind the narrow list/get/put/delete contract.

Trips are stored as whole JSON documents (camelCase keys); the store makes
no assumption about their internals beyond ``user_id``, ``id`` and ``date``.
"""

import json
import logging
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import TripRow
from src.hughesnet.models import Trip

logger = logging.getLogger(__name__)


class TripStore(Protocol):
    """Async trip repository keyed by (user_id, trip_id)."""

    async def list(self, user_id: str) -> list[Trip]: ...

    async def get(self, user_id: str, trip_id: str) -> Trip | None: ...

    async def put(self, trip: Trip) -> None: ...

    async def delete(self, user_id: str, trip_id: str) -> None: ...


class SqlTripStore:
    """TripStore backed by the ``trips`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def list(self, user_id: str) -> list[Trip]:
        async with self._sessions() as db:
            result = await db.execute(
                select(TripRow)
                .where(TripRow.user_id == user_id)
                .order_by(TripRow.trip_date, TripRow.trip_id)
            )
            return [Trip.model_validate(json.loads(row.payload)) for row in result.scalars()]

    async def get(self, user_id: str, trip_id: str) -> Trip | None:
        async with self._sessions() as db:
            row = await db.get(TripRow, (user_id, trip_id))
            if row is None:
                return None
            return Trip.model_validate(json.loads(row.payload))

    async def put(self, trip: Trip) -> None:
        payload = json.dumps(trip.to_json_dict())
        async with self._sessions() as db:
            row = await db.get(TripRow, (trip.user_id, trip.id))
            if row is None:
                db.add(TripRow(
                    user_id=trip.user_id,
                    trip_id=trip.id,
                    trip_date=trip.date,
                    payload=payload,
                ))
            else:
                row.trip_date = trip.date
                row.payload = payload
            await db.commit()
        logger.debug("Stored trip %s for user %s", trip.id, trip.user_id)

    async def delete(self, user_id: str, trip_id: str) -> None:
        async with self._sessions() as db:
            await db.execute(
                delete(TripRow).where(TripRow.user_id == user_id, TripRow.trip_id == trip_id)
            )
            await db.commit()


class MemoryTripStore:
    """In-process TripStore; returns copies so callers cannot mutate state."""

    def __init__(self) -> None:
        self._trips: dict[tuple[str, str], Trip] = {}

    async def list(self, user_id: str) -> list[Trip]:
        trips = [t.model_copy(deep=True) for (uid, _), t in self._trips.items() if uid == user_id]
        return sorted(trips, key=lambda t: (t.date, t.id))

    async def get(self, user_id: str, trip_id: str) -> Trip | None:
        trip = self._trips.get((user_id, trip_id))
        return trip.model_copy(deep=True) if trip else None

    async def put(self, trip: Trip) -> None:
        self._trips[(trip.user_id, trip.id)] = trip.model_copy(deep=True)

    async def delete(self, user_id: str, trip_id: str) -> None:
        self._trips.pop((user_id, trip_id), None)
