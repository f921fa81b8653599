"""Driving distance and duration lookups for trip legs.

``DirectionsRouter`` geocodes both ends with Nominatim and asks OSRM for
the route, falling back to the Google Directions API when a key is
configured. All HTTP goes through the sync's budgeted fetcher, so route
lookups spend the same request budget as portal pages.

Results are memoized in the key-value store: route legs forever (a leg
between two address strings is treated as immutable), geocodes for 30 days.
"""

import logging
import re
from typing import Protocol

import httpx

from src.errors import RequestLimitExceeded, RoutingLegFailed
from src.hughesnet.config import RoutingProviderConfig
from src.hughesnet.fetcher import PortalFetcher
from src.hughesnet.models import RouteLeg
from src.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

_DIRECTION_KEY_STRIP = re.compile(r"[^a-z0-9_:-]")
_GEO_KEY_STRIP = re.compile(r"[^a-z0-9]")


class RoutingLookup(Protocol):
    """Resolves one origin -> destination leg; None means the leg is unknown."""

    async def get_route(self, origin: str, destination: str) -> RouteLeg | None: ...


def direction_cache_key(origin: str, destination: str) -> str:
    raw = f"dir:{origin.lower().strip()}_to_{destination.lower().strip()}"
    return _DIRECTION_KEY_STRIP.sub("", raw)


def geocode_cache_key(address: str) -> str:
    return "geo:" + _GEO_KEY_STRIP.sub("_", address.strip().lower())


class DirectionsRouter:
    """RoutingLookup backed by OSRM/Nominatim with a Google fallback."""

    def __init__(
        self,
        fetcher: PortalFetcher,
        cache: KeyValueStore | None = None,
        config: RoutingProviderConfig | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._cache = cache
        self._config = config or RoutingProviderConfig()

    async def get_route(self, origin: str, destination: str) -> RouteLeg | None:
        """Look up one leg.

        Raises:
            RequestLimitExceeded: When the budget runs out mid-lookup.
        """
        key = direction_cache_key(origin, destination)
        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached:
                return RouteLeg.model_validate_json(cached)

        leg = await self._osrm_route(origin, destination)
        if leg is None and self._config.google_api_key:
            leg = await self._google_route(origin, destination)
        if leg is None:
            logger.warning("%s", RoutingLegFailed(origin, destination))
            return None

        if self._cache is not None:
            await self._cache.put(key, leg.model_dump_json())
        return leg

    async def geocode(self, address: str) -> tuple[float, float] | None:
        """(lat, lon) of an address via Nominatim, memoized."""
        key = geocode_cache_key(address)
        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached:
                lat, lon = cached.split(",", 1)
                return float(lat), float(lon)

        try:
            response = await self._fetcher.fetch(
                self._config.nominatim_url,
                headers={"User-Agent": self._config.user_agent},
                params={"q": address, "format": "json", "limit": "1"},
            )
            if not response.is_success:
                logger.warning("Geocoding %r returned HTTP %d", address, response.status_code)
                return None
            results = response.json()
            if not results:
                return None
            point = (float(results[0]["lat"]), float(results[0]["lon"]))
        except RequestLimitExceeded:
            raise
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning("Geocoding %r failed: %s", address, e)
            return None

        if self._cache is not None:
            await self._cache.put(
                key, f"{point[0]},{point[1]}", ttl_seconds=self._config.geocode_ttl_seconds
            )
        return point

    async def _osrm_route(self, origin: str, destination: str) -> RouteLeg | None:
        start = await self.geocode(origin)
        end = await self.geocode(destination)
        if start is None or end is None:
            return None

        url = f"{self._config.osrm_url.rstrip('/')}/{start[1]},{start[0]};{end[1]},{end[0]}"
        try:
            response = await self._fetcher.fetch(url, params={"overview": "false"})
            if not response.is_success:
                logger.warning("OSRM returned HTTP %d", response.status_code)
                return None
            route = response.json()["routes"][0]
            return RouteLeg(distance_meters=route["distance"], duration_seconds=route["duration"])
        except RequestLimitExceeded:
            raise
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning("OSRM lookup failed: %s", e)
            return None

    async def _google_route(self, origin: str, destination: str) -> RouteLeg | None:
        try:
            response = await self._fetcher.fetch(
                self._config.google_directions_url,
                params={
                    "origin": origin,
                    "destination": destination,
                    "key": self._config.google_api_key,
                },
            )
            leg = response.json()["routes"][0]["legs"][0]
            return RouteLeg(
                distance_meters=leg["distance"]["value"],
                duration_seconds=leg["duration"]["value"],
            )
        except RequestLimitExceeded:
            raise
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning("Google directions lookup failed: %s", e)
            return None
