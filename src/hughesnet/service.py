"""Resumable HughesNet sync orchestrator.

One ``sync`` invocation runs, under a fresh request budget:

1. authenticate (fatal when no session can be established)
2. harvest order ids from the portal, unless skipped
3. fetch detail pages for pending orders, then for failed ones
4. synthesize one trip per scheduled date

The order database is persisted after every change, so an invocation that
stops at the budget ceiling loses nothing; the caller re-invokes (usually
with ``skip_scan=True``) until ``incomplete`` comes back False.

Example:
    service = HughesNetService(kv, trips, key)
    result = await service.sync("user-1", RoutingConfig(...), CostConfig(...))
    while result.incomplete:
        result = await service.sync("user-1", routing, costs, skip_scan=True)
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import httpx

from src.errors import AuthenticationFailed, RequestLimitExceeded, get_error
from src.hughesnet.auth import SessionManager, order_db_key
from src.hughesnet.config import HughesNetConfig
from src.hughesnet.fetcher import PortalFetcher, RequestBudget, SyncContext, pick_user_agent
from src.hughesnet.harvester import Harvester, prune_missing
from src.hughesnet.models import (
    CostConfig,
    OrderDatabase,
    OrderRecord,
    OrderStatus,
    RoutingConfig,
    SyncResult,
    Trip,
)
from src.hughesnet.parser import parse_order_page
from src.hughesnet.timeutils import to_iso_date
from src.hughesnet.trip_builder import TripSynthesizer, trip_id_for
from src.services.kv_store import KeyValueStore
from src.services.routing import DirectionsRouter, RoutingLookup
from src.services.trip_store import TripStore

logger = logging.getLogger(__name__)


@dataclass
class _Progress:
    new_ids: int = 0
    fetched: int = 0
    failed: int = 0
    trips_written: list[str] = field(default_factory=list)

    @property
    def any(self) -> bool:
        # A detail page that loaded but could not be parsed still moved the
        # order forward (its attempt count grew).
        return bool(self.new_ids or self.fetched or self.failed or self.trips_written)


class HughesNetService:
    """Connects users to the portal and keeps their trips in sync.

    Sync and connect calls for the same user are serialized by an
    in-process lock; separate processes must serialize externally.
    """

    def __init__(
        self,
        kv_store: KeyValueStore,
        trip_store: TripStore,
        encryption_key: bytes,
        config: HughesNetConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        router: RoutingLookup | None = None,
    ) -> None:
        self._kv = kv_store
        self._trips = trip_store
        self._config = config or HughesNetConfig()
        self._sessions = SessionManager(kv_store, encryption_key, self._config.portal)
        self._client = http_client
        self._owns_client = http_client is None
        self._router = router
        self._user_agent = pick_user_agent()
        self._locks: dict[str, list] = {}

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        """Hold the user's lock; the entry is dropped once nobody waits on it."""
        entry = self._locks.setdefault(user_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if not entry[1]:
                del self._locks[user_id]

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.portal.request_timeout_seconds)
        return self._client

    def _new_fetcher(self, user_id: str) -> PortalFetcher:
        ctx = SyncContext(
            user_id=user_id,
            budget=RequestBudget(self._config.portal.request_limit),
            user_agent=self._user_agent,
        )
        return PortalFetcher(self._http(), ctx)

    async def aclose(self) -> None:
        """Close the HTTP client if this service created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HughesNetService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # --- Account lifecycle ---

    async def connect(self, user_id: str, username: str, password: str) -> bool:
        """Store portal credentials and verify they log in."""
        async with self._user_lock(user_id):
            fetcher = self._new_fetcher(user_id)
            fetcher.ctx.info("Connecting user %s", user_id)
            return await self._sessions.connect(fetcher, user_id, username, password)

    async def disconnect(self, user_id: str) -> None:
        """Remove the session, credentials and order database."""
        async with self._user_lock(user_id):
            await self._sessions.disconnect(user_id)

    async def get_orders(self, user_id: str) -> list[OrderRecord]:
        return sorted(
            (await self._load_db(user_id)).records(), key=lambda r: r.id
        )

    async def clear_all_trips(self, user_id: str) -> int:
        """Delete every engine-generated trip and the order database.

        Returns:
            Number of trips deleted.
        """
        async with self._user_lock(user_id):
            count = 0
            for trip in await self._trips.list(user_id):
                if trip.id.startswith("hns_"):
                    await self._trips.delete(user_id, trip.id)
                    count += 1
            await self._kv.delete(order_db_key(user_id))
            logger.info("Cleared %d trips for user %s", count, user_id)
            return count

    # --- Order database ---

    async def _load_db(self, user_id: str) -> OrderDatabase:
        return OrderDatabase.load(await self._kv.get(order_db_key(user_id)))

    async def _save_db(self, user_id: str, order_db: OrderDatabase) -> None:
        await self._kv.put(order_db_key(user_id), order_db.dump())

    # --- Sync ---

    async def sync(
        self,
        user_id: str,
        routing_config: RoutingConfig,
        cost_config: CostConfig,
        skip_scan: bool = False,
    ) -> SyncResult:
        """Run one bounded sync pass.

        Raises:
            AuthenticationFailed: No session could be established.
            RequestLimitExceeded: The budget ran out before any progress.
        """
        async with self._user_lock(user_id):
            return await self._run_sync(user_id, routing_config, cost_config, skip_scan)

    async def _run_sync(
        self,
        user_id: str,
        routing_config: RoutingConfig,
        cost_config: CostConfig,
        skip_scan: bool,
    ) -> SyncResult:
        fetcher = self._new_fetcher(user_id)
        ctx = fetcher.ctx
        progress = _Progress()
        ctx.info(
            "Sync started (budget %d requests, rates install=%s repair=%s upgrade=%s)",
            ctx.budget.limit, cost_config.install_pay, cost_config.repair_pay, cost_config.upgrade_pay,
        )

        cookie = await self._sessions.ensure_session(fetcher, user_id)
        if not cookie:
            raise AuthenticationFailed("no stored session or credentials could log in")

        order_db = await self._load_db(user_id)

        if not skip_scan:
            cookie = await self._harvest(fetcher, user_id, cookie, order_db, progress)

        incomplete, cookie = await self._fetch_details(fetcher, user_id, cookie, order_db, progress)

        if not incomplete:
            incomplete = await self._build_trips(
                fetcher, user_id, order_db, routing_config, cost_config, progress
            )

        if incomplete and ctx.budget.exhausted and not progress.any:
            ctx.error("Request budget exhausted before any progress was made")
            raise RequestLimitExceeded(ctx.budget.limit)

        ctx.info(
            "Sync finished: %d new, %d fetched, %d trips, %d requests%s",
            progress.new_ids, progress.fetched, len(progress.trips_written),
            ctx.budget.used, " (incomplete)" if incomplete else "",
        )
        return SyncResult(
            orders=sorted(order_db.records(), key=lambda r: r.id),
            incomplete=incomplete,
            logs=list(ctx.logs),
            trips_written=progress.trips_written,
            requests_used=ctx.budget.used,
        )

    async def _harvest(
        self,
        fetcher: PortalFetcher,
        user_id: str,
        cookie: str,
        order_db: OrderDatabase,
        progress: _Progress,
    ) -> str:
        """Discover order ids; budget and network trouble only cut it short."""
        ctx = fetcher.ctx
        portal = self._config.portal
        try:
            home_html, cookie = await self._sessions.fetch_authenticated(
                fetcher, user_id, portal.home_url, cookie
            )
        except RequestLimitExceeded:
            ctx.warn("Request budget exhausted before the home page loaded")
            return cookie
        except httpx.HTTPError as e:
            ctx.error("Home page fetch failed: %s", e)
            return cookie

        def add_stub(order_id: str) -> None:
            if order_db.add_stub(order_id):
                progress.new_ids += 1

        result = await Harvester(fetcher, portal).harvest_all(home_html, cookie, on_id_found=add_stub)
        ctx.info("Harvest found %d ids (%d new)", len(result.ids), progress.new_ids)

        if result.truncated:
            ctx.warn("Harvest was cut short; keeping orders missing from this scan")
        else:
            removed = prune_missing(order_db, result.ids)
            if removed:
                ctx.info("Pruned %d orders no longer on the portal: %s", len(removed), ", ".join(removed))

        await self._save_db(user_id, order_db)
        return cookie

    async def _fetch_details(
        self,
        fetcher: PortalFetcher,
        user_id: str,
        cookie: str,
        order_db: OrderDatabase,
        progress: _Progress,
    ) -> tuple[bool, str]:
        """Fetch and parse detail pages; returns (incomplete, cookie).

        Never-attempted orders may spend the whole budget. Retries of failed
        orders stop at ``routing_reserve`` remaining requests and give up
        after ``max_fetch_attempts``, so unparseable pages cannot starve
        trip synthesis.
        """
        ctx = fetcher.ctx
        portal = self._config.portal
        waiting = order_db.pending_detail()
        pending = [r for r in waiting if r.status != OrderStatus.failed]
        failed = [r for r in waiting if r.status == OrderStatus.failed]
        retries = [r for r in failed if r.fetch_attempts < portal.max_fetch_attempts]
        if len(retries) < len(failed):
            ctx.info(
                "Not retrying %d orders that failed %d times",
                len(failed) - len(retries), portal.max_fetch_attempts,
            )
        if not pending and not retries:
            return False, cookie
        ctx.info("Fetching details for %d orders (%d retries)", len(pending) + len(retries), len(retries))

        started = False
        for index, record in enumerate(pending + retries):
            is_retry = index >= len(pending)
            if is_retry and ctx.budget.remaining <= portal.routing_reserve:
                ctx.warn(
                    "Deferring %d failed orders to keep %d requests for routing",
                    len(pending) + len(retries) - index, portal.routing_reserve,
                )
                break
            if started and portal.detail_delay_seconds:
                await asyncio.sleep(portal.detail_delay_seconds)
            started = True
            try:
                page_html, cookie = await self._sessions.fetch_authenticated(
                    fetcher, user_id, portal.order_url(record.id), cookie
                )
            except RequestLimitExceeded:
                if is_retry:
                    ctx.warn("Request budget exhausted during retries")
                    return False, cookie
                ctx.warn(
                    "Request budget exhausted; %d orders left for the next run",
                    len(pending) - index,
                )
                return True, cookie
            except httpx.HTTPError as e:
                ctx.error("Order %s: detail fetch failed: %s", record.id, e)
                continue

            try:
                parsed = parse_order_page(page_html, record.id)
            except Exception as e:
                ctx.error("Order %s: detail page could not be parsed: %s", record.id, e)
                continue

            if parsed.address:
                order_db.put(record.promote(parsed))
                progress.fetched += 1
                ctx.info("Order %s: %s on %s", record.id, parsed.type.value, parsed.confirm_schedule_date or "unknown date")
            else:
                failed_record = record.mark_failed()
                order_db.put(failed_record)
                progress.failed += 1
                error = get_error("E-1001")
                ctx.warn(
                    "%s [%s] Attempt %d of %d.",
                    error.message_template.format(order_id=record.id), error.code,
                    failed_record.fetch_attempts, portal.max_fetch_attempts,
                )
            await self._save_db(user_id, order_db)

        return False, cookie

    def _user_modified(self, trip: Trip) -> bool:
        """True when the trip was edited after the engine last wrote it."""
        if not trip.last_modified:
            return False
        try:
            modified = datetime.fromisoformat(trip.last_modified)
            written = datetime.fromisoformat(trip.updated_at)
        except ValueError:
            return False
        buffer = timedelta(seconds=self._config.portal.user_modification_buffer_seconds)
        return modified > written + buffer

    async def _build_trips(
        self,
        fetcher: PortalFetcher,
        user_id: str,
        order_db: OrderDatabase,
        routing_config: RoutingConfig,
        cost_config: CostConfig,
        progress: _Progress,
    ) -> bool:
        """Synthesize trips per date; returns True when stopped early."""
        ctx = fetcher.ctx
        by_date: dict[str, list[OrderRecord]] = defaultdict(list)
        for record in order_db.records():
            if not record.is_routable:
                continue
            iso_date = to_iso_date(record.confirm_schedule_date)
            if iso_date:
                by_date[iso_date].append(record)

        router = self._router or DirectionsRouter(fetcher, self._kv, self._config.routing)
        synthesizer = TripSynthesizer(router, self._trips, ctx)
        reserve = self._config.portal.routing_reserve

        for trip_date in sorted(by_date):
            existing = await self._trips.get(user_id, trip_id_for(user_id, trip_date))
            if existing is not None and existing.total_miles > 0:
                logger.debug("Trip %s already routed", trip_date)
                continue
            if existing is not None and self._user_modified(existing):
                ctx.info("Skipping %s: trip was edited by the user", trip_date)
                continue
            if ctx.budget.remaining < reserve:
                ctx.warn("Only %d requests left; routing resumes next run", ctx.budget.remaining)
                return True

            ctx.info("Routing %s (%d orders)", trip_date, len(by_date[trip_date]))
            if await synthesizer.synthesize(
                user_id, trip_date, by_date[trip_date], routing_config, cost_config
            ):
                progress.trips_written.append(trip_id_for(user_id, trip_date))
            elif ctx.budget.exhausted:
                return True
            else:
                ctx.warn("Trip %s could not be built", trip_date)

        return False
