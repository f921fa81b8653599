"""End-to-end sync tests against the in-process fake portal."""

import asyncio

import pytest

from src.errors import AuthenticationFailed, RequestLimitExceeded
from src.hughesnet.auth import order_db_key, session_key
from src.hughesnet.config import HughesNetConfig, PortalConfig
from src.hughesnet.models import (
    CostConfig,
    OrderDatabase,
    OrderStatus,
    RoutingConfig,
    Trip,
)
from src.hughesnet.service import HughesNetService
from src.hughesnet.trip_builder import trip_id_for
from tests.helpers import FakePortal, FakeRouter, home_page, order_page

DEPOT = "100 Depot Rd, Springfield, IL"
ROUTING = RoutingConfig(start_address=DEPOT)
COSTS = CostConfig(install_pay=100, repair_pay=50)
TRIP_ID = trip_id_for("u1", "2025-12-10")


def _config(**portal_overrides) -> HughesNetConfig:
    portal = {"scan_delay_seconds": 0, "detail_delay_seconds": 0, **portal_overrides}
    return HughesNetConfig(portal=PortalConfig(**portal))


def _portal(order_ids=("10000001", "10000002")) -> FakePortal:
    times = ["08:00", "10:30", "13:00", "15:00"]
    orders = {
        order_id: order_page(order_id, address=f"{index + 1}0 ELM ST", begin_time=times[index % 4])
        for index, order_id in enumerate(order_ids)
    }
    return FakePortal(home_html=home_page(list(order_ids)), orders=orders)


def _manual_trip(trip_id, total_miles=0.0, updated="2025-12-10T10:00:00+00:00", modified=None):
    return Trip(
        id=trip_id,
        user_id="u1",
        date="2025-12-10",
        start_time="08:00",
        end_time="12:00",
        estimated_time=0,
        total_time="0h 0m",
        hours_worked=0,
        start_address=DEPOT,
        end_address=DEPOT,
        total_miles=total_miles,
        mpg=25,
        gas_price=3.5,
        fuel_cost=0,
        total_earnings=0,
        net_profit=0,
        supplies_cost=0,
        created_at=updated,
        updated_at=updated,
        last_modified=modified or updated,
    )


async def _connected(portal, kv_store, trip_store, encryption_key, config=None, router=None):
    service = HughesNetService(
        kv_store,
        trip_store,
        encryption_key,
        config=config or _config(),
        http_client=portal.client(),
        router=router or FakeRouter(),
    )
    assert await service.connect("u1", portal.username, portal.password)
    return service


class TestConnect:

    @pytest.mark.asyncio
    async def test_sync_without_credentials_fails(self, kv_store, trip_store, encryption_key):
        service = HughesNetService(
            kv_store, trip_store, encryption_key, config=_config(), http_client=_portal().client()
        )
        with pytest.raises(AuthenticationFailed) as exc_info:
            await service.sync("u1", ROUTING, COSTS)
        assert exc_info.value.code == "E-5001"

    @pytest.mark.asyncio
    async def test_connect_rejected(self, kv_store, trip_store, encryption_key):
        portal = _portal()
        service = HughesNetService(
            kv_store, trip_store, encryption_key, config=_config(), http_client=portal.client()
        )
        assert await service.connect("u1", "tech1", "nope") is False


class TestSync:

    @pytest.mark.asyncio
    async def test_full_sync_builds_trip(self, kv_store, trip_store, encryption_key):
        """Two orders on 12/10/2025 become one trip that starts before the first job."""
        portal = _portal()
        service = await _connected(portal, kv_store, trip_store, encryption_key)

        result = await service.sync("u1", ROUTING, COSTS)

        assert not result.incomplete
        assert [o.id for o in result.orders] == ["10000001", "10000002"]
        assert all(o.status == OrderStatus.fetched for o in result.orders)
        assert result.trips_written == [TRIP_ID]
        assert result.requests_used == 3
        trip = await trip_store.get("u1", TRIP_ID)
        assert len(trip.stops) == 2
        assert trip.stops[0].order_id == "10000001"
        assert trip.stops[0].address == "10 Elm St, Springfield, IL, 62704"
        assert trip.start_time == "07:30"
        assert trip.total_earnings == 200
        assert any(line.startswith("Sync finished") for line in result.logs)

    @pytest.mark.asyncio
    async def test_resync_is_idempotent(self, kv_store, trip_store, encryption_key):
        portal = _portal()
        service = await _connected(portal, kv_store, trip_store, encryption_key)
        await service.sync("u1", ROUTING, COSTS)
        first_db = await kv_store.get(order_db_key("u1"))
        first_trip = await trip_store.get("u1", TRIP_ID)

        result = await service.sync("u1", ROUTING, COSTS)

        assert result.trips_written == []
        assert result.requests_used == 1
        assert await kv_store.get(order_db_key("u1")) == first_db
        assert (await trip_store.get("u1", TRIP_ID)).updated_at == first_trip.updated_at

    @pytest.mark.asyncio
    async def test_resumes_across_invocations(self, kv_store, trip_store, encryption_key):
        """A run that hits the request ceiling persists progress for the next run."""
        portal = _portal(("10000001", "10000002", "10000003", "10000004"))
        config = _config(request_limit=3, routing_reserve=0)
        service = await _connected(portal, kv_store, trip_store, encryption_key, config=config)

        first = await service.sync("u1", ROUTING, COSTS)

        assert first.incomplete
        assert first.requests_used == 3
        statuses = {o.id: o.status for o in first.orders}
        assert statuses == {
            "10000001": OrderStatus.fetched,
            "10000002": OrderStatus.fetched,
            "10000003": OrderStatus.pending,
            "10000004": OrderStatus.pending,
        }
        assert await trip_store.get("u1", TRIP_ID) is None

        second = await service.sync("u1", ROUTING, COSTS, skip_scan=True)

        assert not second.incomplete
        assert all(o.status == OrderStatus.fetched for o in second.orders)
        trip = await trip_store.get("u1", TRIP_ID)
        assert [s.order_id for s in trip.stops] == ["10000001", "10000002", "10000003", "10000004"]

    @pytest.mark.asyncio
    async def test_no_progress_raises(self, kv_store, trip_store, encryption_key):
        db = OrderDatabase()
        db.add_stub("10000001")
        await kv_store.put(order_db_key("u1"), db.dump())
        portal = _portal()
        await _connected(portal, kv_store, trip_store, encryption_key)
        await kv_store.delete(session_key("u1"))
        service = HughesNetService(
            kv_store,
            trip_store,
            encryption_key,
            config=_config(request_limit=1),
            http_client=portal.client(),
            router=FakeRouter(),
        )

        with pytest.raises(RequestLimitExceeded):
            await service.sync("u1", ROUTING, COSTS, skip_scan=True)

    @pytest.mark.asyncio
    async def test_routing_reserve_defers_trips(self, kv_store, trip_store, encryption_key):
        portal = _portal()
        config = _config(request_limit=5, routing_reserve=3)
        service = await _connected(portal, kv_store, trip_store, encryption_key, config=config)

        result = await service.sync("u1", ROUTING, COSTS)

        assert result.incomplete
        assert await trip_store.get("u1", TRIP_ID) is None
        assert any("routing resumes next run" in line for line in result.logs)

    @pytest.mark.asyncio
    async def test_session_expiry_mid_sync(self, kv_store, trip_store, encryption_key):
        portal = _portal()
        service = await _connected(portal, kv_store, trip_store, encryption_key)
        portal.expire_next = 1

        result = await service.sync("u1", ROUTING, COSTS)

        assert not result.incomplete
        assert result.requests_used == 5
        assert any("logging in again" in line for line in result.logs)


class TestPruning:

    @pytest.mark.asyncio
    async def test_orders_gone_from_portal_are_pruned(self, kv_store, trip_store, encryption_key):
        portal = _portal()
        service = await _connected(portal, kv_store, trip_store, encryption_key)
        await service.sync("u1", ROUTING, COSTS)
        portal.home_html = home_page(["10000001"])

        result = await service.sync("u1", ROUTING, COSTS)

        assert [o.id for o in result.orders] == ["10000001"]
        assert any("Pruned 1 orders" in line for line in result.logs)

    @pytest.mark.asyncio
    async def test_truncated_harvest_prunes_nothing(self, kv_store, trip_store, encryption_key):
        """Orders missing from an incomplete scan are kept."""
        portal = _portal()
        config = _config(harvest_start_ceiling=1)
        service = await _connected(portal, kv_store, trip_store, encryption_key, config=config)
        await service.sync("u1", ROUTING, COSTS)
        portal.home_html = home_page(["10000001"], extra='<a href="/SoSearch?status=open">Open</a>')

        result = await service.sync("u1", ROUTING, COSTS)

        assert [o.id for o in result.orders] == ["10000001", "10000002"]
        assert any("keeping orders missing from this scan" in line for line in result.logs)

    @pytest.mark.asyncio
    async def test_secondary_page_cap_prunes_nothing(self, kv_store, trip_store, encryption_key):
        """An order listed only past the secondary page cap is kept."""
        portal = _portal()
        service = await _connected(portal, kv_store, trip_store, encryption_key)
        await service.sync("u1", ROUTING, COSTS)
        links = "".join(f'<a href="/SoSearch?page={n}">Page {n}</a>' for n in range(1, 10))
        portal.home_html = home_page(["10000001"], extra=links)
        portal.pages = {f"/SoSearch?page={n}": "<html><body>No orders</body></html>" for n in range(1, 9)}
        portal.pages["/SoSearch?page=9"] = home_page(["10000002"])

        result = await service.sync("u1", ROUTING, COSTS)

        assert [o.id for o in result.orders] == ["10000001", "10000002"]
        assert any("Scanning only 8 of 9" in line for line in result.logs)

    @pytest.mark.asyncio
    async def test_departure_incomplete_orders_survive(self, kv_store, trip_store, encryption_key):
        portal = _portal()
        portal.orders["10000002"] = order_page(
            "10000002",
            extra='<tr><td class="SearchUtilData">12/10/2025 10:30</td>'
                  '<td class="SearchUtilData">Departure Incomplete</td></tr>',
        )
        service = await _connected(portal, kv_store, trip_store, encryption_key)
        await service.sync("u1", ROUTING, COSTS)
        portal.home_html = home_page(["10000001"])

        result = await service.sync("u1", ROUTING, COSTS)

        assert [o.id for o in result.orders] == ["10000001", "10000002"]


class TestDetailFailures:

    @pytest.mark.asyncio
    async def test_unparseable_page_retried(self, kv_store, trip_store, encryption_key):
        portal = _portal()
        portal.orders["10000002"] = "<html><body>Temporarily unavailable</body></html>"
        service = await _connected(portal, kv_store, trip_store, encryption_key)

        first = await service.sync("u1", ROUTING, COSTS)

        statuses = {o.id: o.status for o in first.orders}
        assert statuses["10000002"] == OrderStatus.failed
        assert any("No service address could be read for order 10000002" in line for line in first.logs)

        portal.orders["10000002"] = order_page("10000002", address="20 ELM ST", begin_time="10:30")
        second = await service.sync("u1", ROUTING, COSTS, skip_scan=True)

        record = next(o for o in second.orders if o.id == "10000002")
        assert record.status == OrderStatus.fetched
        assert record.fetch_attempts == 2

    @pytest.mark.asyncio
    async def test_transport_error_skips_order(self, kv_store, trip_store, encryption_key):
        portal = _portal()
        portal.broken_order_ids.add("10000001")
        service = await _connected(portal, kv_store, trip_store, encryption_key)

        result = await service.sync("u1", ROUTING, COSTS)

        statuses = {o.id: o.status for o in result.orders}
        assert statuses == {"10000001": OrderStatus.pending, "10000002": OrderStatus.fetched}
        assert any(line.startswith("ERROR: Order 10000001") for line in result.logs)
        assert len((await trip_store.get("u1", TRIP_ID)).stops) == 1

    @pytest.mark.asyncio
    async def test_unparseable_pages_cannot_starve_trips(self, kv_store, trip_store, encryption_key):
        """Retries of failed orders leave the routing reserve and eventually stop."""
        broken = [f"100000{n:02d}" for n in range(2, 42)]
        portal = _portal(order_ids=("10000001",))
        portal.home_html = home_page(["10000001", *broken])
        for order_id in broken:
            portal.orders[order_id] = "<html><body>No record</body></html>"
        service = await _connected(portal, kv_store, trip_store, encryption_key)

        first = await service.sync("u1", ROUTING, COSTS)
        assert first.incomplete

        second = await service.sync("u1", ROUTING, COSTS, skip_scan=True)
        assert not second.incomplete
        assert second.requests_used == 30
        assert any("Deferring" in line for line in second.logs)
        assert (await trip_store.get("u1", TRIP_ID)).stops[0].order_id == "10000001"

        for _ in range(4):
            last = await service.sync("u1", ROUTING, COSTS, skip_scan=True)

        assert not last.incomplete
        assert last.requests_used == 0
        attempts = {o.id: o.fetch_attempts for o in last.orders if o.status == OrderStatus.failed}
        assert set(attempts) == set(broken)
        assert set(attempts.values()) == {3}


class TestExistingTrips:

    @pytest.mark.asyncio
    async def test_user_modified_trip_is_left_alone(self, kv_store, trip_store, encryption_key):
        await trip_store.put(_manual_trip(
            TRIP_ID, updated="2025-12-10T10:00:00+00:00", modified="2025-12-10T10:10:00+00:00"
        ))
        service = await _connected(_portal(), kv_store, trip_store, encryption_key)

        result = await service.sync("u1", ROUTING, COSTS)

        assert result.trips_written == []
        assert (await trip_store.get("u1", TRIP_ID)).total_miles == 0
        assert any("edited by the user" in line for line in result.logs)

    @pytest.mark.asyncio
    async def test_unrouted_trip_is_recomputed(self, kv_store, trip_store, encryption_key):
        """Edits inside the write buffer do not count as user changes."""
        created = "2025-12-10T10:00:00+00:00"
        await trip_store.put(_manual_trip(TRIP_ID, updated=created, modified="2025-12-10T10:01:00+00:00"))
        service = await _connected(_portal(), kv_store, trip_store, encryption_key)

        result = await service.sync("u1", ROUTING, COSTS)

        assert result.trips_written == [TRIP_ID]
        trip = await trip_store.get("u1", TRIP_ID)
        assert trip.total_miles > 0
        assert trip.created_at == created


class TestAccountLifecycle:

    @pytest.mark.asyncio
    async def test_clear_all_trips(self, kv_store, trip_store, encryption_key):
        service = await _connected(_portal(), kv_store, trip_store, encryption_key)
        await service.sync("u1", ROUTING, COSTS)
        await trip_store.put(_manual_trip("manual-1"))

        assert await service.clear_all_trips("u1") == 1

        assert [t.id for t in await trip_store.list("u1")] == ["manual-1"]
        assert await service.get_orders("u1") == []

    @pytest.mark.asyncio
    async def test_disconnect(self, kv_store, trip_store, encryption_key):
        service = await _connected(_portal(), kv_store, trip_store, encryption_key)
        await service.sync("u1", ROUTING, COSTS)

        await service.disconnect("u1")

        assert await service.get_orders("u1") == []
        with pytest.raises(AuthenticationFailed):
            await service.sync("u1", ROUTING, COSTS)

    @pytest.mark.asyncio
    async def test_sql_backed_stores(self, session_factory, encryption_key):
        from src.services.kv_store import SqlKeyValueStore
        from src.services.trip_store import SqlTripStore

        kv, trips = SqlKeyValueStore(session_factory), SqlTripStore(session_factory)
        service = await _connected(_portal(), kv, trips, encryption_key)

        result = await service.sync("u1", ROUTING, COSTS)

        assert result.trips_written == [TRIP_ID]
        assert [t.id for t in await trips.list("u1")] == [TRIP_ID]
        assert len(await service.get_orders("u1")) == 2


class TestUserLocks:

    @pytest.mark.asyncio
    async def test_concurrent_syncs_serialize_and_release(self, kv_store, trip_store, encryption_key):
        service = await _connected(_portal(), kv_store, trip_store, encryption_key)

        first, second = await asyncio.gather(
            service.sync("u1", ROUTING, COSTS),
            service.sync("u1", ROUTING, COSTS),
        )

        assert first.trips_written == [TRIP_ID]
        assert second.trips_written == []
        assert service._locks == {}

    @pytest.mark.asyncio
    async def test_failed_sync_releases_lock(self, kv_store, trip_store, encryption_key):
        service = HughesNetService(
            kv_store, trip_store, encryption_key, config=_config(), http_client=_portal().client()
        )
        for user_id in ("u1", "u2", "u3"):
            with pytest.raises(AuthenticationFailed):
                await service.sync(user_id, ROUTING, COSTS)

        assert service._locks == {}
