"""Builds one trip per scheduled day from that day's fetched orders.

Stops are visited in appointment order (recorded arrival time first, then
the scheduled begin time; orders without a usable time go last, ties by
order id). The day starts at the first appointment minus the commute to
it, or 09:00 when no order has a time.

A leg that cannot be resolved contributes nothing and is logged. Running
out of request budget during routing aborts the day without writing
anything, so the date is retried by a later invocation.
"""

import logging
import uuid
from datetime import UTC, datetime

from src.errors import RequestLimitExceeded
from src.hughesnet.fetcher import SyncContext
from src.hughesnet.models import (
    CostConfig,
    JobType,
    OrderRecord,
    RouteLeg,
    RoutingConfig,
    SupplyItem,
    Trip,
    TripStop,
)
from src.hughesnet.timeutils import format_duration, minutes_to_hhmm, parse_time_minutes
from src.services.routing import RoutingLookup
from src.services.trip_store import TripStore

logger = logging.getLogger(__name__)

METERS_TO_MILES = 0.000621371
DEFAULT_START_MINUTES = 9 * 60
DEFAULT_JOB_MINUTES = 60
DRIVE_BONUS_THRESHOLD_MINUTES = 330


def trip_id_for(user_id: str, date: str) -> str:
    return f"hns_{user_id}_{date}"


def appointment_minutes(order: OrderRecord) -> int | None:
    """Recorded arrival time when present, else the scheduled begin time."""
    if order.arrival_time:
        minutes = parse_time_minutes(order.arrival_time)
        if minutes is not None:
            return minutes
    return parse_time_minutes(order.begin_time)


def sort_orders(orders: list[OrderRecord]) -> list[OrderRecord]:
    """Chronological order; unknown times last, ties broken by order id."""
    def key(order: OrderRecord):
        minutes = appointment_minutes(order)
        return (minutes is None, minutes or 0, order.id)

    return sorted(orders, key=key)


def _money(value: float) -> str:
    return f"${value:g}"


def _stable_id(trip_id: str, kind: str, name: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{trip_id}/{kind}/{name}"))


class TripSynthesizer:
    """Turns a day's orders into a persisted ``Trip``."""

    def __init__(self, router: RoutingLookup, trip_store: TripStore, ctx: SyncContext) -> None:
        self._router = router
        self._trips = trip_store
        self._ctx = ctx
        self._legs: dict[tuple[str, str], RouteLeg | None] = {}

    async def _leg(self, origin: str, destination: str) -> RouteLeg | None:
        if origin == destination:
            return None
        pair = (origin, destination)
        if pair not in self._legs:
            leg = await self._router.get_route(origin, destination)
            if leg is None:
                self._ctx.warn("No route from %s to %s; leg counted as zero", origin, destination)
            self._legs[pair] = leg
        return self._legs[pair]

    async def synthesize(
        self,
        user_id: str,
        date: str,
        orders: list[OrderRecord],
        routing_config: RoutingConfig,
        cost_config: CostConfig,
    ) -> bool:
        """Compute and store the trip for ``date``.

        Args:
            user_id: Trip owner.
            date: ISO date (YYYY-MM-DD).
            orders: Routable orders scheduled on ``date``.
            routing_config: Start/end addresses and fuel economy.
            cost_config: Pay rates and consumable costs.

        Returns:
            True when the trip was written; False when there was nothing to
            route or the request budget ran out.
        """
        if not orders:
            return False
        self._legs = {}
        try:
            trip = await self._build(user_id, date, orders, routing_config, cost_config)
        except RequestLimitExceeded:
            self._ctx.warn("Request budget exhausted while routing %s; trip not saved", date)
            return False
        if trip is None:
            return False

        await self._trips.put(trip)
        for stop in trip.stops:
            self._ctx.info(
                "  Stop %d: %s [%s] (%s)", stop.order + 1, stop.address, stop.type, _money(stop.earnings)
            )
        self._ctx.info(
            "Saved trip %s: %s mi, %s earned, %s net",
            date, trip.total_miles, _money(trip.total_earnings), _money(trip.net_profit),
        )
        return True

    async def _build(
        self,
        user_id: str,
        date: str,
        orders: list[OrderRecord],
        routing_config: RoutingConfig,
        cost_config: CostConfig,
    ) -> Trip | None:
        ordered = sort_orders(orders)
        anchor = next((o for o in ordered if appointment_minutes(o) is not None), ordered[0])
        anchor_address = anchor.full_address()
        if not anchor_address:
            self._ctx.warn("Trip %s: first order has no usable address", date)
            return None

        start_address = routing_config.start_address.strip()
        end_address = routing_config.end_address.strip()
        if start_address and not end_address:
            end_address = start_address
        if not start_address:
            start_address = anchor_address
            if not end_address:
                end_address = start_address

        commute_minutes = 0
        commute = await self._leg(start_address, anchor_address)
        if commute is not None:
            commute_minutes = round(commute.duration_seconds / 60)

        anchor_minutes = appointment_minutes(anchor)
        if anchor_minutes is None:
            self._ctx.warn("Trip %s: no order has a valid time; starting at 09:00", date)
            start_minutes = DEFAULT_START_MINUTES
        else:
            start_minutes = anchor_minutes - commute_minutes
            if not 0 <= start_minutes <= 1440:
                start_minutes = DEFAULT_START_MINUTES

        points = [start_address] + [o.full_address() for o in ordered] + [end_address]
        drive_minutes = 0
        total_meters = 0.0
        for origin, destination in zip(points, points[1:]):
            leg = await self._leg(origin, destination)
            if leg is not None:
                drive_minutes += round(leg.duration_seconds / 60)
                total_meters += leg.distance_meters

        miles = round(total_meters * METERS_TO_MILES, 1)
        mpg, gas_price = routing_config.mpg, routing_config.gas_price
        fuel_cost = (miles / mpg) * gas_price if mpg > 0 else 0.0
        job_minutes = sum(o.job_duration or DEFAULT_JOB_MINUTES for o in ordered)
        work_minutes = drive_minutes + job_minutes

        trip_id = trip_id_for(user_id, date)
        stops, supplies = self._price_stops(trip_id, ordered, cost_config, drive_minutes)
        total_earnings = round(sum(stop.earnings for stop in stops), 2)
        supplies_cost = round(sum(supplies.values()), 2)

        existing = await self._trips.get(user_id, trip_id)
        now = datetime.now(UTC).isoformat()
        return Trip(
            id=trip_id,
            user_id=user_id,
            date=date,
            start_time=minutes_to_hhmm(start_minutes),
            end_time=minutes_to_hhmm(start_minutes + work_minutes),
            estimated_time=drive_minutes,
            total_time=format_duration(drive_minutes),
            hours_worked=round(work_minutes / 60, 2),
            start_address=start_address,
            end_address=end_address,
            total_miles=miles,
            mpg=mpg,
            gas_price=gas_price,
            fuel_cost=round(fuel_cost, 2),
            total_earnings=total_earnings,
            net_profit=round(total_earnings - fuel_cost - supplies_cost, 2),
            supplies_cost=supplies_cost,
            supply_items=[
                SupplyItem(id=_stable_id(trip_id, "supply", kind), type=kind, cost=cost)
                for kind, cost in supplies.items()
            ],
            stops=stops,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            last_modified=now,
        )

    def _price_stops(
        self,
        trip_id: str,
        ordered: list[OrderRecord],
        costs: CostConfig,
        drive_minutes: int,
    ) -> tuple[list[TripStop], dict[str, float]]:
        """Per-stop earnings and the trip's aggregated consumables."""
        drive_bonus = drive_minutes > DRIVE_BONUS_THRESHOLD_MINUTES and costs.drive_time_bonus > 0
        supplies: dict[str, float] = {}
        stops = []

        for index, order in enumerate(ordered):
            job_type = order.type or JobType.REPAIR
            notes = f"HNS Order: {order.id} ({job_type.value})"
            used: list[tuple[str, float]] = []

            if order.departure_incomplete:
                pay = 0.0
                notes += " [DEPARTURE INCOMPLETE: $0]"
            else:
                if order.has_pole_mount:
                    pay = costs.install_pay + costs.pole_charge
                    notes += f" [POLE MOUNT: {_money(costs.install_pay)} + {_money(costs.pole_charge)}]"
                    if costs.pole_cost > 0:
                        used.append(("Pole", costs.pole_cost))
                    if costs.concrete_cost > 0:
                        used.append(("Concrete", costs.concrete_cost))
                else:
                    pay = costs.pay_for(job_type)
                if order.has_wifi_extender and costs.wifi_extender_pay > 0:
                    pay += costs.wifi_extender_pay
                    notes += f" [WIFI: {_money(costs.wifi_extender_pay)}]"
                if order.has_voip and costs.voip_pay > 0:
                    pay += costs.voip_pay
                    notes += f" [VOIP: {_money(costs.voip_pay)}]"
                if drive_bonus:
                    pay += costs.drive_time_bonus
                    notes += f" [DRIVE BONUS: {_money(costs.drive_time_bonus)}]"

            if used:
                notes += " | Supplies: " + ", ".join(f"{kind}: -{_money(cost)}" for kind, cost in used)
                for kind, cost in used:
                    supplies[kind] = supplies.get(kind, 0.0) + cost

            minutes = appointment_minutes(order)
            stops.append(TripStop(
                id=_stable_id(trip_id, "stop", order.id),
                address=order.full_address(),
                order=index,
                notes=notes,
                earnings=round(pay, 2),
                appointment_time=minutes_to_hhmm(minutes) if minutes is not None else order.begin_time,
                type=job_type.value,
                duration=order.job_duration or DEFAULT_JOB_MINUTES,
                order_id=order.id,
            ))
        return stops, supplies
