"""Pydantic models for HughesNet orders, trips, and sync configuration.

Models serialize with the camelCase keys used by the stored order
database and trip documents (``confirmScheduleDate``, ``totalMiles`` ...).
Construct them with either snake_case field names or the camelCase aliases.

Order lifecycle:
    pending  -> fetched          detail page parsed with an address
    pending  -> failed           detail page had no readable address
    failed   -> fetched | failed retried on later syncs, up to max_fetch_attempts
"""

import json
import math
from datetime import UTC, datetime
from enum import Enum

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from src.errors.registry import get_error


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        """Dump with camelCase keys, omitting unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class JobType(str, Enum):
    """Work order categories recognized on the portal."""

    REPAIR = "Repair"
    INSTALL = "Install"
    UPGRADE = "Upgrade"


DEFAULT_JOB_DURATIONS = {
    JobType.INSTALL: 90,
    JobType.UPGRADE: 60,
    JobType.REPAIR: 60,
}


class OrderStatus(str, Enum):
    """Resumability state of an order record."""

    pending = "pending"
    fetched = "fetched"
    failed = "failed"


class ParsedOrder(_CamelModel):
    """Fields read from one order detail page.

    An empty ``address`` means the page could not be parsed.
    """

    id: str
    address: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    confirm_schedule_date: str = ""
    begin_time: str = ""
    type: JobType = JobType.REPAIR
    job_duration: int = 60
    has_pole_mount: bool = False
    has_wifi_extender: bool = False
    has_voip: bool = False
    departure_incomplete: bool = False
    arrival_time: str | None = None


class OrderRecord(_CamelModel):
    """One entry of a user's order database.

    Created as a stub the moment its id is harvested and promoted once
    the detail page parses with an address.
    """

    id: str
    status: OrderStatus = Field(default=OrderStatus.pending, alias="_status")
    address: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    confirm_schedule_date: str = ""
    begin_time: str = ""
    type: JobType | None = None
    job_duration: int = 0
    has_pole_mount: bool = False
    has_wifi_extender: bool = False
    has_voip: bool = False
    departure_incomplete: bool = False
    arrival_time: str | None = None
    fetch_attempts: int = 0
    last_fetched_at: str | None = None

    @model_validator(mode="before")
    @classmethod
    def infer_legacy_status(cls, data):
        # Older blobs drop the status marker once an order is fetched.
        if isinstance(data, dict) and "_status" not in data and "status" not in data:
            if str(data.get("address") or "").strip():
                data = {**data, "_status": OrderStatus.fetched.value}
        return data

    @classmethod
    def stub(cls, order_id: str) -> "OrderRecord":
        """Create a pending record for a freshly harvested id."""
        return cls(id=order_id)

    @property
    def needs_detail(self) -> bool:
        """True while the detail page still has to be fetched."""
        return self.status != OrderStatus.fetched or not self.address

    @property
    def is_routable(self) -> bool:
        """True when the order can take part in trip synthesis."""
        return self.status == OrderStatus.fetched and bool(self.address.strip())

    def promote(self, parsed: ParsedOrder) -> "OrderRecord":
        """Return the fetched record built from a parsed detail page.

        Raises:
            ValueError: If the parsed page has no address or a different id.
        """
        if parsed.id != self.id:
            raise ValueError(f"Parsed order {parsed.id} does not match record {self.id}")
        if not parsed.address.strip():
            raise ValueError(f"Order {self.id} has no address and cannot be promoted")
        return OrderRecord(
            **parsed.model_dump(),
            status=OrderStatus.fetched,
            fetch_attempts=self.fetch_attempts + 1,
            last_fetched_at=datetime.now(UTC).isoformat(),
        )

    def mark_failed(self) -> "OrderRecord":
        """Return a copy flagged as a retryable parse failure."""
        return self.model_copy(update={
            "status": OrderStatus.failed,
            "fetch_attempts": self.fetch_attempts + 1,
            "last_fetched_at": datetime.now(UTC).isoformat(),
        })

    def full_address(self) -> str:
        """Join street, city, state and zip into one routable string."""
        parts = [p.strip() for p in (self.address, self.city, self.state, self.zip) if p]
        return ", ".join(p for p in parts if p)


class OrderDatabase:
    """Per-user mapping of order id to record, persisted as one JSON blob."""

    def __init__(self, records: dict[str, OrderRecord] | None = None) -> None:
        self._records: dict[str, OrderRecord] = dict(records or {})

    @classmethod
    def load(cls, raw: str | None) -> "OrderDatabase":
        """Parse a stored blob; a missing blob yields an empty database."""
        if not raw:
            return cls()
        data = json.loads(raw)
        records = {}
        for key, value in data.items():
            record = OrderRecord.model_validate(value)
            records[record.id or key] = record
        return cls(records)

    def dump(self) -> str:
        return json.dumps(
            {order_id: rec.to_json_dict() for order_id, rec in self._records.items()},
            sort_keys=True,
        )

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self):
        return iter(self._records.values())

    def get(self, order_id: str) -> OrderRecord | None:
        return self._records.get(order_id)

    def ids(self) -> set[str]:
        return set(self._records)

    def add_stub(self, order_id: str) -> bool:
        """Add a pending stub; returns False when the id is already known."""
        if order_id in self._records:
            return False
        self._records[order_id] = OrderRecord.stub(order_id)
        return True

    def put(self, record: OrderRecord) -> None:
        self._records[record.id] = record

    def remove(self, order_id: str) -> None:
        self._records.pop(order_id, None)

    def pending_detail(self) -> list[OrderRecord]:
        """Orders needing a detail fetch: never attempted first, then retries."""
        waiting = [r for r in self._records.values() if r.needs_detail]
        return sorted(waiting, key=lambda r: (r.status == OrderStatus.failed, r.id))

    def records(self) -> list[OrderRecord]:
        return list(self._records.values())


class RouteLeg(BaseModel):
    """Distance and duration of one origin -> destination segment."""

    distance_meters: float
    duration_seconds: float


class SupplyItem(_CamelModel):
    """A consumable cost aggregated at trip level (e.g. Pole, Concrete)."""

    id: str
    type: str
    cost: float


class TripStop(_CamelModel):
    """One service stop of a synthesized trip."""

    id: str
    address: str
    order: int
    notes: str
    earnings: float
    appointment_time: str
    type: str
    duration: int
    order_id: str


class Trip(_CamelModel):
    """A day's route with earnings and costs, one per (user, date)."""

    id: str
    user_id: str
    date: str
    start_time: str
    end_time: str
    estimated_time: int
    total_time: str
    hours_worked: float
    start_address: str
    end_address: str
    total_miles: float
    mpg: float
    gas_price: float
    fuel_cost: float
    total_earnings: float
    net_profit: float
    supplies_cost: float
    supply_items: list[SupplyItem] = Field(default_factory=list)
    stops: list[TripStop] = Field(default_factory=list)
    created_at: str
    updated_at: str
    last_modified: str | None = None
    sync_status: str = "synced"
    source: str = "hughesnet"


def _check_non_negative(name: str, value: float) -> float:
    if not math.isfinite(value) or value < 0:
        error = get_error("E-2001")
        raise ValueError(f"[{error.code}] {error.message_template.format(field=name)}")
    return value


class RoutingConfig(BaseModel):
    """Where a work day starts and ends, and how fuel is costed."""

    start_address: str = ""
    end_address: str = ""
    mpg: float = 25.0
    gas_price: float = 3.50

    @field_validator("mpg", "gas_price")
    @classmethod
    def non_negative(cls, v: float, info: ValidationInfo) -> float:
        return _check_non_negative(info.field_name, v)


class CostConfig(BaseModel):
    """Pay rates per job type and consumable costs.

    Pole-mount jobs earn ``install_pay + pole_charge`` and consume one pole
    and one bag of concrete.
    """

    install_pay: float = 0.0
    repair_pay: float = 0.0
    upgrade_pay: float = 0.0
    pole_cost: float = 0.0
    concrete_cost: float = 0.0
    pole_charge: float = 0.0
    wifi_extender_pay: float = 0.0
    voip_pay: float = 0.0
    drive_time_bonus: float = 0.0

    @field_validator("*")
    @classmethod
    def non_negative(cls, v: float, info: ValidationInfo) -> float:
        return _check_non_negative(info.field_name, v)

    def pay_for(self, job_type: JobType | None) -> float:
        if job_type == JobType.INSTALL:
            return self.install_pay
        if job_type == JobType.UPGRADE:
            return self.upgrade_pay
        return self.repair_pay


class SyncResult(BaseModel):
    """Outcome of one sync invocation.

    ``incomplete`` asks the caller to invoke sync again (typically with
    ``skip_scan=True``) until it comes back False.
    """

    orders: list[OrderRecord]
    incomplete: bool
    logs: list[str] = Field(default_factory=list)
    trips_written: list[str] = Field(default_factory=list)
    requests_used: int = 0
