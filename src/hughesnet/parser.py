"""Order detail page parsing.

Each field is read by walking one strategy table, first success wins:

1. ``<input name=... value=...>`` for the field's primary name
2. the same input with ``value`` before ``name``
3. alternate input names, in both attribute orders
4. a labeled regex over the page's normalized text (tags stripped,
   whitespace and ``&nbsp;`` collapsed), looking a bounded window past the label
5. whole-page heuristics (address only)

A page with no address after every strategy is a parse failure; the
caller keeps the order retryable instead of storing it as complete.
"""

import html as html_lib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

from bs4 import BeautifulSoup

from src.hughesnet.models import DEFAULT_JOB_DURATIONS, JobType, ParsedOrder
from src.hughesnet.timeutils import minutes_to_hhmm, parse_any_date

logger = logging.getLogger(__name__)

POLE_MOUNT_LABEL = "CON NON-STD CHARGE NEW POLE"
WIFI_TASK_LABEL = "WI-FI INSTALLATION [Task]"
VOIP_TASK_LABEL = "Install, VOIP Phone [Task]"
VOIP_ICON = "icoPhoneVoipMed.gif"
DEPARTURE_COMPLETE = "Departure Complete"
DEPARTURE_INCOMPLETE = "Departure Incomplete"
ARRIVAL_ON_SITE = "Arrival On Site"

MIN_JOB_MINUTES = 10
MAX_JOB_MINUTES = 600

_DATE_VALUE = re.compile(r"(\d{1,2}/\d{1,2}/\d{2,4})")
_TIME_VALUE = re.compile(r"(\d{1,2}:\d{2}(?:\s*[AaPp]\.?[Mm]\.?)?)")
_ACTIVITY_TS = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})\s*(\d{1,2}):(\d{2})(?::(\d{2}))?")
_WIFI_TOKEN = re.compile(r"\b(WIFI|WI-FI|MESH)\b")
_INSTALL_TOKEN = re.compile(r"\b(INST|INSTALL|INSTALLATION|EXTEND|EXTENDER|EXT)\b")
_VOIP_ATTR = re.compile(r"""(?:title|alt)\s*=\s*["']VOIP["']""", re.IGNORECASE)
_TYPE_LABEL = re.compile(
    r"(?:Order|Service)\s*Type\s*[:.]?\s*(Re-Install|Install|Repair|Upgrade)", re.IGNORECASE
)
# Re-Install must be tested before Install.
_TYPE_TOKENS = (
    ("re-install", JobType.INSTALL),
    ("upgrade", JobType.UPGRADE),
    ("repair", JobType.REPAIR),
    ("install", JobType.INSTALL),
)
_SERVICE_LOCATION = re.compile(
    r"Service Location\s*:?\s*(\d{1,6}\s+[A-Za-z0-9.'# -]{3,80}?)"
    r"(?=\s*(?:,|City\b|County\b|State\b|Zip\b|$))"
)


@dataclass(frozen=True)
class LabelRule:
    """Regex applied to the text window following ``label``."""

    label: str
    pattern: re.Pattern
    window: int = 200


@dataclass(frozen=True)
class FieldRule:
    """Strategy table for one order field."""

    input_names: tuple[str, ...]
    labels: tuple[LabelRule, ...] = ()
    heuristics: tuple[re.Pattern, ...] = field(default=())


FIELD_RULES: dict[str, FieldRule] = {
    "address": FieldRule(
        input_names=("FLD_SO_Address1", "f_address", "txtAddress"),
        labels=(
            LabelRule("Address:", re.compile(r"^\s*(.+?)\s+(?:City|County|State|Zip)\b")),
        ),
        heuristics=(_SERVICE_LOCATION,),
    ),
    "city": FieldRule(
        input_names=("f_city", "FLD_SO_City"),
        labels=(
            LabelRule("City:", re.compile(
                r"^\s*([A-Za-z][A-Za-z.'-]*(?:\s[A-Za-z][A-Za-z.'-]*)*?)"
                r"\s*(?:,|\s\S+:|State\b|Zip\b|County\b|$)"
            )),
        ),
    ),
    "state": FieldRule(
        input_names=("f_state", "FLD_SO_State"),
        labels=(LabelRule("State:", re.compile(r"^\s*([A-Z]{2})\b")),),
    ),
    "zip": FieldRule(
        input_names=("f_zip", "FLD_SO_Zip"),
        labels=(
            LabelRule("Zip/Postal:", re.compile(r"^\s*(\d{5})")),
            LabelRule("Zip:", re.compile(r"^\s*(\d{5})")),
        ),
    ),
    "confirm_schedule_date": FieldRule(
        input_names=("f_sched_date",),
        labels=(
            LabelRule("Confirm Schedule Date", _DATE_VALUE, window=500),
            LabelRule("Schedule Date", _DATE_VALUE, window=500),
        ),
    ),
    "begin_time": FieldRule(
        input_names=("f_begin_time",),
        labels=(
            LabelRule("Arrival Window", _TIME_VALUE),
            LabelRule("Arrival Time", _TIME_VALUE),
            LabelRule("Schd Est. Begin Time", _TIME_VALUE),
            LabelRule("Time:", _TIME_VALUE),
        ),
    ),
}


def _input_patterns(name: str) -> tuple[re.Pattern, re.Pattern]:
    quoted_name = rf"""name\s*=\s*["']?{re.escape(name)}(?=["'\s>/])["']?"""
    value = r"""value\s*=\s*(?:"([^"]*)"|'([^']*)')"""
    return (
        re.compile(rf"<input\b[^>]*\b{quoted_name}[^>]*\b{value}", re.IGNORECASE),
        re.compile(rf"<input\b[^>]*\b{value}[^>]*\b{quoted_name}", re.IGNORECASE),
    )


def read_input(page_html: str, name: str) -> str:
    """Value of the named form input, trying both attribute orders."""
    for pattern in _input_patterns(name):
        match = pattern.search(page_html)
        if match:
            value = html_lib.unescape(match.group(1) or match.group(2) or "").strip()
            if value:
                return value
    return ""


def normalize_text(soup: BeautifulSoup) -> str:
    """Visible page text with tags stripped and whitespace collapsed."""
    return re.sub(r"\s+", " ", soup.get_text(" ")).strip()


def scan_label(text: str, rule: LabelRule) -> str:
    idx = text.find(rule.label)
    while idx != -1:
        start = idx + len(rule.label)
        match = rule.pattern.search(text[start:start + rule.window])
        if match and match.group(1).strip():
            return match.group(1).strip()
        idx = text.find(rule.label, start)
    return ""


def resolve_field(page_html: str, text: str, rule: FieldRule) -> str:
    """Walk a field's strategy table and return the first non-empty value."""
    for name in rule.input_names:
        value = read_input(page_html, name)
        if value:
            return value
    for label_rule in rule.labels:
        value = scan_label(text, label_rule)
        if value:
            return value
    for pattern in rule.heuristics:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return ""


def title_case(value: str) -> str:
    return re.sub(r"\b\w", lambda m: m.group().upper(), value.lower())


def _match_type_token(region: str) -> JobType | None:
    lowered = region.lower()
    for token, job_type in _TYPE_TOKENS:
        if token in lowered:
            return job_type
    return None


def classify_job_type(soup: BeautifulSoup, text: str) -> JobType:
    """Job type from the explicit label, the order header, or the page title."""
    match = _TYPE_LABEL.search(text)
    if match:
        return _match_type_token(match.group(1)) or JobType.REPAIR

    anchor = text.find("Service Order #")
    if anchor != -1:
        found = _match_type_token(text[anchor:anchor + 300])
        if found:
            return found

    title = soup.find(class_="PgTtl")
    if title is not None:
        found = _match_type_token(title.get_text(" "))
        if found:
            return found
    return JobType.REPAIR


def has_wifi_extender(soup: BeautifulSoup, text: str) -> bool:
    if WIFI_TASK_LABEL in text:
        return True
    for cell in soup.find_all(class_="SearchUtilData"):
        upper = cell.get_text(" ", strip=True).upper()
        if _WIFI_TOKEN.search(upper) and _INSTALL_TOKEN.search(upper):
            return True
    return False


def has_voip(page_html: str, text: str) -> bool:
    return VOIP_TASK_LABEL in text or VOIP_ICON in page_html or bool(_VOIP_ATTR.search(page_html))


def is_departure_incomplete(text: str) -> bool:
    """Incomplete only when no "Departure Complete" marker follows the first incomplete one."""
    incomplete_at = text.find(DEPARTURE_INCOMPLETE)
    if incomplete_at == -1:
        return False
    complete_at = text.rfind(DEPARTURE_COMPLETE)
    return complete_at == -1 or complete_at < incomplete_at


def _parse_activity_ts(text: str) -> datetime | None:
    match = _ACTIVITY_TS.search(text)
    if not match:
        return None
    month, day, year, hour, minute, second = match.groups()
    try:
        return datetime(int(year), int(month), int(day), int(hour), int(minute), int(second or 0))
    except ValueError:
        return None


def find_event_times(soup: BeautifulSoup, label: str) -> list[datetime]:
    """Timestamps of activity rows carrying ``label``.

    Newer pages print the timestamp in the labeled cell, older ones in the
    preceding ``SearchUtilData`` cell.
    """
    found = []
    for cell in soup.find_all(class_="SearchUtilData"):
        cell_text = cell.get_text(" ", strip=True)
        if label not in cell_text:
            continue
        stamp = _parse_activity_ts(cell_text)
        if stamp is None:
            previous = cell.find_previous_sibling(class_="SearchUtilData")
            if previous is not None:
                stamp = _parse_activity_ts(previous.get_text(" ", strip=True))
        if stamp is not None:
            found.append(stamp)
    return found


@dataclass
class ActivityTimes:
    arrival: datetime | None = None
    end: datetime | None = None

    @property
    def duration_minutes(self) -> int | None:
        if self.arrival is None or self.end is None:
            return None
        return round((self.end - self.arrival).total_seconds() / 60)


def read_activity(soup: BeautifulSoup) -> ActivityTimes:
    """Arrival and departure of the most recent visit day."""
    arrivals = find_event_times(soup, ARRIVAL_ON_SITE)
    completes = find_event_times(soup, DEPARTURE_COMPLETE)
    incompletes = find_event_times(soup, DEPARTURE_INCOMPLETE)
    everything = arrivals + completes + incompletes
    if not everything:
        return ActivityTimes()

    day = max(everything).date()

    def same_day(stamps: list[datetime]) -> list[datetime]:
        return [s for s in stamps if s.date() == day]

    arrival = min(same_day(arrivals), default=None) or (arrivals[0] if arrivals else None)
    end = max(same_day(incompletes), default=None) or max(same_day(completes), default=None)
    return ActivityTimes(arrival=arrival, end=end)


def parse_order_page(page_html: str, order_id: str) -> ParsedOrder:
    """Parse one order detail page.

    Returns:
        ParsedOrder; ``address`` is empty when the page could not be read.
    """
    soup = BeautifulSoup(page_html, "html.parser")
    text = normalize_text(soup)
    values = {name: resolve_field(page_html, text, rule) for name, rule in FIELD_RULES.items()}

    job_type = classify_job_type(soup, text)
    job_duration = DEFAULT_JOB_DURATIONS[job_type]
    schedule_date = values["confirm_schedule_date"]
    arrival_time = None

    activity = read_activity(soup)
    duration = activity.duration_minutes
    if duration is not None and MIN_JOB_MINUTES < duration < MAX_JOB_MINUTES:
        job_duration = duration
    if activity.arrival is not None:
        scheduled = parse_any_date(schedule_date)
        if scheduled is None:
            schedule_date = activity.arrival.strftime("%m/%d/%Y")
        if scheduled is None or scheduled == activity.arrival.date():
            arrival_time = minutes_to_hhmm(activity.arrival.hour * 60 + activity.arrival.minute)

    parsed = ParsedOrder(
        id=order_id,
        address=title_case(values["address"]),
        city=title_case(values["city"]),
        state=values["state"].upper(),
        zip=values["zip"],
        confirm_schedule_date=schedule_date,
        begin_time=values["begin_time"],
        type=job_type,
        job_duration=job_duration,
        has_pole_mount=POLE_MOUNT_LABEL in text,
        has_wifi_extender=has_wifi_extender(soup, text),
        has_voip=has_voip(page_html, text),
        departure_incomplete=is_departure_incomplete(text),
        arrival_time=arrival_time,
    )
    if not parsed.address:
        logger.debug("Order %s: no address found on detail page", order_id)
    return parsed
