"""Date and clock-time helpers for portal values.

The portal prints dates as MM/DD/YYYY (sometimes with a 2-digit year);
trip records use ISO dates. Times are carried as minutes after midnight
and rendered as 24-hour ``HH:MM``.
"""

import re
from datetime import date

_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_SLASH_DATE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{2,4})")
_CLOCK = re.compile(r"\b(\d{1,2}):(\d{2})(?:\s*([AaPp])\.?[Mm]\.?)?")


def parse_any_date(value: str | None) -> date | None:
    """Parse ``YYYY-MM-DD`` or ``MM/DD/YYYY``; None when neither matches."""
    if not value:
        return None
    value = value.strip()
    try:
        match = _ISO_DATE.match(value)
        if match:
            return date(int(match[1]), int(match[2]), int(match[3]))
        match = _SLASH_DATE.search(value)
        if match:
            year = match[3]
            if len(year) == 2:
                year = "20" + year
            return date(int(year), int(match[1]), int(match[2]))
    except ValueError:
        return None
    return None


def to_iso_date(value: str | None) -> str | None:
    parsed = parse_any_date(value)
    return parsed.isoformat() if parsed else None


def parse_time_minutes(value: str | None) -> int | None:
    """Minutes after midnight of the first clock time in ``value``.

    Accepts ``08:00``, ``8:00 AM``, ``1:30 p.m.`` and windows such as
    ``08:00 - 12:00`` (the window start is used). Returns None when no
    valid time is present.
    """
    if not value:
        return None
    match = _CLOCK.search(value)
    if not match:
        return None
    hours, minutes = int(match[1]), int(match[2])
    meridiem = (match[3] or "").lower()
    if meridiem == "p" and hours < 12:
        hours += 12
    elif meridiem == "a" and hours == 12:
        hours = 0
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def minutes_to_hhmm(minutes: float) -> str:
    """Render minutes after midnight as 24-hour ``HH:MM``, wrapping the day."""
    total = int(round(minutes)) % 1440
    return f"{total // 60:02d}:{total % 60:02d}"


def format_duration(minutes: float) -> str:
    """``"3h 5m"`` style duration text."""
    total = max(int(round(minutes)), 0)
    return f"{total // 60}h {total % 60}m"
