"""
Time Normalizer
Converts wall-clock due dates/times entered in the portal into canonical UTC
instants and back again for display.
"""

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .exceptions import ValidationError

DEFAULT_EVENT_DURATION_MINUTES = 60

# Tried in order; the first pattern that parses wins
TIME_FORMATS = (
    "%H:%M",
    "%H:%M:%S",
    "%I:%M %p",
    "%I:%M:%S %p",
    "%I %p",
)

_MERIDIEM_RE = re.compile(r"\s*([AP])\.?\s*M\.?$", re.IGNORECASE)


def utcnow() -> datetime:
    """Naive UTC now, matching how DateTime columns are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone: {tz_name!r}") from e


def ensure_utc(instant: datetime) -> datetime:
    """Attach UTC to naive datetimes (as returned by SQLite) and normalize aware ones"""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def _coerce_date(local_date: Union[date, str]) -> date:
    if isinstance(local_date, datetime):
        return local_date.date()
    if isinstance(local_date, date):
        return local_date
    text = str(local_date).strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    # Full ISO timestamps are accepted; anything else is rejected outright
    try:
        return datetime.fromisoformat(text).date()
    except ValueError as e:
        raise ValidationError(f"Invalid due date: {local_date!r}") from e


def _normalize_time_text(raw: str) -> str:
    text = " ".join(raw.strip().split())
    # "2:30pm", "2 p.m." -> "2:30 PM", "2 PM"
    return _MERIDIEM_RE.sub(lambda m: f" {m.group(1).upper()}M", text).strip()


def parse_local_time(local_time: Union[time, str]) -> time:
    """
    Parse a human-entered wall-clock time ("14:30", "2:30 PM", "2 PM").
    Raises ValidationError when no supported format matches.
    """
    if isinstance(local_time, time):
        return local_time.replace(second=0, microsecond=0, tzinfo=None)

    text = _normalize_time_text(str(local_time))
    for fmt in TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).time().replace(second=0)
        except ValueError:
            continue
    raise ValidationError(f"Unrecognized due time: {local_time!r}")


def _localize(local_date: date, local_time: time, zone: ZoneInfo) -> Optional[datetime]:
    """Attach the zone, returning None for wall-clock times skipped by a DST jump"""
    local = datetime.combine(local_date, local_time).replace(tzinfo=zone)
    round_trip = local.astimezone(timezone.utc).astimezone(zone)
    if round_trip.replace(tzinfo=None) != local.replace(tzinfo=None):
        return None
    return local


def compute_due_instant(
    local_date: Optional[Union[date, str]],
    local_time: Optional[Union[time, str]],
    tz_name: str,
) -> Optional[datetime]:
    """
    Compute the canonical UTC due instant for a task.

    Returns None when there is no date, and also for date-only tasks: those
    keep their date for display but are never synced to a calendar.
    """
    if local_date is None or (isinstance(local_date, str) and not local_date.strip()):
        return None
    parsed_date = _coerce_date(local_date)
    zone = get_zone(tz_name)

    if local_time is None or (isinstance(local_time, str) and not local_time.strip()):
        return None

    parsed_time = parse_local_time(local_time)
    local = _localize(parsed_date, parsed_time, zone)
    if local is None:
        raise ValidationError(
            f"{parsed_date.isoformat()} {parsed_time.strftime('%H:%M')} does not exist in {tz_name}"
        )
    return local.astimezone(timezone.utc)


def instant_to_local(instant: datetime, tz_name: str) -> tuple[date, time]:
    """Inverse of compute_due_instant for display, to minute precision"""
    local = ensure_utc(instant).astimezone(get_zone(tz_name))
    return local.date(), local.time().replace(second=0, microsecond=0, tzinfo=None)


def compute_event_window(
    instant: datetime, duration_minutes: int = DEFAULT_EVENT_DURATION_MINUTES
) -> tuple[datetime, datetime]:
    """Start/end instants for the calendar event; duration is fixed, not inferred"""
    if duration_minutes <= 0:
        raise ValidationError("Event duration must be positive")
    start = ensure_utc(instant)
    return start, start + timedelta(minutes=duration_minutes)


def format_due_instant(instant: datetime, tz_name: str) -> str:
    """Human display such as '3/10/2025 at 2:30 PM'"""
    local_date, local_time = instant_to_local(instant, tz_name)
    hour = local_time.hour % 12 or 12
    meridiem = "AM" if local_time.hour < 12 else "PM"
    return (
        f"{local_date.month}/{local_date.day}/{local_date.year} "
        f"at {hour}:{local_time.minute:02d} {meridiem}"
    )
