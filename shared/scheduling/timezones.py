"""Timezone-aware calendar helpers for patient-local scheduling.

Every instant handled by the core is an aware UTC ``datetime``; patient-facing
concepts (calendar date, midnight, wall-clock dose time) are derived from an
IANA zone name. All helpers are pure and remain correct across daylight-saving
transitions: a local day is the half-open interval between two consecutive
local midnights, so it can be 23, 24 or 25 hours long.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Dict, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shared.contracts.errors import ValidationError


TIME_OF_DAY_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
DEFAULT_MIDNIGHT_WINDOW_MINUTES = 15


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@lru_cache(maxsize=256)
def get_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise ValidationError(f"Unknown IANA timezone: {name!r}", field="timezone") from exc


def is_valid_timezone(name: str) -> bool:
    try:
        get_zone(name)
    except ValidationError:
        return False
    return True


def parse_time_of_day(value: str) -> time:
    match = TIME_OF_DAY_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise ValidationError(
            f"Invalid time format: {value!r}. Use 24-hour HH:MM (e.g. 07:00, 19:30)",
            field="schedule.times",
        )
    return time(int(match.group(1)), int(match.group(2)))


def to_local(instant: datetime, tz: str) -> datetime:
    return ensure_utc(instant).astimezone(get_zone(tz))


def local_date(instant: datetime, tz: str) -> date:
    return to_local(instant, tz).date()


def local_date_string(instant: datetime, tz: str) -> str:
    return local_date(instant, tz).isoformat()


def belongs_to_date(instant: datetime, date_string: str, tz: str) -> bool:
    return local_date_string(instant, tz) == date_string


def localize(day: date, time_of_day: time, tz: str) -> datetime:
    """Convert a patient wall-clock time on ``day`` to a UTC instant.

    Wall times inside a spring-forward gap move forward by the gap length and
    ambiguous fall-back times resolve to their first occurrence, so each
    (day, time) pair maps to exactly one instant.
    """
    zone = get_zone(tz)
    wall = datetime.combine(day, time_of_day).replace(tzinfo=zone, fold=0)
    return wall.astimezone(timezone.utc)


def start_of_day(day: date, tz: str) -> datetime:
    """First instant of ``day`` in ``tz`` as UTC."""
    # fold=0 resolves a midnight that falls inside a DST gap to the transition
    # instant itself, which is the first valid local time of the day.
    return localize(day, time(0), tz)


def local_midnight(instant: datetime, tz: str) -> datetime:
    """UTC instant of the local midnight that starts ``instant``'s local day."""
    return start_of_day(local_date(instant, tz), tz)


def day_bounds(day: date, tz: str) -> Tuple[datetime, datetime]:
    """Half-open ``[start, end)`` UTC bounds of a local calendar day."""
    return start_of_day(day, tz), start_of_day(day + timedelta(days=1), tz)


def day_length(day: date, tz: str) -> timedelta:
    start, end = day_bounds(day, tz)
    return end - start


def is_within_midnight_window(
    tz: str,
    now: Optional[datetime] = None,
    window_minutes: int = DEFAULT_MIDNIGHT_WINDOW_MINUTES,
) -> bool:
    now = ensure_utc(now or utcnow())
    today = local_date(now, tz)
    nearest = min(
        abs(now - start_of_day(today, tz)),
        abs(start_of_day(today + timedelta(days=1), tz) - now),
    )
    return nearest <= timedelta(minutes=window_minutes)


def ending_day(tz: str, now: Optional[datetime] = None, window_minutes: int = DEFAULT_MIDNIGHT_WINDOW_MINUTES) -> date:
    """Local day that closes at the midnight within ``window_minutes`` of ``now``."""
    now = ensure_utc(now or utcnow())
    return local_date(now + timedelta(minutes=window_minutes), tz) - timedelta(days=1)


def patients_at_midnight(
    patient_timezones: Mapping[str, str],
    now: Optional[datetime] = None,
    window_minutes: int = DEFAULT_MIDNIGHT_WINDOW_MINUTES,
) -> List[str]:
    now = now or utcnow()
    return [
        patient_id
        for patient_id, tz in patient_timezones.items()
        if is_within_midnight_window(tz, now=now, window_minutes=window_minutes)
    ]


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def iter_days(first: date, last: date):
    current = first
    while current <= last:
        yield current
        current += timedelta(days=1)


def describe_day(day: date, tz: str) -> Dict[str, str]:
    start, end = day_bounds(day, tz)
    return {
        "date": day.isoformat(),
        "timezone": tz,
        "start_utc": start.isoformat(),
        "end_utc": end.isoformat(),
        "hours": str((end - start).total_seconds() / 3600),
    }
