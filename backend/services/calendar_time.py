# services/calendar_time.py
# Time zone / parsing / formatting helpers for calendar data

import re
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

import settings

CALENDAR_TZ = ZoneInfo(settings.CALENDAR_TZ)

DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def now_local() -> datetime:
    return datetime.now(CALENDAR_TZ)


def now_iso() -> str:
    """
    Current time as an ISO 8601 string in the calendar time zone.

    :return: ISO string with offset
    :rtype: str
    """
    return now_local().isoformat()


def friendly_today() -> str:
    """
    Today in a human readable form, e.g. "Sunday, October 18, 2026 14:05".

    :return: "Weekday, Month D, YYYY HH:MM"
    :rtype: str
    """
    n = now_local()
    return f"{n.strftime('%A, %B')} {n.day}, {n.year} {n.strftime('%H:%M')}"


def is_date_only(value: Optional[str]) -> bool:
    return bool(value) and bool(DATE_ONLY_RE.match(value.strip()))


def parse_dt(dt_str: Optional[str]) -> Optional[datetime]:
    """
    Parse "YYYY-MM-DD" or an ISO date-time into an aware datetime.

    Strings without an offset are read as wall-clock time in the calendar
    time zone; strings with an offset are converted to it.

    :param dt_str: date or date-time string
    :type dt_str: Optional[str]
    :return: aware datetime in the calendar zone, or None when unparseable
    :rtype: Optional[datetime]
    """
    if not dt_str:
        return None
    s = dt_str.strip()
    try:
        if is_date_only(s):
            return datetime.fromisoformat(s + "T00:00:00").replace(tzinfo=CALENDAR_TZ)
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=CALENDAR_TZ)
    return dt.astimezone(CALENDAR_TZ)


def parse_date(value: Optional[str]) -> Optional[date]:
    if not is_date_only(value):
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def to_storage(dt: datetime) -> datetime:
    """Naive wall-clock value in the calendar zone (what the DB column keeps)."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(CALENDAR_TZ).replace(tzinfo=None)


def from_storage(dt: datetime) -> datetime:
    return dt.replace(tzinfo=CALENDAR_TZ) if dt.tzinfo is None else dt.astimezone(CALENDAR_TZ)


def to_iso(dt: datetime, *, all_day: bool = False) -> str:
    """
    Render a stored value: "YYYY-MM-DD" for all-day events, ISO with offset otherwise.

    :param dt: stored datetime
    :type dt: datetime
    :param all_day: render the date part only
    :type all_day: bool
    :return: ISO string
    :rtype: str
    """
    if all_day:
        return dt.date().isoformat()
    return from_storage(dt).isoformat()


def start_of_day(d: date) -> datetime:
    return datetime(d.year, d.month, d.day)


def add_days(d: date, days: int) -> date:
    return d + timedelta(days=days)
