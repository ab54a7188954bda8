"""
Date-range presets resolved to concrete [start, end] civil dates.

Every preset is computed relative to "now" in a fixed civil timezone so
that a dashboard viewed at 00:30 Oslo time still means Oslo's today.
Nothing here touches the network or the clock beyond ``datetime.now``.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from src.core.config import get_settings
from src.templating.filters import FilterState

FALLBACK_DAYS = 30

# Older links use hyphenated names.
_ALIASES = {
    "this-month": "current_month",
    "last-month": "last_month",
}


def civil_now(tz_name: str | None = None, now: datetime | None = None) -> datetime:
    """Return *now* (default: the current instant) in the civil timezone."""
    tz = ZoneInfo(tz_name or get_settings().civil_timezone)
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        return now.replace(tzinfo=tz)
    return now.astimezone(tz)


def _to_civil_date(value: datetime, tz_name: str) -> date:
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(ZoneInfo(tz_name)).date()


def _start_of_week(day: date) -> date:
    return day - timedelta(days=day.weekday())  # Monday


def resolve_date_range(
    filters: FilterState,
    now: datetime | None = None,
    tz_name: str | None = None,
) -> tuple[date, date]:
    """Resolve the filter's date descriptor to inclusive (start, end) dates.

    Unknown or missing presets, and ``custom`` without both bounds, fall
    back to a trailing 30-day window.
    """
    tz_name = tz_name or get_settings().civil_timezone
    today = civil_now(tz_name, now).date()
    preset = _ALIASES.get(filters.date_range or "", filters.date_range)

    if preset == "custom" and filters.custom_start and filters.custom_end:
        return (
            _to_civil_date(filters.custom_start, tz_name),
            _to_civil_date(filters.custom_end, tz_name),
        )

    if preset == "today":
        return (today, today)
    if preset == "yesterday":
        yesterday = today - timedelta(days=1)
        return (yesterday, yesterday)
    if preset == "this_week":
        return (_start_of_week(today), today)
    if preset == "last_7_days":
        return (today - timedelta(days=6), today)
    if preset == "last_week":
        monday = _start_of_week(today) - timedelta(weeks=1)
        return (monday, monday + timedelta(days=6))
    if preset == "last_28_days":
        return (today - timedelta(days=27), today)
    if preset == "current_month":
        return (today.replace(day=1), today)
    if preset == "last_month":
        last_day = today.replace(day=1) - timedelta(days=1)
        return (last_day.replace(day=1), last_day)

    return (today - timedelta(days=FALLBACK_DAYS), today)


def timestamp_bounds(start: date, end: date, tz_name: str | None = None) -> tuple[str, str]:
    """Render BigQuery TIMESTAMP literals covering whole civil days."""
    tz_name = tz_name or get_settings().civil_timezone
    from_sql = f"TIMESTAMP('{start.isoformat()}', '{tz_name}')"
    to_sql = f"TIMESTAMP('{end.isoformat()}T23:59:59', '{tz_name}')"
    return from_sql, to_sql


def resolve_timestamp_bounds(
    filters: FilterState,
    now: datetime | None = None,
    tz_name: str | None = None,
) -> tuple[str, str]:
    start, end = resolve_date_range(filters, now=now, tz_name=tz_name)
    return timestamp_bounds(start, end, tz_name)
