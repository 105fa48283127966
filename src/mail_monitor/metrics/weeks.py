"""ISO-8601 week identifiers of the form ``Sww-YYYY``."""

from __future__ import annotations

import re
from collections.abc import Iterator
from datetime import UTC, date, datetime, time, timedelta, tzinfo

_WEEK_ID_RE = re.compile(r"^S(\d{2})-(\d{4})$")


def format_week_id(year: int, week: int) -> str:
    """Format an ISO year/week pair as ``Sww-YYYY``."""
    return f"S{week:02d}-{year:04d}"


def parse_week_id(week_id: str) -> tuple[int, int]:
    """Parse ``Sww-YYYY`` into ``(iso_year, iso_week)``.

    Raises:
        ValueError: If the id is malformed or the week does not exist in that year.
    """
    match = _WEEK_ID_RE.match(week_id.strip())
    if match is None:
        raise ValueError(f"Invalid week id {week_id!r}, expected Sww-YYYY")
    week, year = int(match.group(1)), int(match.group(2))
    # fromisocalendar rejects week 53 in 52-week years.
    date.fromisocalendar(year, week, 1)
    return year, week


def week_id_for(value: datetime | date, *, tz: tzinfo = UTC) -> str:
    """Return the ISO week id containing a timestamp.

    Args:
        value: Aware datetime (naive values are taken as UTC) or a calendar date.
        tz: Timezone in which week boundaries are evaluated.

    Returns:
        Week id such as ``S01-2025``.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        day = value.astimezone(tz).date()
    else:
        day = value
    iso = day.isocalendar()
    return format_week_id(iso.year, iso.week)


def week_bounds(week_id: str, *, tz: tzinfo = UTC) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` of a week as aware datetimes in `tz`."""
    year, week = parse_week_id(week_id)
    monday = date.fromisocalendar(year, week, 1)
    start = datetime.combine(monday, time.min, tzinfo=tz)
    end = datetime.combine(monday + timedelta(days=7), time.min, tzinfo=tz)
    return start, end


def next_week_id(week_id: str) -> str:
    """Return the id of the following week."""
    year, week = parse_week_id(week_id)
    following = date.fromisocalendar(year, week, 1) + timedelta(days=7)
    return week_id_for(following)


def previous_week_id(week_id: str) -> str:
    """Return the id of the preceding week."""
    year, week = parse_week_id(week_id)
    preceding = date.fromisocalendar(year, week, 1) - timedelta(days=7)
    return week_id_for(preceding)


def week_sort_key(week_id: str) -> tuple[int, int]:
    """Chronological sort key for week ids."""
    return parse_week_id(week_id)


def iter_week_ids(start_week: str, end_week: str) -> Iterator[str]:
    """Yield week ids from `start_week` to `end_week`, both inclusive."""
    end_key = week_sort_key(end_week)
    current = start_week
    while week_sort_key(current) <= end_key:
        yield current
        current = next_week_id(current)
