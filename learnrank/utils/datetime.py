# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""DateTime utilities for LearnRank.

Design Decisions:
-----------------
1. All timestamps are stored in UTC
2. All Python datetimes are timezone-aware (with timezone.utc)
3. Week arithmetic follows ISO 8601 (weeks start on Monday)

Usage:
------
    from learnrank.utils.datetime import utc_now, iso_week_key

    now = utc_now()
    key = iso_week_key(now)  # "2025-W07"
"""

from datetime import date, datetime, timedelta, timezone


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Timezone-aware datetime representing current UTC time.
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Ensure a datetime is timezone-aware UTC.

    Args:
        dt: A datetime object (naive or aware) or None.

    Returns:
        Timezone-aware UTC datetime or None.

    Note:
        - If dt is None, returns None
        - If dt is naive, assumes UTC and adds tzinfo
        - If dt is aware, converts to UTC
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def iso_week_key(day: date | datetime) -> str:
    """Format the ISO year and week of a date as ``YYYY-Www``.

    Args:
        day: Date or datetime inside the week.

    Returns:
        Week key such as ``"2025-W01"``.

    Example:
        >>> iso_week_key(date(2024, 12, 30))
        '2025-W01'
    """
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def week_bounds(day: date | datetime) -> tuple[date, date]:
    """Get the Monday and Sunday of the ISO week containing a date.

    Args:
        day: Date or datetime inside the week.

    Returns:
        Tuple of (window_start, window_end) dates.
    """
    if isinstance(day, datetime):
        day = day.date()
    start = day - timedelta(days=day.weekday())
    return start, start + timedelta(days=6)


def minutes_since(start: datetime, now: datetime | None = None) -> float:
    """Minutes elapsed since a start datetime.

    Args:
        start: The start datetime.
        now: Reference time (defaults to current UTC time).

    Returns:
        Elapsed minutes (negative if start is in the future).
    """
    reference = ensure_utc(now) or utc_now()
    return (reference - ensure_utc(start)).total_seconds() / 60


# Aliases for convenience
now = utc_now
