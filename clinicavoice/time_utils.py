"""Utilities for working with timestamps and calendar dates."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def today() -> date:
    """Return the current UTC calendar date."""

    return utc_now().date()


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat(dt: datetime) -> str:
    """Render ``dt`` as an ISO-8601 string with millisecond precision and ``Z``."""

    return ensure_utc(dt).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso() -> str:
    return isoformat(utc_now())


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp, tolerating a trailing ``Z``; ``None`` when invalid."""

    if not value or not isinstance(value, str):
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    """Parse the ``YYYY-MM-DD`` prefix of ``value``; ``None`` when invalid."""

    if not value or not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def subtract_years(day: date, years: int) -> date:
    """Return ``day`` shifted back by calendar years, mapping Feb 29 to Feb 28."""

    try:
        return day.replace(year=day.year - years)
    except ValueError:
        return day.replace(year=day.year - years, day=28)


def epoch_millis(dt: Optional[datetime] = None) -> int:
    return int(ensure_utc(dt or utc_now()).timestamp() * 1000)


def days_ago(days: int) -> datetime:
    return utc_now() - timedelta(days=days)


__all__ = [
    "utc_now",
    "today",
    "ensure_utc",
    "isoformat",
    "now_iso",
    "parse_iso_datetime",
    "parse_iso_date",
    "subtract_years",
    "epoch_millis",
    "days_ago",
]
