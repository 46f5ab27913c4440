"""
timeutils.py — UTC helpers shared by models and services.

PostgreSQL returns timezone-aware datetimes for DateTime(timezone=True)
columns; SQLite returns naive ones. Every comparison in the auth flows goes
through as_utc() so both behave the same.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attaches UTC to naive datetimes; converts aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
