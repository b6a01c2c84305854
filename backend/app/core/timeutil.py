"""Datetime helpers.

Timestamps are stored in UTC. SQLite drops tzinfo on the way back, so
values read from the database go through ``as_utc`` before comparison.
Restaurant schedules and promotion windows are expressed in the
configured business timezone.
"""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from app.core.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_local(value: datetime) -> datetime:
    """Convert *value* to the business timezone (``settings.timezone``)."""
    return as_utc(value).astimezone(ZoneInfo(settings.timezone))
