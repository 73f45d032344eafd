"""UTC timestamp helpers and the usage-day key."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from postflow.core.config import get_settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def usage_day(moment: Optional[datetime] = None) -> date:
    """Calendar day of ``moment`` in the configured usage timezone."""

    reference = ensure_utc(moment) if moment is not None else utc_now()
    return reference.astimezone(ZoneInfo(get_settings().usage_timezone)).date()
