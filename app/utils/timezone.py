# FILE: app/utils/timezone.py
from __future__ import annotations

from datetime import datetime, date, timezone


def utcnow() -> datetime:
    """
    Returns a *naive* datetime representing UTC time.
    All DateTime columns in this service are naive UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def today_utc() -> date:
    return utcnow().date()


def iso_z(value: datetime) -> str:
    """Naive-UTC datetime -> 'YYYY-MM-DDTHH:MM:SSZ' (seconds precision)."""
    return value.replace(microsecond=0).isoformat() + "Z"
