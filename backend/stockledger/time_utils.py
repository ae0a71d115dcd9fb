# Overview: UTC helpers. The ledger stores naive datetimes that are always UTC.

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(dt: datetime) -> datetime:
    """SQLite hands back naive values, other drivers may not."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 string from a query string or payload.

    None and blank strings give None. A trailing "Z" or an explicit offset is
    converted to UTC; a value without offset is taken as UTC already.
    Raises ValueError for anything fromisoformat rejects.
    """
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None

    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    return as_utc_naive(datetime.fromisoformat(text))


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Serialize as "YYYY-MM-DDTHH:MM:SSZ" (seconds precision)."""
    if dt is None:
        return None
    return as_utc_naive(dt).replace(microsecond=0).isoformat() + "Z"


def older_than(dt: datetime, days: int, *, now: Optional[datetime] = None) -> bool:
    """True when more than `days` whole days have passed since dt."""
    return (now or utcnow()) - as_utc_naive(dt) > timedelta(days=days)


def day_stamp(dt: Optional[datetime] = None) -> str:
    """YYYYMMDD period key used by document numbering."""
    return (dt or utcnow()).strftime("%Y%m%d")
