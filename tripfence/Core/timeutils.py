# tripfence/Core/timeutils.py
"""
Timestamp helpers shared by the engine.

All engine arithmetic happens on timezone-aware UTC datetimes. SQLite
returns naive datetimes for DateTime(timezone=True) columns, so anything
read back from the database goes through as_utc() first.
"""

from datetime import datetime, timezone
from typing import Optional


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return value as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def time_bucket(value: datetime, bucket_s: int) -> str:
    """
    Key component of value for the given bucket width.

    bucket_s <= 0 keys on the exact instant (microsecond ISO-8601 UTC), so
    only a redelivery of the very same report collapses into one key.
    """
    value = as_utc(value)
    if bucket_s <= 0:
        return value.isoformat(timespec='microseconds')
    epoch = int(value.timestamp())
    return str(epoch - (epoch % int(bucket_s)))


def build_idempotency_key(
    device_id: str,
    event_type: str,
    zone_id: Optional[str],
    at: datetime,
    bucket_s: int
) -> str:
    """
    Natural idempotency key for a detected occurrence.

    Format: <device>|<type>|<zone or '-'>|<time_bucket(at)>
    """
    return f"{device_id}|{event_type}|{zone_id or '-'}|{time_bucket(at, bucket_s)}"
