# tripfence/Repositories/open_trip.py
"""
Persistence of per-device trip accumulators.

The trip detector keeps its state in memory; these functions mirror it
into open_trip_state so a restart (or a second worker) can pick up a
device mid-trip.
"""

from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional, Tuple

from tripfence.Models.open_trip import OpenTripState
from tripfence.Core.timeutils import as_utc
from tripfence.Services.trip_detector import TripAccumulator


def load_trip_state(
    DB: Session,
    device_id: str
) -> Tuple[Optional[TripAccumulator], Optional[datetime]]:
    """
    Returns:
        (accumulator or None, last_report_at or None)
    """
    row = DB.get(OpenTripState, device_id)
    if row is None:
        return None, None

    acc = None
    if row.has_open_trip:
        acc = TripAccumulator(
            device_id=device_id,
            start_time=as_utc(row.start_time),
            start_lat=row.start_lat,
            start_lon=row.start_lon,
            last_time=as_utc(row.last_time),
            last_lat=row.last_lat,
            last_lon=row.last_lon,
            running_distance_km=row.running_distance_km or 0.0,
            max_speed=row.max_speed or 0.0,
            speed_sum=row.speed_sum or 0.0,
            sample_count=row.sample_count or 0
        )
    return acc, as_utc(row.last_report_at)


def save_trip_state(
    DB: Session,
    device_id: str,
    accumulator: Optional[TripAccumulator],
    last_report_at: Optional[datetime]
) -> OpenTripState:
    """Write the device's accumulator (or clear it). Flushes, does not commit."""
    row = DB.get(OpenTripState, device_id)
    if row is None:
        row = OpenTripState(device_id=device_id)
        DB.add(row)

    row.last_report_at = last_report_at
    fields = (
        'start_time', 'start_lat', 'start_lon', 'last_time', 'last_lat', 'last_lon',
        'running_distance_km', 'max_speed', 'speed_sum', 'sample_count'
    )
    for field in fields:
        setattr(row, field, getattr(accumulator, field) if accumulator else None)

    DB.flush()
    return row


def get_devices_with_open_trips(DB: Session) -> list[str]:
    rows = (
        DB.query(OpenTripState.device_id)
        .filter(OpenTripState.start_time.isnot(None))
        .order_by(OpenTripState.device_id)
        .all()
    )
    return [r.device_id for r in rows]
