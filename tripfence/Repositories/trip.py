# tripfence/Repositories/trip.py
"""
Trip Repository - Database operations for finalized trips.

Responsibilities:
- Upsert trips by their natural key (device_id, start_time)
- Historical trip queries by device and time range

Transaction handling:
    Functions here only flush. The caller (an event handler) owns the
    transaction so a trip, its accumulator state and any other writes for
    the same report commit together.

Usage:
    from tripfence.Repositories.trip import upsert_trip, get_trips_by_device

    row = upsert_trip(db, record)
    trips = get_trips_by_device(db, "ESP001", start, end)
"""

from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional

from tripfence.Models.trip import Trip
from tripfence.Schemas.trip import TripRecord


# ==========================================================
# WRITE OPERATIONS
# ==========================================================

def upsert_trip(DB: Session, record: TripRecord) -> Trip:
    """
    Insert a trip, or overwrite the metrics of the row with the same key.

    Args:
        DB: SQLAlchemy session (not committed here)
        record: Finalized TripRecord

    Returns:
        Trip: The inserted or updated ORM object

    Notes:
        - A rewound replay (PositionPipeline.process_batch(replay=True))
          re-derives the same (device_id, start_time) and lands here as an
          update, never as a duplicate row
        - uq_trips_device_start backs this up at the database level
    """
    existing = get_trip(DB, record.device_id, record.start_time)
    values = record.model_dump()

    if existing:
        for key, value in values.items():
            setattr(existing, key, value)
        DB.flush()
        print(f"[REPO] Trip updated: {record.device_id} @ {record.start_time.isoformat()}")
        return existing

    new_trip = Trip(**values)
    DB.add(new_trip)
    DB.flush()
    print(f"[REPO] Trip created: {record.device_id} @ {record.start_time.isoformat()} "
          f"({record.distance_km:.2f} km)")
    return new_trip


# ==========================================================
# READ OPERATIONS
# ==========================================================

def get_trip(DB: Session, device_id: str, start_time: datetime) -> Optional[Trip]:
    """Retrieve a trip by its natural key."""
    return (
        DB.query(Trip)
        .filter(Trip.device_id == device_id, Trip.start_time == start_time)
        .first()
    )


def get_trips_by_device(
    DB: Session,
    device_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 500
) -> list[Trip]:
    """
    Trips of a device whose start_time falls in [start_date, end_date].

    Args:
        DB: SQLAlchemy session
        device_id: Device identifier
        start_date: Inclusive lower bound on start_time (None = unbounded)
        end_date: Inclusive upper bound on start_time (None = unbounded)
        limit: Maximum number of trips to return

    Returns:
        list[Trip]: Ordered by start_time ASC
    """
    query = DB.query(Trip).filter(Trip.device_id == device_id)

    if start_date:
        query = query.filter(Trip.start_time >= start_date)

    if end_date:
        query = query.filter(Trip.start_time <= end_date)

    return query.order_by(Trip.start_time.asc()).limit(limit).all()



def get_trip_spanning(DB: Session, device_id: str, at: datetime) -> Optional[Trip]:
    """Stored trip that started before `at` and ended at or after it."""
    return (
        DB.query(Trip)
        .filter(Trip.device_id == device_id, Trip.start_time < at, Trip.end_time >= at)
        .order_by(Trip.start_time.desc())
        .first()
    )
