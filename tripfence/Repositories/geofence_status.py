# tripfence/Repositories/geofence_status.py

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from tripfence.Core.exceptions import StateConflict
from tripfence.Models.geofence_status import GeofenceStatus


def get_status(db: Session, device_id: str) -> Optional[GeofenceStatus]:
    """Current state row of a device (None = never seen, i.e. Outside)."""
    return db.get(GeofenceStatus, device_id)


def get_or_create_status(db: Session, device_id: str) -> GeofenceStatus:
    """
    Status row for the device, creating an Outside row if missing.

    A new row is only added to the session; the flush at commit time is
    what claims it. Two workers creating the same device concurrently
    end in an IntegrityError for the loser.
    """
    status = get_status(db, device_id)
    if status is None:
        status = GeofenceStatus(device_id=device_id, is_inside=False)
        db.add(status)
    return status


def set_inside(db: Session, status: GeofenceStatus, geofence_id: str, entered_at, lat: float, lon: float):
    status.is_inside = True
    status.geofence_id = geofence_id
    status.entered_at = entered_at
    status.entry_lat = lat
    status.entry_lon = lon


def set_outside(db: Session, status: GeofenceStatus):
    status.is_inside = False
    status.geofence_id = None
    status.entered_at = None
    status.entry_lat = None
    status.entry_lon = None


def commit_transition(db: Session, device_id: str, expected_version: Optional[int]):
    """
    Commit the status row together with whatever events were added.

    Raises:
        StateConflict: the row was changed (or created) by someone else
            since it was read; the transaction is rolled back
    """
    try:
        db.commit()
    except (StaleDataError, IntegrityError) as e:
        db.rollback()
        raise StateConflict(device_id, expected_version or 0) from e
