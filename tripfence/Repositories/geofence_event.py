# tripfence/Repositories/geofence_event.py

from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Optional

from tripfence.Models.geofence_event import GeofenceEvent


def get_event_by_key(db: Session, idempotency_key: str) -> Optional[GeofenceEvent]:
    return db.query(GeofenceEvent).filter(GeofenceEvent.idempotency_key == idempotency_key).first()


def add_geofence_event(db: Session, event_data: dict) -> Optional[GeofenceEvent]:
    """
    Append one ENTRY/EXIT row.

    Returns None (and writes nothing) if a row with the same
    idempotency_key already exists.
    """
    if get_event_by_key(db, event_data['idempotency_key']):
        return None

    event = GeofenceEvent(**event_data)
    db.add(event)
    db.flush()
    return event


def get_events(
    db: Session,
    device_id: Optional[str] = None,
    geofence_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 500
) -> List[GeofenceEvent]:
    """Geofence events in chronological order, optionally filtered."""
    query = db.query(GeofenceEvent)

    if device_id:
        query = query.filter(GeofenceEvent.device_id == device_id)
    if geofence_id:
        query = query.filter(GeofenceEvent.geofence_id == geofence_id)
    if start_date:
        query = query.filter(GeofenceEvent.event_time >= start_date)
    if end_date:
        query = query.filter(GeofenceEvent.event_time <= end_date)

    return query.order_by(GeofenceEvent.event_time.asc(), GeofenceEvent.id.asc()).limit(limit).all()


def get_last_event_before(db: Session, device_id: str, before: datetime) -> Optional[GeofenceEvent]:
    """Latest ENTRY/EXIT of the device strictly before `before`."""
    return (
        db.query(GeofenceEvent)
        .filter(GeofenceEvent.device_id == device_id, GeofenceEvent.event_time < before)
        .order_by(GeofenceEvent.event_time.desc(), GeofenceEvent.id.desc())
        .first()
    )
