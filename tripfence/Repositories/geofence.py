# tripfence/Repositories/geofence.py
"""
Zone reference data (geofence_zones).

Admin tooling and the GeoJSON importer write here; the engine only
reads, through the GeofenceRegistry. Writes commit immediately because
zones are never part of a detection transaction.
"""

from sqlalchemy import or_
from sqlalchemy.orm import Session
from tripfence.Models.geofence import GeofenceZone
from typing import List, Optional

# Columns an update may not touch
_IMMUTABLE = {'id', 'created_at'}


def get_all_geofences(
    db: Session,
    only_active: bool = True,
    zone_type: Optional[str] = None,
    device_id: Optional[str] = None
) -> List[GeofenceZone]:
    """
    Zonas ordenadas por id.

    Args:
        db: Session SQLAlchemy
        only_active: Si True, solo retorna zonas activas
        zone_type: Solo zonas de este tipo (warehouse, client, ...)
        device_id: Solo zonas visibles para este dispositivo (globales o
            asignadas a él)
    """
    query = db.query(GeofenceZone)

    if only_active:
        query = query.filter(GeofenceZone.is_active == True)

    if zone_type:
        query = query.filter(GeofenceZone.zone_type == zone_type)

    if device_id:
        query = query.filter(or_(
            GeofenceZone.applies_to_all == True,
            GeofenceZone.device_id.is_(None),
            GeofenceZone.device_id == device_id
        ))

    return query.order_by(GeofenceZone.id).all()


def get_geofence_by_id(db: Session, geofence_id: str) -> Optional[GeofenceZone]:
    return db.get(GeofenceZone, geofence_id)


def create_geofence(db: Session, zone_data: dict) -> GeofenceZone:
    """Insert one zone (fields as in GeofenceZoneCreate) and commit."""
    zone = GeofenceZone(**zone_data)
    db.add(zone)
    db.commit()
    db.refresh(zone)
    return zone


def update_geofence(db: Session, geofence_id: str, zone_data: dict) -> Optional[GeofenceZone]:
    """
    Overwrite a zone's geometry, schedule and scope.

    Unknown keys, the id and created_at are ignored. Returns None if the
    zone does not exist.
    """
    zone = get_geofence_by_id(db, geofence_id)
    if zone is None:
        return None

    columns = set(GeofenceZone.__table__.columns.keys()) - _IMMUTABLE
    for key, value in zone_data.items():
        if key in columns:
            setattr(zone, key, value)

    db.commit()
    db.refresh(zone)
    return zone


def delete_geofence(db: Session, geofence_id: str) -> bool:
    zone = get_geofence_by_id(db, geofence_id)
    if zone is None:
        return False

    db.delete(zone)
    db.commit()
    return True


def count_geofences(db: Session, only_active: bool = True) -> int:
    query = db.query(GeofenceZone)
    if only_active:
        query = query.filter(GeofenceZone.is_active == True)
    return query.count()
