# tripfence/Repositories/speed_alert.py

from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Optional

from tripfence.Models.speed_alert import SpeedAlertMarker


def get_marker(db: Session, device_id: str, geofence_id: str) -> Optional[SpeedAlertMarker]:
    return db.get(SpeedAlertMarker, (device_id, geofence_id))


def record_alert(db: Session, device_id: str, geofence_id: str, at: datetime, speed: float) -> SpeedAlertMarker:
    """Store the time of the latest emitted alert for (device, zone)."""
    marker = get_marker(db, device_id, geofence_id)
    if marker is None:
        marker = SpeedAlertMarker(device_id=device_id, geofence_id=geofence_id)
        db.add(marker)
    marker.last_alert_at = at
    marker.last_speed = speed
    db.flush()
    return marker


def get_markers_by_device(db: Session, device_id: str) -> List[SpeedAlertMarker]:
    return (
        db.query(SpeedAlertMarker)
        .filter(SpeedAlertMarker.device_id == device_id)
        .order_by(SpeedAlertMarker.geofence_id)
        .all()
    )
