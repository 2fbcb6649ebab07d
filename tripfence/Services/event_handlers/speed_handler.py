# tripfence/Services/event_handlers/speed_handler.py
"""
Speed Event Handler
===================
Evalúa el límite de velocidad de la zona y registra la alerta.

Transacción propia (marker + outbox), separada de trips y geocercas:
un fallo aquí nunca afecta el estado de trips ni de geocercas.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tripfence.Core import log_ws
from tripfence.Core.timeutils import as_utc
from tripfence.Repositories.proactive_event import enqueue_event, get_events_by_device
from tripfence.Repositories.speed_alert import get_marker, get_markers_by_device, record_alert
from tripfence.Schemas.events import SpeedViolationAlert
from tripfence.Schemas.geofence import ZoneDefinition
from tripfence.Schemas.position import PositionReport
from tripfence.Services.speed_detector import (
    SPEED_EVENT_TYPE,
    check_speed,
    is_suppressed,
    build_speed_event,
)


@dataclass
class SpeedOutcome:
    alert: Optional[SpeedViolationAlert] = None
    suppressed: bool = False
    outbox_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def emitted(self) -> bool:
        return self.alert is not None and not self.suppressed and self.error is None


def handle_speed_detection(
    db: Session,
    report: PositionReport,
    zone: Optional[ZoneDefinition]
) -> SpeedOutcome:
    alert = check_speed(report, zone)
    if alert is None:
        return SpeedOutcome()

    try:
        marker = get_marker(db, alert.device_id, alert.geofence_id)
        if is_suppressed(alert, marker.last_alert_at if marker else None):
            db.rollback()
            return SpeedOutcome(alert=alert, suppressed=True)

        record_alert(db, alert.device_id, alert.geofence_id, alert.timestamp, alert.speed)
        row = enqueue_event(db, build_speed_event(alert))
        db.commit()

    except SQLAlchemyError as e:
        db.rollback()
        log_ws.log_from_thread(f"[SPEED] {report.device_id}: alert not recorded: {e}", msg_type="error")
        return SpeedOutcome(alert=alert, error=str(e))

    log_ws.log_from_thread(
        f"[SPEED] {alert.device_id}: {alert.speed:.0f} km/h in {alert.geofence_name} "
        f"(limit {alert.limit:.0f}, {alert.severity})",
        msg_type="warning"
    )
    return SpeedOutcome(alert=alert, outbox_id=row.id if row else None)


def handle_speed_rewind(db: Session, device_id: str, since: datetime) -> bool:
    """
    Move the device's dedupe markers back to the last alert before `since`.

    Alerts are rebuilt from the outbox, which keeps every queued speed
    event; a zone with no alert before the window loses its marker.
    Must be called under the device's lock.

    Returns:
        bool: True if any marker changed
    """
    moved = [m for m in get_markers_by_device(db, device_id) if as_utc(m.last_alert_at) >= since]
    if not moved:
        db.rollback()
        return False

    previous = {}
    for row in get_events_by_device(db, device_id, SPEED_EVENT_TYPE):
        if as_utc(row.event_time) < since:
            previous[(row.extra_metadata or {}).get('geofence_id')] = row

    for marker in moved:
        prior = previous.get(marker.geofence_id)
        if prior is None:
            db.delete(marker)
        else:
            marker.last_alert_at = as_utc(prior.event_time)
            marker.last_speed = prior.extra_metadata.get('speed')
    db.commit()
    print(f"[SPEED] {device_id}: {len(moved)} dedupe markers rewound to {since.isoformat()}")
    return True
