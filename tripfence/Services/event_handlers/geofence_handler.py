# tripfence/Services/event_handlers/geofence_handler.py
"""
Geofence Event Handler
======================
Aplica el resultado del matcher al estado persistido del dispositivo.

Transacción (una por reporte):
1. Lee vehicle_geofence_status (versión incluida)
2. Reporte stale (timestamp <= last_checked_at) → se ignora
3. decide_transition() → nuevo estado + crossings (EXIT antes de ENTRY)
4. Escribe estado, filas geofence_events y filas de outbox
5. Commit; si otro escritor cambió la fila → StateConflict → rollback y
   reintento (hasta STATE_CONFLICT_MAX_RETRIES)

El ENTRY/EXIT y su evento de outbox se confirman juntos: no hay ENTRY
registrado sin evento publicado pendiente, ni al revés.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tripfence.Core.config import settings
from tripfence.Core.exceptions import StateConflict
from tripfence.Core.timeutils import as_utc
from tripfence.Core import log_ws
from tripfence.Models.geofence_status import GeofenceStatus
from tripfence.Repositories.geofence_event import add_geofence_event, get_last_event_before
from tripfence.Repositories.geofence_status import (
    get_or_create_status,
    get_status,
    set_inside,
    set_outside,
    commit_transition,
)
from tripfence.Repositories.proactive_event import enqueue_event
from tripfence.Schemas.geofence import ZoneDefinition
from tripfence.Schemas.position import PositionReport
from tripfence.Services.geofence_detector import (
    ENTRY,
    OUTSIDE,
    Crossing,
    GeofenceState,
    Transition,
    build_crossing_event,
    decide_transition,
)
from tripfence.Services.geofence_registry import GeofenceRegistry, UNKNOWN_ZONE_NAME


@dataclass
class GeofenceOutcome:
    transition: Optional[Transition] = None
    stale: bool = False
    outbox_ids: List[int] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def crossings(self) -> List[Crossing]:
        return self.transition.crossings if self.transition else []


def state_from_row(status: Optional[GeofenceStatus]) -> GeofenceState:
    if status is None or not status.is_inside or status.geofence_id is None:
        return OUTSIDE
    return GeofenceState(
        zone_id=status.geofence_id,
        entered_at=as_utc(status.entered_at),
        entry_lat=status.entry_lat,
        entry_lon=status.entry_lon
    )


def _zone_for(
    zone_id: str,
    matched: Optional[ZoneDefinition],
    registry: Optional[GeofenceRegistry]
) -> Optional[ZoneDefinition]:
    if matched is not None and matched.id == zone_id:
        return matched
    return registry.get_zone(zone_id) if registry else None


def _apply_transition(
    db: Session,
    report: PositionReport,
    matched: Optional[ZoneDefinition],
    registry: Optional[GeofenceRegistry]
) -> GeofenceOutcome:
    device_id = report.device_id
    status = get_or_create_status(db, device_id)
    expected_version = status.version

    if status.last_checked_at is not None and report.timestamp <= as_utc(status.last_checked_at):
        db.rollback()
        print(f"[GEOFENCE] {device_id}: skipping stale report {report.timestamp.isoformat()}")
        return GeofenceOutcome(stale=True)

    transition = decide_transition(
        state_from_row(status),
        matched.id if matched else None,
        report
    )

    new_state = transition.state
    if transition.changed:
        if new_state.is_inside:
            set_inside(db, status, new_state.zone_id, new_state.entered_at,
                       new_state.entry_lat, new_state.entry_lon)
        else:
            set_outside(db, status)
    status.last_checked_at = report.timestamp

    outbox_ids = []
    for crossing in transition.crossings:
        key = crossing.idempotency_key()
        add_geofence_event(db, {
            'geofence_id': crossing.zone_id,
            'device_id': device_id,
            'event_type': crossing.event_type,
            'event_time': crossing.at,
            'latitude': crossing.latitude,
            'longitude': crossing.longitude,
            'speed': crossing.speed,
            'duration_inside_seconds': crossing.duration_inside_seconds,
            'idempotency_key': key,
        })

        zone = _zone_for(crossing.zone_id, matched, registry)
        zone_name = zone.name if zone else UNKNOWN_ZONE_NAME
        row = enqueue_event(db, build_crossing_event(crossing, zone, zone_name))
        if row is not None:
            outbox_ids.append(row.id)

    commit_transition(db, device_id, expected_version)

    for crossing in transition.crossings:
        zone = _zone_for(crossing.zone_id, matched, registry)
        label = zone.name if zone else UNKNOWN_ZONE_NAME
        extra = (f" after {crossing.duration_inside_seconds}s"
                 if crossing.duration_inside_seconds is not None else "")
        log_ws.log_from_thread(
            f"[GEOFENCE] {device_id}: {crossing.event_type.upper()} {label} "
            f"({crossing.zone_id}){extra}",
            msg_type="log"
        )

    return GeofenceOutcome(transition=transition, outbox_ids=outbox_ids)


def handle_geofence_detection(
    db: Session,
    report: PositionReport,
    matched: Optional[ZoneDefinition],
    registry: Optional[GeofenceRegistry] = None,
    max_retries: Optional[int] = None
) -> GeofenceOutcome:
    """
    Read state, decide, write state + events, commit. Retries on StateConflict.

    Args:
        db: Sesión de SQLAlchemy activa
        report: Reporte validado
        matched: Zona ganadora del matcher (None = fuera de toda zona)
        registry: Para nombrar la zona de un EXIT
        max_retries: Override de STATE_CONFLICT_MAX_RETRIES

    Returns:
        GeofenceOutcome: transición aplicada, stale, ids de outbox o error
    """
    retries = settings.STATE_CONFLICT_MAX_RETRIES if max_retries is None else max_retries
    device_id = report.device_id

    for attempt in range(retries + 1):
        try:
            return _apply_transition(db, report, matched, registry)
        except StateConflict as sc:
            db.expire_all()
            log_ws.log_from_thread(
                f"[GEOFENCE] {device_id}: {sc} (attempt {attempt + 1}/{retries + 1})",
                msg_type="warning"
            )
        except SQLAlchemyError as e:
            db.rollback()
            log_ws.log_from_thread(f"[GEOFENCE] {device_id}: transition failed: {e}", msg_type="error")
            return GeofenceOutcome(error=str(e))

    message = f"gave up after {retries + 1} state conflicts"
    log_ws.log_from_thread(f"[GEOFENCE] {device_id}: {message}", msg_type="error")
    return GeofenceOutcome(error=message)


def handle_geofence_rewind(db: Session, device_id: str, since: datetime) -> bool:
    """
    Rebuild the device's status as it was just before `since`.

    The pre-window state is read back from the last logged crossing
    before `since`: an ENTRY means Inside that zone from the event on,
    anything else means Outside. Crossings already logged inside the
    window stay in the log; their idempotency keys make the replay skip
    the ones it derives again.

    Must be called under the device's lock.

    Returns:
        bool: True if the state changed

    Raises:
        StateConflict: the row changed under us (another process)
    """
    status = get_status(db, device_id)
    if status is None or status.last_checked_at is None or as_utc(status.last_checked_at) < since:
        db.rollback()
        return False

    expected_version = status.version
    last = get_last_event_before(db, device_id, since)
    if last is not None and last.event_type == ENTRY:
        set_inside(db, status, last.geofence_id, as_utc(last.event_time), last.latitude, last.longitude)
    else:
        set_outside(db, status)
    status.last_checked_at = as_utc(last.event_time) if last is not None else None

    commit_transition(db, device_id, expected_version)
    print(f"[GEOFENCE] {device_id}: status rewound to {since.isoformat()} "
          f"({'inside ' + status.geofence_id if status.is_inside else 'outside'})")
    return True
