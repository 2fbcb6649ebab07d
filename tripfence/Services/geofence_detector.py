# tripfence/Services/geofence_detector.py
"""
Geofence State Tracker & Crossing Event Emitter
================================================
Máquina de estados por dispositivo: Outside | Inside(zone_id, entered_at).

Matriz de decisión (prior state s, matched zone m):

    s            m          new state              crossings
    ---------    -------    -------------------    ------------------------
    Outside      none       Outside                -
    Outside      Z          Inside(Z, now)         ENTRY(Z)
    Inside(Z)    Z          Inside(Z, entered_at)  - (last-checked refresh)
    Inside(Z)    none       Outside                EXIT(Z, now - entered_at)
    Inside(Z1)   Z2         Inside(Z2, now)        EXIT(Z1) + ENTRY(Z2)
                                                   (ENTRY only if
                                                   GEOFENCE_EMIT_EXIT_ON_SWITCH
                                                   is off)

Everything in this module is pure: the event handler reads the persisted
state, calls decide_transition(), and writes the result in one transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from tripfence.Core.config import settings
from tripfence.Core.timeutils import build_idempotency_key
from tripfence.Schemas.events import DomainEvent
from tripfence.Schemas.geofence import ZoneDefinition
from tripfence.Schemas.position import PositionReport

ENTRY = 'entry'
EXIT = 'exit'

EVENT_TYPES = {
    ENTRY: 'geofence_enter',
    EXIT: 'geofence_exit',
}


@dataclass(frozen=True)
class GeofenceState:
    """Outside when zone_id is None."""
    zone_id: Optional[str] = None
    entered_at: Optional[datetime] = None
    entry_lat: Optional[float] = None
    entry_lon: Optional[float] = None

    @property
    def is_inside(self) -> bool:
        return self.zone_id is not None


OUTSIDE = GeofenceState()


@dataclass(frozen=True)
class Crossing:
    """One detected ENTRY or EXIT."""
    device_id: str
    event_type: str
    zone_id: str
    at: datetime
    latitude: float
    longitude: float
    speed: Optional[float] = None
    entered_at: Optional[datetime] = None
    duration_inside_seconds: Optional[int] = None

    def idempotency_key(self, bucket_s: Optional[int] = None) -> str:
        return build_idempotency_key(
            self.device_id,
            self.event_type,
            self.zone_id,
            self.at,
            settings.EVENT_TIME_BUCKET_S if bucket_s is None else bucket_s
        )


@dataclass(frozen=True)
class Transition:
    state: GeofenceState
    crossings: List[Crossing] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.crossings)


def _entry(report: PositionReport, zone_id: str) -> Crossing:
    return Crossing(
        device_id=report.device_id,
        event_type=ENTRY,
        zone_id=zone_id,
        at=report.timestamp,
        latitude=report.latitude,
        longitude=report.longitude,
        speed=report.speed
    )


def _exit(report: PositionReport, prior: GeofenceState) -> Crossing:
    duration = None
    if prior.entered_at is not None:
        duration = max(0, int((report.timestamp - prior.entered_at).total_seconds()))
    return Crossing(
        device_id=report.device_id,
        event_type=EXIT,
        zone_id=prior.zone_id,
        at=report.timestamp,
        latitude=report.latitude,
        longitude=report.longitude,
        speed=report.speed,
        entered_at=prior.entered_at,
        duration_inside_seconds=duration
    )


def decide_transition(
    prior: GeofenceState,
    matched_zone_id: Optional[str],
    report: PositionReport,
    emit_exit_on_switch: Optional[bool] = None
) -> Transition:
    """
    Apply one matcher result to the prior state.

    Args:
        prior: Persisted state (OUTSIDE for a never-seen device)
        matched_zone_id: Winner of match_zone(), or None
        report: The validated report being processed
        emit_exit_on_switch: Override for GEOFENCE_EMIT_EXIT_ON_SWITCH

    Returns:
        Transition: new state plus ordered crossings (EXIT before ENTRY)
    """
    if emit_exit_on_switch is None:
        emit_exit_on_switch = settings.GEOFENCE_EMIT_EXIT_ON_SWITCH

    entered = GeofenceState(
        zone_id=matched_zone_id,
        entered_at=report.timestamp,
        entry_lat=report.latitude,
        entry_lon=report.longitude
    )

    if not prior.is_inside:
        if matched_zone_id is None:
            return Transition(state=OUTSIDE)
        return Transition(state=entered, crossings=[_entry(report, matched_zone_id)])

    if matched_zone_id == prior.zone_id:
        return Transition(state=prior)

    if matched_zone_id is None:
        return Transition(state=OUTSIDE, crossings=[_exit(report, prior)])

    # Inside(Z1) → Inside(Z2)
    crossings = [_exit(report, prior)] if emit_exit_on_switch else []
    crossings.append(_entry(report, matched_zone_id))
    return Transition(state=entered, crossings=crossings)


# ==========================================================
# DOMAIN EVENTS
# ==========================================================

def build_crossing_event(
    crossing: Crossing,
    zone: Optional[ZoneDefinition],
    zone_name: str
) -> DomainEvent:
    """Domain event payload for an ENTRY/EXIT."""
    zone_type = zone.zone_type if zone else None
    metadata = {
        'geofence_id': crossing.zone_id,
        'geofence_name': zone_name,
        'zone_type': zone_type,
    }

    if crossing.event_type == ENTRY:
        title = f"Entered {zone_name}"
        description = f"Vehicle entered geofence zone: {zone_name} ({zone_type})"
        metadata['entry_time'] = crossing.at.isoformat()
    else:
        minutes = (crossing.duration_inside_seconds or 0) // 60
        title = f"Exited {zone_name}"
        description = f"Vehicle exited geofence zone: {zone_name} after {minutes} minutes"
        metadata['exit_time'] = crossing.at.isoformat()
        metadata['entry_time'] = crossing.entered_at.isoformat() if crossing.entered_at else None
        metadata['duration_minutes'] = minutes
        metadata['duration_seconds'] = crossing.duration_inside_seconds

    return DomainEvent(
        device_id=crossing.device_id,
        event_type=EVENT_TYPES[crossing.event_type],
        severity='info',
        title=title,
        description=description,
        metadata=metadata,
        latitude=crossing.latitude,
        longitude=crossing.longitude,
        event_time=crossing.at,
        idempotency_key=crossing.idempotency_key()
    )
