# tripfence/Services/speed_detector.py
"""
Speed Violation Detector
========================
Checks a report against the speed limit of the zone it matched.

- Only speeds in (0, POSITION_MAX_SPEED_KMH] are evaluated
- Severity by overage (speed - limit):
    > SPEED_CRITICAL_OVER_KMH  → critical
    > SPEED_ERROR_OVER_KMH     → error
    otherwise                  → warning
- Dedupe: no new alert for the same (device, zone) while the previous one
  is less than SPEED_ALERT_COOLDOWN_S old, measured on report timestamps

Never touches trip or geofence state.
"""

from datetime import datetime
from typing import Optional

from tripfence.Core.config import settings
from tripfence.Core.timeutils import as_utc, build_idempotency_key
from tripfence.Schemas.events import DomainEvent, SpeedViolationAlert
from tripfence.Schemas.geofence import ZoneDefinition
from tripfence.Schemas.position import PositionReport

SPEED_EVENT_TYPE = 'geofence_speed_limit'


def classify_severity(over_by: float) -> str:
    if over_by > settings.SPEED_CRITICAL_OVER_KMH:
        return 'critical'
    if over_by > settings.SPEED_ERROR_OVER_KMH:
        return 'error'
    return 'warning'


def check_speed(report: PositionReport, zone: Optional[ZoneDefinition]) -> Optional[SpeedViolationAlert]:
    """Violation for report in zone, ignoring dedupe. None if within limits."""
    if zone is None or zone.speed_limit_kmh is None:
        return None

    speed = report.speed
    if speed is None or speed <= 0 or speed > settings.POSITION_MAX_SPEED_KMH:
        return None

    if speed <= zone.speed_limit_kmh:
        return None

    return SpeedViolationAlert(
        device_id=report.device_id,
        geofence_id=zone.id,
        geofence_name=zone.name,
        zone_type=zone.zone_type,
        speed=speed,
        limit=zone.speed_limit_kmh,
        severity=classify_severity(speed - zone.speed_limit_kmh),
        timestamp=report.timestamp,
        latitude=report.latitude,
        longitude=report.longitude
    )


def is_suppressed(alert: SpeedViolationAlert, last_alert_at: Optional[datetime]) -> bool:
    """True if a previous alert for the same pair is inside the cooldown window."""
    if last_alert_at is None:
        return False
    elapsed = (alert.timestamp - as_utc(last_alert_at)).total_seconds()
    # Negative elapsed (older than the marker) is a replay: suppressed too
    return elapsed < settings.SPEED_ALERT_COOLDOWN_S


def build_speed_event(alert: SpeedViolationAlert) -> DomainEvent:
    return DomainEvent(
        device_id=alert.device_id,
        event_type=SPEED_EVENT_TYPE,
        severity=alert.severity,
        title=f"Speed limit exceeded in {alert.geofence_name}",
        description=(
            f"Speed {alert.speed:.0f} km/h, limit {alert.limit:.0f} km/h in {alert.geofence_name}"
        ),
        metadata={
            'geofence_id': alert.geofence_id,
            'geofence_name': alert.geofence_name,
            'zone_type': alert.zone_type,
            'speed': alert.speed,
            'speed_limit': alert.limit,
            'over_by': alert.over_by,
        },
        latitude=alert.latitude,
        longitude=alert.longitude,
        event_time=alert.timestamp,
        idempotency_key=build_idempotency_key(
            alert.device_id,
            SPEED_EVENT_TYPE,
            alert.geofence_id,
            alert.timestamp,
            settings.EVENT_TIME_BUCKET_S
        )
    )
