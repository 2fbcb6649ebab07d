# tripfence/Services/position_validator.py
"""
Position Validator
==================
Rechaza reportes de posición implausibles antes de que toquen el estado
de trips o geocercas.

A report is rejected when:
- latitude is outside [-90, 90] or longitude outside [-180, 180]
- (latitude, longitude) == (0, 0), the "no fix" sentinel many trackers send
- coordinates or speed are NaN/infinite
- speed is outside [0, POSITION_MAX_SPEED_KMH]
- timestamp is before POSITION_EPOCH_FLOOR or more than
  POSITION_MAX_FUTURE_S ahead of the ingest clock

Arquitectura:
- validate_position() raises PositionValidationError with the reason
- check_position() is the non-raising variant used by the pipeline: it
  logs the reason and returns it (None for a valid report)
"""

from datetime import datetime, timedelta
from math import isfinite
from typing import Optional

from tripfence.Core.config import settings
from tripfence.Core.exceptions import PositionValidationError
from tripfence.Core.timeutils import utc_now
from tripfence.Core import log_ws
from tripfence.Schemas.position import PositionReport


def validate_position(
    report: PositionReport,
    now: Optional[datetime] = None
) -> PositionReport:
    """
    Validate one report against the plausibility rules.

    Args:
        report: Incoming report (already type-checked by pydantic)
        now: Ingest clock; defaults to the current UTC time

    Returns:
        PositionReport: The same report, unchanged

    Raises:
        PositionValidationError: With a human-readable reason
    """
    device_id = report.device_id
    lat, lon, speed = report.latitude, report.longitude, report.speed

    if not (isfinite(lat) and isfinite(lon)):
        raise PositionValidationError(device_id, f"non-finite coordinates ({lat}, {lon})")

    if lat < -90 or lat > 90:
        raise PositionValidationError(device_id, f"latitude {lat} out of range [-90, 90]")

    if lon < -180 or lon > 180:
        raise PositionValidationError(device_id, f"longitude {lon} out of range [-180, 180]")

    if lat == 0 and lon == 0:
        raise PositionValidationError(device_id, "(0, 0) sentinel coordinates")

    if speed is None or not isfinite(speed):
        raise PositionValidationError(device_id, f"non-finite speed {speed}")

    if speed < 0 or speed > settings.POSITION_MAX_SPEED_KMH:
        raise PositionValidationError(
            device_id,
            f"speed {speed} km/h out of range [0, {settings.POSITION_MAX_SPEED_KMH:.0f}]"
        )

    if report.timestamp < settings.POSITION_EPOCH_FLOOR:
        raise PositionValidationError(
            device_id,
            f"timestamp {report.timestamp.isoformat()} before epoch floor "
            f"{settings.POSITION_EPOCH_FLOOR.isoformat()}"
        )

    now = now or utc_now()
    if report.timestamp > now + timedelta(seconds=settings.POSITION_MAX_FUTURE_S):
        raise PositionValidationError(
            device_id,
            f"timestamp {report.timestamp.isoformat()} is "
            f"{(report.timestamp - now).total_seconds():.0f}s in the future"
        )

    return report


def check_position(
    report: PositionReport,
    now: Optional[datetime] = None
) -> Optional[str]:
    """
    Non-raising wrapper around validate_position().

    Returns:
        None: if valid
        str: the rejection reason (already logged)
    """
    try:
        validate_position(report, now=now)
    except PositionValidationError as ve:
        log_ws.log_from_thread(
            f"[VALIDATOR] Rejected report from {ve.device_id}: {ve.reason}",
            msg_type="warning"
        )
        return ve.reason
    return None
