# tripfence/Schemas/position.py

from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from typing import Optional

from tripfence.Core.timeutils import as_utc


class PositionReport(BaseModel):
    """
    One periodic position report from a tracked vehicle (immutable).

    Only shape and types are enforced here. Plausibility (coordinate
    ranges, (0, 0) sentinel, speed bounds, impossible timestamps) is the
    position validator's job, so that every rejection is logged with a
    reason instead of surfacing as a pydantic error.

    Timestamps are normalized to aware UTC; naive values are read as UTC.
    """
    model_config = ConfigDict(frozen=True)

    device_id: str = Field(..., min_length=1, max_length=100, description="Reporting device")
    timestamp: datetime = Field(..., description="UTC time of the fix")
    latitude: float = Field(..., description="Latitude in decimal degrees")
    longitude: float = Field(..., description="Longitude in decimal degrees")
    speed: float = Field(0.0, description="Ground speed in km/h")
    ignition_on: Optional[bool] = Field(
        None,
        description="Ignition state: true, false, or null when the device does not report it"
    )
    battery_percent: Optional[float] = Field(None, description="Device battery level")
    heading: Optional[float] = Field(None, description="Course over ground in degrees")

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)


class PositionBatch(BaseModel):
    """Request body for bulk ingestion and backfills."""
    reports: list[PositionReport] = Field(..., min_length=1)
    flush: bool = Field(
        False,
        description="Close every open trip after the batch (end of a backfill window)"
    )
    replay: bool = Field(
        False,
        description="Rewind each device to its earliest report first, so an already "
                    "processed window is re-derived and its trips overwritten"
    )


# ============================================
# RESPONSE SCHEMAS
# ============================================
class CrossingGet(BaseModel):
    event_type: str
    geofence_id: str
    event_time: datetime
    duration_inside_seconds: Optional[int] = None


class ProcessingResponse(BaseModel):
    """Outcome of POST /positions."""
    device_id: str
    timestamp: datetime
    accepted: bool
    rejection_reason: Optional[str] = None
    stale: bool = False
    zone_id: Optional[str] = None
    trip_closed: bool = False
    crossings: list[CrossingGet] = Field(default_factory=list)
    speed_alert: Optional[str] = Field(None, description="Severity of the emitted speed alert, if any")
    published: int = 0
    errors: list[str] = Field(default_factory=list)


class BatchResponse(BaseModel):
    """Outcome of POST /positions/batch."""
    received: int
    processed: int
    rejected: int
    stale: int
    devices: int
    trips: int
    entries: int
    exits: int
    speed_alerts: int
    published: int
    errors: list[str] = Field(default_factory=list)
