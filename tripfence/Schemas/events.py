# tripfence/Schemas/events.py

from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Optional, Dict, Any, Literal


Severity = Literal['info', 'warning', 'error', 'critical']


class DomainEvent(BaseModel):
    """
    Structured record pushed to the event sink.

    The first eight fields are the downstream contract:
    {device_id, event_type, severity, title, description, metadata,
    latitude, longitude}. event_time and idempotency_key let consumers
    tolerate redelivery.
    """
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    device_id: str
    event_type: str = Field(..., description="geofence_enter | geofence_exit | geofence_speed_limit")
    severity: Severity = 'info'
    title: str
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    event_time: datetime
    idempotency_key: str

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class SpeedViolationAlert(BaseModel):
    """In-zone speed limit violation. Transient: only a dedupe marker is persisted."""
    model_config = ConfigDict(frozen=True)

    device_id: str
    geofence_id: str
    geofence_name: str
    zone_type: Optional[str] = None
    speed: float
    limit: float
    severity: Severity
    timestamp: datetime
    latitude: float
    longitude: float

    @property
    def over_by(self) -> float:
        return round(self.speed - self.limit, 2)
