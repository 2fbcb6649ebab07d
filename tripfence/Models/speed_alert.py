# tripfence/Models/speed_alert.py

from sqlalchemy import Column, String, DateTime, Float
from sqlalchemy.orm import declared_attr
from tripfence.DB.base_class import Base


class SpeedAlertMarker(Base):
    """Last emitted speed alert per (device, zone). Used only for dedupe."""

    @declared_attr.directive
    def __tablename__(cls) -> str:
        return "speed_alert_markers"

    device_id = Column(String(100), primary_key=True)
    geofence_id = Column(String(100), primary_key=True)
    last_alert_at = Column(DateTime(timezone=True), nullable=False)
    last_speed = Column(Float, nullable=True)
