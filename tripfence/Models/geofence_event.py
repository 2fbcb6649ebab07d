# tripfence/Models/geofence_event.py

from sqlalchemy import Column, String, DateTime, Float, Integer, Index, CheckConstraint, func
from sqlalchemy.orm import declared_attr
from tripfence.DB.base_class import Base


class GeofenceEvent(Base):
    """
    Append-only ENTRY/EXIT log.

    Written exactly once per detected transition; `idempotency_key` is
    unique so a replayed transition cannot insert a second row.
    """

    @declared_attr.directive
    def __tablename__(cls) -> str:
        return "geofence_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    geofence_id = Column(String(100), nullable=False)
    device_id = Column(String(100), nullable=False)

    event_type = Column(String(10), nullable=False)
    event_time = Column(DateTime(timezone=True), nullable=False)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    speed = Column(Float, nullable=True)

    duration_inside_seconds = Column(Integer, nullable=True)  # exit only
    idempotency_key = Column(String(255), nullable=False, unique=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_geofence_events_zone', 'geofence_id', 'event_time'),
        Index('idx_geofence_events_device', 'device_id', 'event_time'),
        CheckConstraint("event_type IN ('entry', 'exit')", name='check_event_type'),
    )

    def __repr__(self):
        return (
            f"<GeofenceEvent(device_id={self.device_id!r}, type={self.event_type!r}, "
            f"geofence_id={self.geofence_id!r}, at={self.event_time!r})>"
        )
