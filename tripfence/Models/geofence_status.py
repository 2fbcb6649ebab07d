# tripfence/Models/geofence_status.py

from sqlalchemy import Column, String, Boolean, DateTime, Float, Integer, func
from sqlalchemy.orm import declared_attr
from tripfence.DB.base_class import Base


class GeofenceStatus(Base):
    """
    Current geofence state of one device: Outside, or Inside(zone, entered_at).

    One row per device. `version` is SQLAlchemy's version_id_col, so an
    UPDATE issued from a stale read fails with StaleDataError instead of
    silently overwriting a concurrent transition.
    """

    @declared_attr.directive
    def __tablename__(cls) -> str:
        return "vehicle_geofence_status"

    device_id = Column(String(100), primary_key=True)
    geofence_id = Column(String(100), nullable=True, index=True)
    is_inside = Column(Boolean, nullable=False, default=False)

    # Entry details (only meaningful while inside)
    entered_at = Column(DateTime(timezone=True), nullable=True)
    entry_lat = Column(Float, nullable=True)
    entry_lon = Column(Float, nullable=True)

    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        state = f"Inside({self.geofence_id})" if self.is_inside else "Outside"
        return f"<GeofenceStatus(device_id={self.device_id!r}, state={state})>"
