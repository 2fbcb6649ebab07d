# tripfence/Models/geofence.py

from sqlalchemy import (
    Column, String, Text, Boolean, DateTime, Float, Integer, Time, JSON, CheckConstraint, Index, func
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declared_attr
from tripfence.DB.base_class import Base

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class GeofenceZone(Base):
    """
    Modelo de zonas de geocerca (reference data, admin-managed).

    Shapes:
    - circle: center_lat/center_lon + radius_meters
    - polygon / rectangle: boundary as a GeoJSON Polygon (lon, lat order)

    The engine only reads this table. Containment is evaluated in-process
    with the same geodesic distance used for trip distances.
    """

    @declared_attr.directive
    def __tablename__(cls) -> str:
        return "geofence_zones"

    id = Column(String(100), primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    zone_type = Column(String(50), default='custom')
    color = Column(String(7), default='#3388ff')

    # Geometry
    shape_type = Column(String(20), nullable=False)
    center_lat = Column(Float, nullable=True)
    center_lon = Column(Float, nullable=True)
    radius_meters = Column(Float, nullable=True)
    boundary = Column(JsonColumn, nullable=True)

    # Selection and scheduling
    priority = Column(Integer, nullable=False, default=0)
    active_days = Column(JsonColumn, nullable=True)  # 0 = Sunday ... 6 = Saturday
    effective_start_time = Column(Time, nullable=True)
    effective_end_time = Column(Time, nullable=True)
    speed_limit_kmh = Column(Float, nullable=True)

    # Device assignment: device_id NULL + applies_to_all → every vehicle
    device_id = Column(String(100), nullable=True, index=True)
    applies_to_all = Column(Boolean, nullable=False, default=False)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index('idx_geofence_device_active', 'device_id', 'is_active'),
        CheckConstraint(
            "shape_type IN ('circle', 'polygon', 'rectangle')",
            name='check_shape_type'
        ),
        CheckConstraint(
            "(shape_type = 'circle' AND center_lat IS NOT NULL AND center_lon IS NOT NULL "
            "AND radius_meters IS NOT NULL) "
            "OR (shape_type IN ('polygon', 'rectangle') AND boundary IS NOT NULL)",
            name='valid_shape'
        ),
    )

    def __repr__(self):
        return f"<GeofenceZone(id={self.id!r}, name={self.name!r}, shape={self.shape_type!r})>"
