# tripfence/Models/trip.py
from sqlalchemy import (
    Column, String, Float, Integer, DateTime, CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.sql import func
from sqlalchemy.orm import declared_attr
from tripfence.DB.base_class import Base


class Trip(Base):
    """
    SQLAlchemy model for finalized trips.

    Responsibilities:
    - Stores one row per closed trip that passed the minimum-movement filter
    - Keeps pre-calculated metrics (distance, duration, speeds)
    - Natural key (device_id, start_time): re-processing the same window
      upserts the row instead of inserting a duplicate

    Open trips are never persisted; they live in the segmentation engine's
    per-device accumulator until they close.
    """

    @declared_attr.directive
    def __tablename__(cls) -> str:
        return "trips"

    # ========================================
    # PRIMARY KEY
    # ========================================
    id = Column(Integer, primary_key=True, autoincrement=True)

    # ========================================
    # NATURAL KEY
    # ========================================
    device_id = Column(
        String(100),
        nullable=False,
        index=True,
        doc="Device that generated this trip"
    )

    start_time = Column(
        DateTime(timezone=True),
        nullable=False,
        doc="UTC timestamp of the first ignition-on report of the trip"
    )

    end_time = Column(
        DateTime(timezone=True),
        nullable=False,
        doc="UTC timestamp of the last report belonging to the trip"
    )

    # ========================================
    # SPATIAL BOUNDS
    # ========================================
    start_lat = Column(Float, nullable=False)
    start_lon = Column(Float, nullable=False)
    end_lat = Column(Float, nullable=False)
    end_lon = Column(Float, nullable=False)

    # ========================================
    # PRE-CALCULATED METRICS
    # ========================================
    distance_km = Column(
        Float,
        nullable=False,
        server_default='0.0',
        doc="Geodesic distance accumulated between consecutive points (km)"
    )

    duration_seconds = Column(
        Integer,
        nullable=False,
        doc="end_time - start_time in whole seconds"
    )

    avg_speed = Column(
        Float,
        nullable=True,
        doc="Mean of reported speeds over the trip's ignition-on samples (km/h)"
    )

    max_speed = Column(
        Float,
        nullable=True,
        doc="Highest reported speed over the trip (km/h)"
    )

    point_count = Column(
        Integer,
        nullable=False,
        server_default='0',
        doc="Number of ignition-on reports that contributed to the trip"
    )

    source = Column(
        String(30),
        nullable=False,
        server_default='derived',
        doc="Producer tag (e.g. 'derived' for this engine)"
    )

    # ========================================
    # AUDIT FIELDS
    # ========================================
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    # ========================================
    # TABLE CONSTRAINTS
    # ========================================
    __table_args__ = (
        UniqueConstraint('device_id', 'start_time', name='uq_trips_device_start'),
        Index('idx_trips_device_start_time', 'device_id', 'start_time'),
        CheckConstraint("end_time > start_time", name='check_time_order'),
        CheckConstraint("distance_km >= 0", name='check_distance_positive'),
        CheckConstraint("start_lat >= -90 AND start_lat <= 90", name='check_lat_range'),
        CheckConstraint("start_lon >= -180 AND start_lon <= 180", name='check_lon_range'),
    )

    def __repr__(self) -> str:
        return (
            f"<Trip(device_id={self.device_id!r}, start_time={self.start_time!r}, "
            f"distance_km={self.distance_km!r})>"
        )
