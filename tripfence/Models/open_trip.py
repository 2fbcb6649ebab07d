# tripfence/Models/open_trip.py

from sqlalchemy import Column, String, DateTime, Float, Integer, func
from sqlalchemy.orm import declared_attr
from tripfence.DB.base_class import Base


class OpenTripState(Base):
    """
    Durable copy of a device's trip accumulator.

    Written in the same transaction as any trip the report closed, so a
    restarted service resumes mid-trip instead of losing it. `last_report_at`
    is kept even when no trip is open: it is the stale-report watermark.
    """

    @declared_attr.directive
    def __tablename__(cls) -> str:
        return "open_trip_state"

    device_id = Column(String(100), primary_key=True)
    last_report_at = Column(DateTime(timezone=True), nullable=True)

    # Accumulator (all NULL while no trip is open)
    start_time = Column(DateTime(timezone=True), nullable=True)
    start_lat = Column(Float, nullable=True)
    start_lon = Column(Float, nullable=True)
    last_time = Column(DateTime(timezone=True), nullable=True)
    last_lat = Column(Float, nullable=True)
    last_lon = Column(Float, nullable=True)
    running_distance_km = Column(Float, nullable=True)
    max_speed = Column(Float, nullable=True)
    speed_sum = Column(Float, nullable=True)
    sample_count = Column(Integer, nullable=True)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def has_open_trip(self) -> bool:
        return self.start_time is not None
