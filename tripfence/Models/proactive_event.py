# tripfence/Models/proactive_event.py

from sqlalchemy import Column, String, Text, DateTime, Float, Integer, JSON, Index, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declared_attr
from tripfence.DB.base_class import Base


class ProactiveEvent(Base):
    """
    Outbox of domain events destined for the event sink.

    A row is inserted in the same transaction as the detection that caused
    it and starts as 'pending'. The publisher flips it to 'published' once
    a sink accepted it; failures only bump `attempts` and keep the row
    pending until EVENT_PUBLISH_MAX_ATTEMPTS is reached ('failed').
    """

    @declared_attr.directive
    def __tablename__(cls) -> str:
        return "proactive_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(100), nullable=False, index=True)

    event_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False, default='info')
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    extra_metadata = Column('metadata', JSON().with_variant(JSONB(), "postgresql"), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    event_time = Column(DateTime(timezone=True), nullable=False)

    idempotency_key = Column(String(255), nullable=False, unique=True)

    # Delivery bookkeeping
    status = Column(String(20), nullable=False, default='pending')
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_proactive_events_status', 'status', 'id'),
    )

    def __repr__(self):
        return (
            f"<ProactiveEvent(device_id={self.device_id!r}, type={self.event_type!r}, "
            f"status={self.status!r})>"
        )
