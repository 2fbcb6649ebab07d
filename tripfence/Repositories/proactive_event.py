# tripfence/Repositories/proactive_event.py
"""
Outbox repository for domain events.

Rows are written by the detection handlers inside their own transaction
and read back by the EventPublisher after commit.
"""

from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Optional

from tripfence.Core.timeutils import as_utc
from tripfence.Models.proactive_event import ProactiveEvent
from tripfence.Schemas.events import DomainEvent


def get_event_by_key(db: Session, idempotency_key: str) -> Optional[ProactiveEvent]:
    return (
        db.query(ProactiveEvent)
        .filter(ProactiveEvent.idempotency_key == idempotency_key)
        .first()
    )


def enqueue_event(db: Session, event: DomainEvent) -> Optional[ProactiveEvent]:
    """
    Add a pending outbox row for event.

    Returns:
        ProactiveEvent: the new row (id assigned by flush)
        None: an event with the same idempotency key was already queued
    """
    if get_event_by_key(db, event.idempotency_key):
        return None

    row = ProactiveEvent(
        device_id=event.device_id,
        event_type=event.event_type,
        severity=event.severity,
        title=event.title,
        description=event.description,
        extra_metadata=event.metadata,
        latitude=event.latitude,
        longitude=event.longitude,
        event_time=event.event_time,
        idempotency_key=event.idempotency_key,
        status='pending',
        attempts=0
    )
    db.add(row)
    db.flush()
    return row


def get_events_by_ids(db: Session, ids: List[int]) -> List[ProactiveEvent]:
    if not ids:
        return []
    return (
        db.query(ProactiveEvent)
        .filter(ProactiveEvent.id.in_(ids))
        .order_by(ProactiveEvent.id.asc())
        .all()
    )


def get_pending_events(db: Session, limit: int = 100) -> List[ProactiveEvent]:
    """Oldest pending rows first."""
    return (
        db.query(ProactiveEvent)
        .filter(ProactiveEvent.status == 'pending')
        .order_by(ProactiveEvent.id.asc())
        .limit(limit)
        .all()
    )


def get_events_by_device(db: Session, device_id: str, event_type: Optional[str] = None) -> List[ProactiveEvent]:
    query = db.query(ProactiveEvent).filter(ProactiveEvent.device_id == device_id)
    if event_type:
        query = query.filter(ProactiveEvent.event_type == event_type)
    return query.order_by(ProactiveEvent.event_time.asc(), ProactiveEvent.id.asc()).all()


def mark_published(db: Session, row: ProactiveEvent, published_at: datetime):
    row.status = 'published'
    row.published_at = published_at
    row.last_error = None


def mark_attempt_failed(db: Session, row: ProactiveEvent, error: str, max_attempts: int):
    row.attempts = (row.attempts or 0) + 1
    row.last_error = error[:2000]
    if row.attempts >= max_attempts:
        row.status = 'failed'


def to_domain_event(row: ProactiveEvent) -> DomainEvent:
    """Rebuild the DomainEvent stored in an outbox row."""
    return DomainEvent(
        device_id=row.device_id,
        event_type=row.event_type,
        severity=row.severity,
        title=row.title,
        description=row.description,
        metadata=row.extra_metadata or {},
        latitude=row.latitude,
        longitude=row.longitude,
        event_time=as_utc(row.event_time),
        idempotency_key=row.idempotency_key
    )
