# tripfence/Services/event_publisher.py
"""
Event Publisher
===============
Entrega los eventos de dominio del outbox (proactive_events) a un sink.

Flujo:
1. Detection handlers insert outbox rows in the same transaction as the
   state change that produced them
2. After that transaction commits, the pipeline calls publish_ids() with
   the new row ids
3. Each row is handed to the sink; success marks it 'published', an
   EventSinkFailure records the attempt and leaves it 'pending'
4. retry_pending() re-sends pending rows (periodic job, or on demand)

A failing sink never rolls back a committed detection: publishing runs
in its own session, after the detection commit.

Sinks:
- InMemoryEventSink: list collector (tests, offline backfills)
- WebSocketEventSink: live broadcast to /ws/events clients
- WebhookEventSink: JSON POST to EVENT_WEBHOOK_URL via requests
- CompositeEventSink: fan-out; fails if any child fails
"""

import threading
from typing import Callable, List, Optional

import requests
from sqlalchemy.orm import Session

from tripfence.Core.config import settings
from tripfence.Core.exceptions import EventSinkFailure
from tripfence.Core.timeutils import utc_now
from tripfence.Core import log_ws
from tripfence.Core.events_ws import event_from_thread
from tripfence.Repositories.proactive_event import (
    get_events_by_ids,
    get_pending_events,
    mark_published,
    mark_attempt_failed,
    to_domain_event,
)
from tripfence.Schemas.events import DomainEvent


# ==========================================================
# SINKS
# ==========================================================

class EventSink:
    """Destination for domain events. publish() raises EventSinkFailure."""

    name = "sink"

    def publish(self, event: DomainEvent):
        raise NotImplementedError


class InMemoryEventSink(EventSink):
    name = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[DomainEvent] = []

    def publish(self, event: DomainEvent):
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[DomainEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]

    def clear(self):
        with self._lock:
            self.events.clear()


class WebSocketEventSink(EventSink):
    """
    Best-effort live broadcast.

    Having no dashboard connected is not a failure: the event is simply
    not shown live.
    """
    name = "websocket"

    def publish(self, event: DomainEvent):
        event_from_thread(event.to_payload())


class WebhookEventSink(EventSink):
    name = "webhook"

    def __init__(self, url: str, timeout_s: Optional[float] = None, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout_s = settings.EVENT_WEBHOOK_TIMEOUT_S if timeout_s is None else timeout_s
        self.http = session or requests.Session()

    def publish(self, event: DomainEvent):
        try:
            response = self.http.post(
                self.url,
                json=event.to_payload(),
                headers={"Idempotency-Key": event.idempotency_key},
                timeout=self.timeout_s
            )
        except requests.RequestException as e:
            raise EventSinkFailure(f"Webhook {self.url} unreachable: {e}") from e

        if response.status_code >= 300:
            raise EventSinkFailure(
                f"Webhook {self.url} answered {response.status_code}: {response.text[:200]}"
            )


class CompositeEventSink(EventSink):
    name = "composite"

    def __init__(self, sinks: List[EventSink]):
        self.sinks = list(sinks)

    def publish(self, event: DomainEvent):
        errors = []
        for sink in self.sinks:
            try:
                sink.publish(event)
            except EventSinkFailure as e:
                errors.append(f"{sink.name}: {e}")
        if errors:
            raise EventSinkFailure("; ".join(errors))


def build_default_sink() -> EventSink:
    """WebSocket broadcast, plus the webhook when EVENT_WEBHOOK_URL is set."""
    sinks: List[EventSink] = [WebSocketEventSink()]
    if settings.EVENT_WEBHOOK_URL:
        sinks.append(WebhookEventSink(settings.EVENT_WEBHOOK_URL))
    return CompositeEventSink(sinks)


# ==========================================================
# PUBLISHER
# ==========================================================

class EventPublisher:
    """Moves outbox rows to a sink and records the outcome."""

    def __init__(
        self,
        sink: EventSink,
        session_factory: Callable[[], Session],
        max_attempts: Optional[int] = None
    ):
        self.sink = sink
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.EVENT_PUBLISH_MAX_ATTEMPTS

    def _deliver(self, db: Session, rows) -> int:
        published = 0
        for row in rows:
            if row.status != 'pending':
                continue
            event = to_domain_event(row)
            try:
                self.sink.publish(event)
            except EventSinkFailure as e:
                mark_attempt_failed(db, row, str(e), self.max_attempts)
                log_ws.log_from_thread(
                    f"[PUBLISHER] {event.event_type} for {event.device_id} not delivered "
                    f"(attempt {row.attempts}/{self.max_attempts}): {e}",
                    msg_type="error" if row.status == 'failed' else "warning"
                )
                continue
            mark_published(db, row, utc_now())
            published += 1
        db.commit()
        return published

    def publish_ids(self, ids: List[int]) -> int:
        """
        Publish specific outbox rows (just committed by a handler).

        Returns:
            int: Number of rows marked published
        """
        if not ids:
            return 0
        db = self.session_factory()
        try:
            return self._deliver(db, get_events_by_ids(db, ids))
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def retry_pending(self, limit: int = 100) -> int:
        """Re-send up to limit pending rows, oldest first."""
        db = self.session_factory()
        try:
            published = self._deliver(db, get_pending_events(db, limit=limit))
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if published:
            print(f"[PUBLISHER] Retried outbox: {published} events published")
        return published
