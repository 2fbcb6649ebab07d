import pytest
import requests

from tripfence.Core.exceptions import EventSinkFailure
from tripfence.Repositories.proactive_event import enqueue_event, get_events_by_device
from tripfence.Schemas.events import DomainEvent
from tripfence.Services.event_publisher import (
    CompositeEventSink,
    EventPublisher,
    EventSink,
    InMemoryEventSink,
    WebhookEventSink,
)

from helpers import at


class FlakySink(EventSink):
    name = "flaky"

    def __init__(self, failures):
        self.failures = failures
        self.delivered = []

    def publish(self, event):
        if self.failures > 0:
            self.failures -= 1
            raise EventSinkFailure("downstream unavailable")
        self.delivered.append(event)


def _event(seconds=0, event_type="geofence_enter"):
    return DomainEvent(
        device_id="TRUCK-1",
        event_type=event_type,
        title="Entered Depot",
        description="Vehicle entered geofence zone: Depot (warehouse)",
        metadata={"geofence_id": "Z1"},
        latitude=10.98,
        longitude=-74.8,
        event_time=at(seconds),
        idempotency_key=f"TRUCK-1|{event_type}|Z1|{seconds}"
    )


def _queue(session_factory, *events):
    db = session_factory()
    try:
        ids = [enqueue_event(db, e).id for e in events]
        db.commit()
        return ids
    finally:
        db.close()


def _statuses(session_factory):
    db = session_factory()
    try:
        return [(r.status, r.attempts) for r in get_events_by_device(db, "TRUCK-1")]
    finally:
        db.close()


def test_duplicate_key_not_queued_twice(db):
    assert enqueue_event(db, _event()) is not None
    assert enqueue_event(db, _event()) is None


def test_publish_marks_rows_published(session_factory, sink):
    ids = _queue(session_factory, _event(0), _event(10))
    publisher = EventPublisher(sink, session_factory)

    assert publisher.publish_ids(ids) == 2
    assert [e.idempotency_key for e in sink.events] == ["TRUCK-1|geofence_enter|Z1|0",
                                                        "TRUCK-1|geofence_enter|Z1|10"]
    assert _statuses(session_factory) == [("published", 0), ("published", 0)]

    # Already published rows are not sent again
    assert publisher.publish_ids(ids) == 0
    assert len(sink.events) == 2


def test_sink_failure_leaves_row_pending_then_retry(session_factory):
    """Test that a failed delivery is kept and re-sent by retry_pending."""
    sink = FlakySink(failures=1)
    publisher = EventPublisher(sink, session_factory, max_attempts=5)
    ids = _queue(session_factory, _event())

    assert publisher.publish_ids(ids) == 0
    assert _statuses(session_factory) == [("pending", 1)]

    assert publisher.retry_pending() == 1
    assert _statuses(session_factory) == [("published", 1)]
    assert len(sink.delivered) == 1


def test_row_marked_failed_after_max_attempts(session_factory):
    sink = FlakySink(failures=10)
    publisher = EventPublisher(sink, session_factory, max_attempts=3)
    _queue(session_factory, _event())

    for _ in range(5):
        publisher.retry_pending()

    assert _statuses(session_factory) == [("failed", 3)]


def test_payload_contract():
    payload = _event().to_payload()
    for key in ("device_id", "event_type", "severity", "title", "description",
                "metadata", "latitude", "longitude"):
        assert key in payload
    assert payload["event_time"] == "2025-03-04T08:00:00Z"


class FakeResponse:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


class FakeHttp:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append((url, json, headers, timeout))
        if self.error:
            raise self.error
        return self.response


def test_webhook_posts_json_with_idempotency_header():
    http = FakeHttp(response=FakeResponse(202))
    sink = WebhookEventSink("https://hooks.example.test/events", timeout_s=2.0, session=http)

    sink.publish(_event())

    url, body, headers, timeout = http.calls[0]
    assert url == "https://hooks.example.test/events"
    assert body["event_type"] == "geofence_enter"
    assert headers == {"Idempotency-Key": "TRUCK-1|geofence_enter|Z1|0"}
    assert timeout == 2.0


@pytest.mark.parametrize("http", [
    FakeHttp(response=FakeResponse(503, "busy")),
    FakeHttp(error=requests.ConnectionError("refused")),
])
def test_webhook_failures_raise_sink_failure(http):
    sink = WebhookEventSink("https://hooks.example.test/events", session=http)
    with pytest.raises(EventSinkFailure):
        sink.publish(_event())


def test_composite_delivers_to_healthy_sinks_and_reports_failure():
    memory = InMemoryEventSink()
    composite = CompositeEventSink([FlakySink(failures=1), memory])

    with pytest.raises(EventSinkFailure) as exc:
        composite.publish(_event())

    assert "flaky" in str(exc.value)
    assert len(memory.events) == 1
