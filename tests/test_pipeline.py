import gc
import random

import pytest
from sqlalchemy.orm import sessionmaker

from tripfence.Core.exceptions import EventSinkFailure, ZoneLookupFailure
from tripfence.Core.timeutils import as_utc
from tripfence.DB.database import create_all_tables
from tripfence.DB.session import build_engine
from tripfence.Repositories.geofence_event import get_events
from tripfence.Repositories.geofence_status import get_status
from tripfence.Repositories.proactive_event import get_events_by_device
from tripfence.Repositories.trip import get_trips_by_device
from tripfence.Services.event_publisher import EventSink, InMemoryEventSink
from tripfence.Services.geofence_registry import GeofenceRegistry
from tripfence.Services.pipeline import DeviceLockRegistry, PositionPipeline
from tripfence.Services.trip_detector import TripDetector

from helpers import BASE_LAT, BASE_LON, at, north_of, report, store_zone


def _make_session_factory(path):
    engine = build_engine(f"sqlite:///{path}")
    create_all_tables(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def _seed_depot(session_factory):
    store_zone(
        session_factory,
        id="DEPOT", name="Depot", zone_type="warehouse", shape_type="circle",
        center_lat=BASE_LAT, center_lon=BASE_LON, radius_meters=500, speed_limit_kmh=30
    )


def _new_pipeline(session_factory, sink=None):
    return PositionPipeline(
        session_factory=session_factory,
        sink=sink or InMemoryEventSink(),
        detector=TripDetector(),
        registry=GeofenceRegistry(session_factory),
        workers=4
    )


def _route(device_id="TRUCK-1", offset_s=0):
    """
    Leave the depot northwards, park 3 km away, switch off.

    Points every 30 s, 150 m apart; the first four are inside the depot
    (radius 500 m) at 45 km/h against a 30 km/h limit.
    """
    reports = []
    for i in range(21):
        reports.append(report(
            device_id=device_id,
            ts=at(offset_s + i * 30),
            lat=north_of(BASE_LAT, i * 150),
            speed=45.0 if i < 4 else 60.0,
            ignition_on=True
        ))
    reports.append(report(
        device_id=device_id,
        ts=at(offset_s + 21 * 30),
        lat=north_of(BASE_LAT, 20 * 150),
        speed=0.0,
        ignition_on=False
    ))
    return reports


def _snapshot(session_factory, device_ids):
    db = session_factory()
    try:
        snap = {}
        for device_id in device_ids:
            snap[device_id] = {
                "trips": [
                    (t.start_time, t.end_time, round(t.distance_km, 6), t.duration_seconds, t.max_speed)
                    for t in get_trips_by_device(db, device_id)
                ],
                "crossings": [
                    (e.event_type, e.geofence_id, e.event_time, e.duration_inside_seconds)
                    for e in get_events(db, device_id=device_id)
                ],
                "outbox": [e.idempotency_key for e in get_events_by_device(db, device_id)],
            }
        return snap
    finally:
        db.close()


def test_route_produces_trip_crossings_and_speed_alert(session_factory, pipeline, sink):
    _seed_depot(session_factory)

    results = [pipeline.process(r) for r in _route()]

    assert results[0].zone_id == "DEPOT"
    assert [c.event_type for c in results[0].crossings] == ["entry"]
    exit_result = next(r for r in results if r.crossings and r.crossings[0].event_type == "exit")
    assert exit_result.timestamp == at(120)
    assert exit_result.crossings[0].duration_inside_seconds == 120

    closed = [r.trip for r in results if r.trip]
    assert len(closed) == 1
    assert closed[0].start_time == at(0)
    assert closed[0].end_time == at(630)
    assert closed[0].distance_km == pytest.approx(3.0, abs=1e-6)

    assert [e.event_type for e in sink.events] == [
        "geofence_enter", "geofence_speed_limit", "geofence_exit",
    ]
    assert sink.of_type("geofence_speed_limit")[0].severity == "warning"

    db = session_factory()
    assert all(e.status == "published" for e in get_events_by_device(db, "TRUCK-1"))
    assert get_status(db, "TRUCK-1").is_inside is False
    db.close()


def test_replay_is_idempotent(session_factory, pipeline, sink):
    """Test that re-processing a window changes no stored or published output."""
    _seed_depot(session_factory)
    for r in _route():
        pipeline.process(r)
    before = _snapshot(session_factory, ["TRUCK-1"])
    published = len(sink.events)

    replay = [pipeline.process(r) for r in _route()]

    assert all(r.stale for r in replay)
    assert _snapshot(session_factory, ["TRUCK-1"]) == before
    assert len(sink.events) == published


def test_replay_after_restart_is_idempotent(session_factory, pipeline):
    """Test that a fresh process hydrates state from the database."""
    _seed_depot(session_factory)
    for r in _route():
        pipeline.process(r)
    before = _snapshot(session_factory, ["TRUCK-1"])

    restarted = _new_pipeline(session_factory)
    summary = restarted.process_batch(_route())

    assert summary.stale == summary.received
    assert _snapshot(session_factory, ["TRUCK-1"]) == before


def test_open_trip_survives_restart(session_factory, pipeline):
    route = _route()
    for r in route[:10]:
        pipeline.process(r)

    restarted = _new_pipeline(session_factory)
    for r in route[10:]:
        restarted.process(r)

    db = session_factory()
    trips = get_trips_by_device(db, "TRUCK-1")
    db.close()
    assert len(trips) == 1
    assert trips[0].distance_km == pytest.approx(3.0, abs=1e-6)


def test_batch_matches_stream(tmp_path):
    """Test that a shuffled multi-device backfill equals live processing."""
    devices = ["TRUCK-1", "TRUCK-2", "TRUCK-3"]
    reports = []
    for n, device_id in enumerate(devices):
        reports.extend(_route(device_id, offset_s=n * 7))

    live_factory = _make_session_factory(tmp_path / "live.db")
    _seed_depot(live_factory)
    live = _new_pipeline(live_factory)
    for r in sorted(reports, key=lambda r: r.timestamp):
        live.process(r)

    batch_factory = _make_session_factory(tmp_path / "batch.db")
    _seed_depot(batch_factory)
    backfill = _new_pipeline(batch_factory)
    shuffled = list(reports)
    random.Random(42).shuffle(shuffled)
    summary = backfill.process_batch(shuffled)

    assert summary.received == len(reports)
    assert summary.processed == len(reports)
    assert summary.devices == 3
    assert len(summary.trips) == 3
    assert summary.entries == 3
    assert summary.exits == 3
    assert summary.speed_alerts == 3

    assert _snapshot(batch_factory, devices) == _snapshot(live_factory, devices)


def test_batch_flush_closes_trailing_trip(session_factory, pipeline):
    route = _route()[:-1]  # no ignition-off
    summary = pipeline.process_batch(route, flush=True)

    assert len(summary.trips) == 1
    assert summary.trips[0].end_time == at(600)


def test_flush_covers_devices_only_known_from_database(session_factory, pipeline):
    for r in _route()[:-1]:
        pipeline.process(r)

    restarted = _new_pipeline(session_factory)
    trips = restarted.flush()

    assert [t.device_id for t in trips] == ["TRUCK-1"]
    assert restarted.flush() == []


def test_rejected_report_touches_nothing(session_factory, pipeline):
    result = pipeline.process(report(ts=at(0), lat=0.0, lon=0.0))

    assert result.accepted is False
    assert "sentinel" in result.rejection_reason
    assert pipeline.detector.get_open_trip("TRUCK-1") is None
    db = session_factory()
    assert get_status(db, "TRUCK-1") is None
    db.close()


def test_batch_counts_rejections(pipeline):
    reports = [report(ts=at(0)), report(ts=at(30), speed=999.0), report(ts=at(60))]
    summary = pipeline.process_batch(reports)
    assert summary.rejected == 1
    assert summary.processed == 2


class BrokenRegistry(GeofenceRegistry):
    def get_zones(self):
        raise ZoneLookupFailure("zone table unavailable")


def test_zone_lookup_failure_fails_open(session_factory, sink):
    """Test that reports keep flowing as 'no zone' when zones cannot load."""
    _seed_depot(session_factory)
    pipeline = PositionPipeline(
        session_factory=session_factory,
        sink=sink,
        detector=TripDetector(),
        registry=BrokenRegistry(session_factory)
    )

    results = [pipeline.process(r) for r in _route()]

    assert all(r.zone_id is None and not r.errors for r in results)
    assert sum(1 for r in results if r.trip) == 1
    assert sink.events == []


class DownSink(EventSink):
    name = "down"

    def publish(self, event):
        raise EventSinkFailure("connection refused")


def test_sink_outage_keeps_detections_and_events_pending(session_factory):
    _seed_depot(session_factory)
    pipeline = _new_pipeline(session_factory, sink=DownSink())

    result = pipeline.process(report(ts=at(0), speed=10.0))

    assert result.published == 0
    assert [c.event_type for c in result.crossings] == ["entry"]
    db = session_factory()
    assert get_status(db, "TRUCK-1").geofence_id == "DEPOT"
    assert [e.status for e in get_events_by_device(db, "TRUCK-1")] == ["pending"]
    db.close()

    recovered = InMemoryEventSink()
    pipeline.publisher.sink = recovered
    assert pipeline.retry_pending_events() == 1
    assert recovered.events[0].event_type == "geofence_enter"


def test_device_locks_are_per_device():
    locks = DeviceLockRegistry()
    a = locks.get("A")
    b = locks.get("B")
    assert locks.get("A") is a
    assert a is not b
    assert len(locks) == 2


def test_device_locks_are_released_when_unused():
    locks = DeviceLockRegistry()
    with locks.get("A") as held:
        assert held.locked()
        assert locks.get("A") is held
    del held
    gc.collect()
    assert len(locks) == 0


# ==========================================================
# Replay of an already processed window
# ==========================================================

def _sparse_and_dense_day():
    """Same drive twice: the backfill adds a 50 km/h detour point at t+60."""
    start = report(ts=at(0), speed=30.0)
    arrive = report(ts=at(120), lat=north_of(BASE_LAT, 600), speed=30.0)
    park = report(ts=at(200), lat=north_of(BASE_LAT, 600), speed=0.0, ignition_on=False)
    detour = report(ts=at(60), lat=north_of(BASE_LAT, 300), lon=BASE_LON + 0.002, speed=50.0)
    return [start, arrive, park], [start, detour, arrive, park]


def test_replay_overwrites_trip_with_denser_data(session_factory, pipeline):
    live, backfill = _sparse_and_dense_day()
    for r in live:
        pipeline.process(r)

    db = session_factory()
    [trip] = get_trips_by_device(db, "TRUCK-1")
    trip_id = trip.id
    assert (round(trip.distance_km, 3), trip.max_speed) == (0.6, 30.0)
    db.close()

    summary = pipeline.process_batch(backfill, replay=True)

    assert summary.stale == 0
    assert summary.processed == 4
    db = session_factory()
    [trip] = get_trips_by_device(db, "TRUCK-1")
    assert trip.id == trip_id
    assert trip.max_speed == 50.0
    assert trip.distance_km > 0.7
    assert trip.point_count == 3
    db.close()


def test_batch_without_replay_skips_processed_window(session_factory, pipeline):
    live, backfill = _sparse_and_dense_day()
    for r in live:
        pipeline.process(r)

    summary = pipeline.process_batch(backfill)

    assert summary.stale == 4
    db = session_factory()
    assert [t.max_speed for t in get_trips_by_device(db, "TRUCK-1")] == [30.0]
    db.close()


def test_replay_of_same_window_is_idempotent(session_factory, pipeline, sink):
    """Test that a replay re-derives everything without duplicate rows or events."""
    _seed_depot(session_factory)
    for r in _route():
        pipeline.process(r)
    before = _snapshot(session_factory, ["TRUCK-1"])
    published = len(sink.events)

    summary = pipeline.process_batch(list(reversed(_route())), replay=True)

    assert summary.stale == 0
    assert summary.processed == 22
    assert summary.entries == 1 and summary.exits == 1
    assert _snapshot(session_factory, ["TRUCK-1"]) == before
    assert len(sink.events) == published


def test_rewind_restores_geofence_state_from_log(session_factory, pipeline):
    _seed_depot(session_factory)
    for r in _route():
        pipeline.process(r)

    assert pipeline.rewind("TRUCK-1", at(60)) is True

    db = session_factory()
    status = get_status(db, "TRUCK-1")
    assert status.is_inside
    assert status.geofence_id == "DEPOT"
    assert as_utc(status.entered_at) == at(0)
    assert as_utc(status.last_checked_at) == at(0)
    db.close()

    pipeline.process_batch(_route()[2:])
    crossings = _snapshot(session_factory, ["TRUCK-1"])["TRUCK-1"]["crossings"]
    assert [(c[0], c[3]) for c in crossings] == [("entry", None), ("exit", 120)]


def test_rewind_after_window_changes_nothing(session_factory, pipeline):
    for r in _route():
        pipeline.process(r)
    before = _snapshot(session_factory, ["TRUCK-1"])

    assert pipeline.rewind("TRUCK-1", at(700)) is False
    assert pipeline.rewind("NEVER-SEEN", at(0)) is False
    assert _snapshot(session_factory, ["TRUCK-1"]) == before
