from datetime import timedelta

import pytest

from tripfence.Services.trip_detector import TripDetector, TripAccumulator

from helpers import T0, BASE_LAT, BASE_LON, at, report, north_of


@pytest.fixture
def detector():
    return TripDetector()


def _drive(detector, points):
    """Feed (seconds, meters_north, speed, ignition) tuples; return emitted trips."""
    trips = []
    for seconds, meters, speed, ignition in points:
        trip = detector.consume(report(
            ts=at(seconds=seconds),
            lat=north_of(BASE_LAT, meters),
            speed=speed,
            ignition_on=ignition
        ))
        if trip:
            trips.append(trip)
    return trips


def test_end_to_end_scenario():
    """Test that on → moving → off 65 minutes later yields one 3900s trip."""
    detector = TripDetector()
    trips = _drive(detector, [
        (0, 0, 0.0, True),
        (60, 300, 40.0, True),
        (65 * 60, 300, 0.0, False),
    ])

    assert len(trips) == 1
    trip = trips[0]
    assert trip.start_time == T0
    assert trip.end_time == T0 + timedelta(minutes=65)
    assert trip.duration_seconds == 3900
    assert trip.distance_km == pytest.approx(0.3, abs=1e-6)
    assert trip.max_speed == 40.0
    assert trip.source == "derived"
    assert detector.get_open_trip("TRUCK-1") is None


def test_first_point_opens_trip_with_zero_distance(detector):
    assert detector.consume(report(ts=at(0))) is None
    acc = detector.get_open_trip("TRUCK-1")
    assert acc.running_distance_km == 0.0
    assert acc.start_time == T0
    assert acc.sample_count == 1


def test_gap_of_exactly_180s_continues_trip(detector):
    """Test that a 180.000s gap does not start a new trip."""
    _drive(detector, [(0, 0, 30.0, True), (180.0, 200, 30.0, True)])
    acc = detector.get_open_trip("TRUCK-1")
    assert acc.start_time == T0
    assert acc.sample_count == 2


def test_gap_of_180_001s_starts_new_trip(detector):
    """Test that a 180.001s gap closes the trip and opens another."""
    trips = _drive(detector, [
        (0, 0, 30.0, True),
        (60, 200, 30.0, True),
        (60 + 180.001, 400, 30.0, True),
    ])
    assert len(trips) == 1
    assert trips[0].end_time == at(60)
    assert detector.get_open_trip("TRUCK-1").start_time == at(seconds=240.001)


def test_trip_below_minimum_distance_discarded(detector):
    """Test that idling jitter (40 m) never becomes a trip."""
    trips = _drive(detector, [
        (0, 0, 0.0, True),
        (30, 40, 0.0, True),
        (60, 40, 0.0, False),
    ])
    assert trips == []


def test_minimum_distance_filter_boundary(detector):
    """Test that 0.04 km is discarded and 0.05 km is kept."""
    def closed_with(distance_km):
        acc = TripAccumulator(
            device_id="TRUCK-1",
            start_time=at(0), start_lat=BASE_LAT, start_lon=BASE_LON,
            last_time=at(120), last_lat=BASE_LAT, last_lon=BASE_LON,
            running_distance_km=distance_km, max_speed=10.0, speed_sum=20.0, sample_count=2
        )
        return detector._finalize(acc, "test")

    assert closed_with(0.04) is None
    kept = closed_with(0.05)
    assert kept is not None
    assert kept.distance_km == 0.05


def test_running_distance_never_decreases(detector):
    """Test distance monotonicity, including when the vehicle backtracks."""
    path = [0, 120, 250, 250, 90, 400, 10]
    previous = 0.0
    for i, meters in enumerate(path):
        detector.consume(report(ts=at(i * 30), lat=north_of(BASE_LAT, meters), speed=20.0))
        current = detector.get_open_trip("TRUCK-1").running_distance_km
        assert current >= previous
        previous = current


def test_speed_statistics(detector):
    trips = _drive(detector, [
        (0, 0, 10.0, True),
        (30, 150, 50.0, True),
        (60, 300, 30.0, True),
        (90, 300, 0.0, False),
    ])
    assert trips[0].max_speed == 50.0
    assert trips[0].avg_speed == pytest.approx(30.0)
    assert trips[0].point_count == 3


def test_unknown_ignition_closes_at_last_on_point(detector):
    """Test that an unknown ignition report closes without moving the end."""
    trips = _drive(detector, [
        (0, 0, 20.0, True),
        (60, 300, 20.0, True),
        (600, 900, 0.0, None),
    ])
    assert len(trips) == 1
    assert trips[0].end_time == at(60)
    assert trips[0].distance_km == pytest.approx(0.3, abs=1e-6)


def test_ignition_off_without_open_trip_is_noop(detector):
    assert detector.consume(report(ignition_on=False)) is None
    assert detector.get_open_trip("TRUCK-1") is None


def test_stale_report_ignored(detector):
    """Test that redelivered or older reports do not touch the accumulator."""
    _drive(detector, [(0, 0, 20.0, True), (60, 300, 20.0, True)])
    before = detector.get_open_trip("TRUCK-1")

    assert detector.consume(report(ts=at(60), lat=north_of(BASE_LAT, 900))) is None
    assert detector.consume(report(ts=at(30), lat=north_of(BASE_LAT, 900))) is None
    assert detector.get_open_trip("TRUCK-1") == before


def test_devices_are_independent(detector):
    detector.consume(report(device_id="A", ts=at(0)))
    detector.consume(report(device_id="B", ts=at(0), lat=north_of(BASE_LAT, 5000)))
    detector.consume(report(device_id="A", ts=at(60), lat=north_of(BASE_LAT, 300)))

    assert detector.get_open_trip("A").running_distance_km == pytest.approx(0.3, abs=1e-6)
    assert detector.get_open_trip("B").running_distance_km == 0.0


def test_flush_closes_open_trips(detector):
    """Test that flush closes like an unknown-ignition report."""
    _drive(detector, [(0, 0, 20.0, True), (60, 300, 20.0, True)])
    detector.consume(report(device_id="IDLE", ts=at(0)))

    trips = detector.flush_all()

    assert [t.device_id for t in trips] == ["TRUCK-1"]
    assert trips[0].end_time == at(60)
    assert detector.open_trips == {}


def test_hydrate_and_export_round_trip(detector):
    _drive(detector, [(0, 0, 20.0, True), (60, 300, 20.0, True)])
    acc, last_seen = detector.export_state("TRUCK-1")

    other = TripDetector()
    other.hydrate("TRUCK-1", acc, last_seen)
    trips = _drive(other, [(120, 600, 20.0, True), (180, 600, 0.0, False)])

    assert trips[0].start_time == T0
    assert trips[0].distance_km == pytest.approx(0.6, abs=1e-6)


def test_open_device_ids_is_sorted_snapshot(detector):
    detector.consume(report(device_id="B", ts=at(0)))
    detector.consume(report(device_id="A", ts=at(0)))
    ids = detector.open_device_ids()
    detector.consume(report(device_id="C", ts=at(0)))
    assert ids == ["A", "B"]


# ==========================================================
# Rewind (replay of an already processed window)
# ==========================================================

def test_rewind_reopens_processed_window(detector):
    """Test that a denser re-ingest after rewind re-derives the same trip key."""
    first = _drive(detector, [(0, 0, 30.0, True), (120, 600, 30.0, True), (200, 600, 0.0, False)])
    assert first[0].max_speed == 30.0

    assert detector.rewind("TRUCK-1", at(0)) is True
    assert not detector.is_tracking("TRUCK-1")

    again = _drive(detector, [
        (0, 0, 30.0, True), (60, 300, 50.0, True), (120, 600, 30.0, True), (200, 600, 0.0, False),
    ])
    assert again[0].start_time == first[0].start_time
    assert again[0].max_speed == 50.0
    assert again[0].point_count == 3


def test_rewind_before_nothing_new_is_noop(detector):
    _drive(detector, [(0, 0, 20.0, True), (60, 300, 20.0, True)])
    before = detector.export_state("TRUCK-1")
    assert detector.rewind("TRUCK-1", at(61)) is False
    assert detector.rewind("NEVER-SEEN", at(0)) is False
    assert detector.export_state("TRUCK-1") == before


def test_rewind_mid_trip_drops_open_trip(detector):
    """Test that a window starting inside an open trip re-derives it from the window start."""
    _drive(detector, [(0, 0, 20.0, True), (60, 300, 20.0, True), (120, 600, 20.0, True)])

    assert detector.rewind("TRUCK-1", at(60)) is True
    assert detector.get_open_trip("TRUCK-1") is None

    trips = _drive(detector, [(60, 300, 20.0, True), (120, 600, 20.0, True), (150, 600, 0.0, False)])
    assert trips[0].start_time == at(60)
    assert trips[0].distance_km == pytest.approx(0.3, abs=1e-6)
