from datetime import datetime, time, timedelta, timezone
import random

import pytest

from tripfence.Core.exceptions import ZoneLookupFailure
from tripfence.Models.geofence import GeofenceZone
from tripfence.Schemas.geofence import ZoneDefinition
from tripfence.Services.geofence_matcher import (
    candidate_zones,
    day_index,
    is_zone_active_at,
    match_zone,
    zone_contains,
)
from tripfence.Services.geofence_registry import UNKNOWN_ZONE_NAME, GeofenceRegistry
from tripfence.Services.geofence_importer import import_zones_from_geojson

from helpers import T0, BASE_LAT, BASE_LON, circle_zone, north_of, square_boundary, store_zone


def _match(zones, device_id="TRUCK-1", lat=BASE_LAT, lon=BASE_LON, ts=T0, tz_name="UTC"):
    zone = match_zone(device_id, lat, lon, ts, zones, tz_name=tz_name)
    return zone.id if zone else None


def test_no_zone_outside_every_shape():
    zones = [circle_zone("Z1", radius=100)]
    assert _match(zones, lat=north_of(BASE_LAT, 150)) is None


def test_circle_contains_up_to_radius():
    """Test that the circle boundary is inclusive."""
    zone = circle_zone("Z1", radius=100)
    assert zone_contains(zone, north_of(BASE_LAT, 99.9), BASE_LON)
    assert not zone_contains(zone, north_of(BASE_LAT, 100.1), BASE_LON)


def test_polygon_covers_boundary_points():
    """Test that a point on the polygon edge counts as inside."""
    zone = ZoneDefinition(
        id="P1", name="Yard", shape_type="polygon",
        boundary=square_boundary(BASE_LAT, BASE_LON, 0.002)
    )
    assert zone_contains(zone, BASE_LAT, BASE_LON)
    assert zone_contains(zone, BASE_LAT, BASE_LON + 0.002)
    assert not zone_contains(zone, BASE_LAT, BASE_LON + 0.0021)


def test_self_intersecting_polygon_is_repaired():
    bowtie = {
        "type": "Polygon",
        "coordinates": [[[0, 0], [2, 2], [2, 0], [0, 2], [0, 0]]],
    }
    zone = ZoneDefinition(id="B", name="Bowtie", shape_type="polygon", boundary=bowtie)
    assert zone.polygon.is_valid
    assert not zone.polygon.is_empty


def test_unreadable_boundary_raises_value_error():
    with pytest.raises(ValueError):
        ZoneDefinition(
            id="X", name="Line", shape_type="polygon",
            boundary={"type": "LineString", "coordinates": [[0, 0], [1, 1]]}
        )


def test_priority_wins_over_creation_time():
    """Test that a higher priority beats a newer zone."""
    zones = [
        circle_zone("LOW", priority=1, created_at=T0),
        circle_zone("HIGH", priority=5, created_at=T0 - timedelta(days=30)),
    ]
    assert _match(zones) == "HIGH"


def test_same_priority_most_recently_created_wins():
    zones = [
        circle_zone("OLD", priority=2, created_at=T0 - timedelta(days=2)),
        circle_zone("NEW", priority=2, created_at=T0 - timedelta(days=1)),
    ]
    assert _match(zones) == "NEW"


def test_full_tie_resolved_by_id_regardless_of_order():
    """Test that the winner does not depend on the order zones are listed."""
    zones = [
        circle_zone(zid, priority=3, created_at=T0)
        for zid in ("C", "A", "B")
    ]
    winners = set()
    rng = random.Random(7)
    for _ in range(10):
        rng.shuffle(zones)
        winners.add(_match(zones))
    assert winners == {"A"}


def test_candidates_sorted_best_first():
    zones = [
        circle_zone("Z1", priority=0),
        circle_zone("Z2", priority=9),
        circle_zone("FAR", lat=north_of(BASE_LAT, 5000)),
    ]
    ids = [z.id for z in candidate_zones("TRUCK-1", BASE_LAT, BASE_LON, T0, zones, tz_name="UTC")]
    assert ids == ["Z2", "Z1"]


def test_device_scope():
    """Test that a zone assigned to one device is invisible to others."""
    zones = [circle_zone("MINE", applies_to_all=False, device_id="TRUCK-1", priority=5)]
    assert _match(zones, device_id="TRUCK-1") == "MINE"
    assert _match(zones, device_id="TRUCK-2") is None


def test_inactive_zone_never_matches():
    zones = [circle_zone("OFF", is_active=False)]
    assert _match(zones) is None


def test_day_index_sunday_is_zero():
    assert day_index(datetime(2025, 3, 2, tzinfo=timezone.utc)) == 0  # Sunday
    assert day_index(T0) == 2  # Tuesday
    assert day_index(datetime(2025, 3, 8, tzinfo=timezone.utc)) == 6  # Saturday


def test_active_days_filter():
    weekdays = circle_zone("WD", active_days=[1, 2, 3, 4, 5])
    sunday = datetime(2025, 3, 2, 10, 0, tzinfo=timezone.utc)
    assert is_zone_active_at(weekdays, T0, "UTC")
    assert not is_zone_active_at(weekdays, sunday, "UTC")


def test_daytime_window_inclusive():
    zone = circle_zone("DAY", effective_start_time=time(8, 0), effective_end_time=time(17, 0))
    assert is_zone_active_at(zone, T0.replace(hour=8, minute=0), "UTC")
    assert is_zone_active_at(zone, T0.replace(hour=17, minute=0), "UTC")
    assert not is_zone_active_at(zone, T0.replace(hour=17, minute=0, second=1), "UTC")
    assert not is_zone_active_at(zone, T0.replace(hour=7, minute=59), "UTC")


def test_overnight_window_wraps_midnight():
    """Test that 22:00-06:00 covers late evening and early morning only."""
    zone = circle_zone("NIGHT", effective_start_time=time(22, 0), effective_end_time=time(6, 0))
    assert is_zone_active_at(zone, T0.replace(hour=23, minute=30), "UTC")
    assert is_zone_active_at(zone, T0.replace(hour=2), "UTC")
    assert not is_zone_active_at(zone, T0.replace(hour=12), "UTC")


def test_window_evaluated_in_configured_timezone():
    """Test that 08:00 UTC is 03:00 in Bogota, outside a 06:00-18:00 window."""
    zone = circle_zone("SHIFT", effective_start_time=time(6, 0), effective_end_time=time(18, 0))
    assert is_zone_active_at(zone, T0, "UTC")
    assert not is_zone_active_at(zone, T0, "America/Bogota")


def test_time_window_uses_report_timestamp():
    zones = [
        circle_zone("NIGHT", priority=9, effective_start_time=time(22, 0), effective_end_time=time(6, 0)),
        circle_zone("ALWAYS", priority=1),
    ]
    assert _match(zones, ts=T0) == "ALWAYS"
    assert _match(zones, ts=T0.replace(hour=23)) == "NIGHT"


# ==========================================================
# Registry
# ==========================================================

def test_registry_loads_zones_from_database(session_factory):
    store_zone(session_factory, id="Z1", name="Depot", shape_type="circle",
               center_lat=BASE_LAT, center_lon=BASE_LON, radius_meters=200)
    store_zone(session_factory, id="Z2", name="Yard", shape_type="polygon",
               boundary=square_boundary(BASE_LAT, BASE_LON), is_active=False)

    registry = GeofenceRegistry(session_factory)
    zones = registry.get_zones()

    assert sorted(z.id for z in zones) == ["Z1", "Z2"]
    assert registry.zone_name("Z2") == "Yard"
    assert registry.zone_name("missing") == UNKNOWN_ZONE_NAME
    assert registry.zone_name(None) == UNKNOWN_ZONE_NAME


def test_registry_skips_corrupt_zone(session_factory):
    """Test that one unreadable row does not hide the other zones."""
    store_zone(session_factory, id="GOOD", name="Depot", shape_type="circle",
               center_lat=BASE_LAT, center_lon=BASE_LON, radius_meters=200)
    db = session_factory()
    db.add(GeofenceZone(
        id="BAD", name="Broken", shape_type="polygon",
        boundary={"type": "Polygon", "coordinates": []}, applies_to_all=True
    ))
    db.commit()
    db.close()

    zones = GeofenceRegistry(session_factory).load()
    assert [z.id for z in zones] == ["GOOD"]


def test_registry_raises_zone_lookup_failure_when_table_unreadable():
    def broken_factory():
        from sqlalchemy.exc import OperationalError
        raise OperationalError("SELECT 1", {}, Exception("database is down"))

    registry = GeofenceRegistry(broken_factory)
    with pytest.raises(ZoneLookupFailure):
        registry.get_zones()
    assert registry.get_zone("Z1") is None


def test_registry_invalidate_reloads(session_factory, registry):
    assert registry.get_zones() == []
    store_zone(session_factory, id="Z1", name="Depot", shape_type="circle",
               center_lat=BASE_LAT, center_lon=BASE_LON, radius_meters=200)
    assert registry.get_zones() == []

    registry.invalidate()
    assert [z.id for z in registry.get_zones()] == ["Z1"]


def test_geojson_import(session_factory, registry):
    """Test that Point+radius becomes a circle and Polygon a polygon zone."""
    collection = {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {"id": "DEPOT", "name": "Depot", "radius_meters": 250, "priority": 2},
                "geometry": {"type": "Point", "coordinates": [BASE_LON, BASE_LAT]},
            },
            {
                "type": "Feature",
                "properties": {"id": "YARD", "name": "Yard", "speed_limit_kmh": 20},
                "geometry": square_boundary(BASE_LAT, BASE_LON),
            },
            {
                "type": "Feature",
                "properties": {"id": "LINE"},
                "geometry": {"type": "LineString", "coordinates": [[0, 1], [1, 1]]},
            },
            {"type": "Feature", "properties": {}, "geometry": None},
        ],
    }
    registry.get_zones()
    db = session_factory()
    try:
        created, updated, skipped, failed = import_zones_from_geojson(db, collection, registry=registry)
        assert (created, updated, skipped, failed) == (2, 0, 1, 1)

        again = import_zones_from_geojson(db, collection, mode='skip', registry=registry)
        assert again == (0, 0, 3, 1)
    finally:
        db.close()

    zones = {z.id: z for z in registry.get_zones()}
    assert zones["DEPOT"].shape_type == "circle"
    assert zones["DEPOT"].radius_meters == 250
    assert zones["DEPOT"].center_lat == pytest.approx(BASE_LAT)
    assert zones["YARD"].shape_type == "polygon"
    assert zones["YARD"].speed_limit_kmh == 20
