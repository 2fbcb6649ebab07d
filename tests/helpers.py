from datetime import datetime, timedelta, timezone
from math import pi

from tripfence.Repositories.geofence import create_geofence
from tripfence.Schemas.geofence import GeofenceZoneCreate, ZoneDefinition
from tripfence.Schemas.position import PositionReport
from tripfence.Services.geodesy import EARTH_RADIUS_M

# Tuesday
T0 = datetime(2025, 3, 4, 8, 0, 0, tzinfo=timezone.utc)

BASE_LAT = 10.9800
BASE_LON = -74.8000

METERS_PER_DEGREE_LAT = EARTH_RADIUS_M * pi / 180


def north_of(lat: float, meters: float) -> float:
    """Latitude `meters` due north of lat (exact for the canonical haversine)."""
    return lat + meters / METERS_PER_DEGREE_LAT


def at(seconds: float = 0, minutes: float = 0) -> datetime:
    return T0 + timedelta(seconds=seconds, minutes=minutes)


def report(
    device_id="TRUCK-1",
    ts=None,
    lat=BASE_LAT,
    lon=BASE_LON,
    speed=0.0,
    ignition_on=True
) -> PositionReport:
    return PositionReport(
        device_id=device_id,
        timestamp=ts or T0,
        latitude=lat,
        longitude=lon,
        speed=speed,
        ignition_on=ignition_on
    )


def circle_zone(zone_id="Z1", radius=500.0, lat=BASE_LAT, lon=BASE_LON, **extra) -> ZoneDefinition:
    fields = dict(
        id=zone_id,
        name=extra.pop("name", f"Zone {zone_id}"),
        shape_type="circle",
        center_lat=lat,
        center_lon=lon,
        radius_meters=radius,
        applies_to_all=True,
    )
    fields.update(extra)
    return ZoneDefinition(**fields)


def square_boundary(lat, lon, half_side_deg=0.002) -> dict:
    return {
        "type": "Polygon",
        "coordinates": [[
            [lon - half_side_deg, lat - half_side_deg],
            [lon + half_side_deg, lat - half_side_deg],
            [lon + half_side_deg, lat + half_side_deg],
            [lon - half_side_deg, lat + half_side_deg],
            [lon - half_side_deg, lat - half_side_deg],
        ]]
    }


def store_zone(session_factory, **fields):
    """Validate and persist a zone, like the admin tooling does."""
    fields.setdefault("applies_to_all", True)
    zone = GeofenceZoneCreate(**fields)
    db = session_factory()
    try:
        return create_geofence(db, zone.model_dump())
    finally:
        db.close()
