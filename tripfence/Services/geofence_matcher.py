# tripfence/Services/geofence_matcher.py
"""
Geofence Matcher
================
Resuelve a lo sumo UNA zona para un reporte de posición.

Reglas de selección:
1. Zone must be active (is_active) and scoped to the device
   (applies_to_all, no device_id, or device_id == report device)
2. Zone time window must cover the report timestamp
   - active_days: 0 = Sunday ... 6 = Saturday (NULL/empty = every day)
   - effective_start_time / effective_end_time, inclusive on both ends;
     start > end means the window wraps midnight (22:00-06:00)
3. Point must be inside the shape
   - circle: geodesic distance to center <= radius_meters (haversine,
     the same function trip distances use)
   - polygon / rectangle: shapely covers(), so boundary points count
     as inside
4. Among candidates: highest priority, then most recently created, then
   lowest id for a total order

Funciones puras: no I/O, no estado. The registry supplies the zones.
"""

from datetime import datetime, time
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from shapely.geometry import Point

from tripfence.Core.config import settings
from tripfence.Schemas.geofence import ZoneDefinition
from tripfence.Services.geodesy import haversine_m


def _local_time(ts: datetime, tz_name: Optional[str] = None) -> datetime:
    return ts.astimezone(ZoneInfo(tz_name or settings.GEOFENCE_TIMEZONE))


def day_index(ts: datetime) -> int:
    """Day of week with 0 = Sunday (Python's weekday() has 0 = Monday)."""
    return (ts.weekday() + 1) % 7


def _in_window(start: Optional[time], end: Optional[time], t: time) -> bool:
    if start is None and end is None:
        return True
    if start is None:
        return t <= end
    if end is None:
        return t >= start
    if start <= end:
        return start <= t <= end
    # Overnight window
    return t >= start or t <= end


def is_zone_active_at(zone: ZoneDefinition, ts: datetime, tz_name: Optional[str] = None) -> bool:
    """True if the zone's schedule covers ts (evaluated in GEOFENCE_TIMEZONE)."""
    if not zone.is_active:
        return False

    local = _local_time(ts, tz_name)

    if zone.active_days and day_index(local) not in zone.active_days:
        return False

    return _in_window(
        zone.effective_start_time,
        zone.effective_end_time,
        local.time().replace(tzinfo=None)
    )


def zone_contains(zone: ZoneDefinition, lat: float, lon: float) -> bool:
    """Point-in-shape test."""
    if zone.shape_type == 'circle':
        return haversine_m(zone.center_lat, zone.center_lon, lat, lon) <= zone.radius_meters
    return zone.prepared_polygon.covers(Point(lon, lat))


def _rank(zone: ZoneDefinition):
    created = zone.created_at.timestamp() if zone.created_at else float('-inf')
    return (-zone.priority, -created, zone.id)


def candidate_zones(
    device_id: str,
    lat: float,
    lon: float,
    ts: datetime,
    zones: Iterable[ZoneDefinition],
    tz_name: Optional[str] = None
) -> List[ZoneDefinition]:
    """Every zone that matches, best first."""
    matches = [
        z for z in zones
        if z.applies_to(device_id)
        and is_zone_active_at(z, ts, tz_name)
        and zone_contains(z, lat, lon)
    ]
    matches.sort(key=_rank)
    return matches


def match_zone(
    device_id: str,
    lat: float,
    lon: float,
    ts: datetime,
    zones: Iterable[ZoneDefinition],
    tz_name: Optional[str] = None
) -> Optional[ZoneDefinition]:
    """
    The single zone a report is in, or None.

    Examples:
        >>> zone = match_zone("ESP001", 10.9878, -74.7889, ts, registry.get_zones())
        >>> zone.id if zone else None
        'warehouse-a'
    """
    matches = candidate_zones(device_id, lat, lon, ts, zones, tz_name)
    return matches[0] if matches else None
