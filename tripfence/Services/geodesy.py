# tripfence/Services/geodesy.py
"""
Canonical geodesic distance.

Trip distance accumulation and circle-zone containment both call
haversine_m(), so the two subsystems can never disagree about how far
apart two points are.
"""

from math import radians, sin, cos, sqrt, atan2

# Mean Earth radius (IUGG), meters
EARTH_RADIUS_M = 6371008.8


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points in meters.

    Fórmula:
        a = sin²(Δlat/2) + cos(lat1) * cos(lat2) * sin²(Δlon/2)
        c = 2 * atan2(√a, √(1−a))
        d = R * c

    Examples:
        >>> round(haversine_m(10.0, -74.0, 10.001, -74.0), 1)
        111.2
        >>> haversine_m(10.5, -74.8, 10.5, -74.8)
        0.0
    """
    lat1_rad = radians(lat1)
    lat2_rad = radians(lat2)
    delta_lat = radians(lat2 - lat1)
    delta_lon = radians(lon2 - lon1)

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    # Rounding can push a a hair above 1 for antipodal points
    a = min(1.0, max(0.0, a))
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_M * c


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_m(lat1, lon1, lat2, lon2) / 1000.0
