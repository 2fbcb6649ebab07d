# tripfence/Schemas/geofence.py

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator
from datetime import datetime, time
from typing import Optional, Dict, Any, List, Literal

from shapely.geometry import shape
from shapely.prepared import prep

from tripfence.Core.timeutils import as_utc


ShapeType = Literal['circle', 'polygon', 'rectangle']


class GeofenceZoneBase(BaseModel):
    """Schema base para zonas de geocerca."""
    model_config = ConfigDict(from_attributes=True)

    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    zone_type: Optional[str] = Field(default='custom', max_length=50)
    shape_type: ShapeType
    center_lat: Optional[float] = Field(None, ge=-90, le=90)
    center_lon: Optional[float] = Field(None, ge=-180, le=180)
    radius_meters: Optional[float] = Field(None, gt=0)
    boundary: Optional[Dict[str, Any]] = Field(None, description="GeoJSON Polygon, [lon, lat] order")
    priority: int = 0
    active_days: Optional[List[int]] = Field(None, description="0 = Sunday ... 6 = Saturday")
    effective_start_time: Optional[time] = None
    effective_end_time: Optional[time] = None
    speed_limit_kmh: Optional[float] = Field(None, gt=0)
    device_id: Optional[str] = Field(None, max_length=100)
    applies_to_all: bool = False
    is_active: bool = True

    @model_validator(mode="after")
    def _check_geometry(self):
        if self.shape_type == 'circle':
            if self.center_lat is None or self.center_lon is None or self.radius_meters is None:
                raise ValueError("circle zones need center_lat, center_lon and radius_meters")
        elif not self.boundary:
            raise ValueError(f"{self.shape_type} zones need a boundary polygon")
        if self.active_days and any(d < 0 or d > 6 for d in self.active_days):
            raise ValueError("active_days must be between 0 (Sunday) and 6 (Saturday)")
        return self


class GeofenceZoneCreate(GeofenceZoneBase):
    """Schema para crear zona (admin tooling and GeoJSON import)."""
    id: str = Field(..., min_length=1, max_length=100)


class ZoneDefinition(GeofenceZoneBase):
    """
    Immutable view of one zone as the matcher sees it.

    Built from a GeofenceZone row by the registry. Polygon and rectangle
    boundaries are parsed once into a prepared shapely geometry; a
    boundary that cannot be parsed raises ValueError, which the registry
    reports as a corrupt zone.
    """
    id: str
    created_at: Optional[datetime] = None

    _polygon: Any = PrivateAttr(default=None)
    _prepared: Any = PrivateAttr(default=None)

    def model_post_init(self, __context: Any) -> None:
        if self.created_at is not None:
            self.created_at = as_utc(self.created_at)
        if self.shape_type == 'circle':
            return
        try:
            polygon = shape(self.boundary)
        except Exception as e:
            raise ValueError(f"Zone {self.id}: unreadable boundary ({e})") from e
        if polygon.geom_type not in ('Polygon', 'MultiPolygon'):
            raise ValueError(f"Zone {self.id}: boundary is a {polygon.geom_type}, expected Polygon")
        if not polygon.is_valid:
            # Self-intersecting rings are repaired the way the importer does it
            polygon = polygon.buffer(0)
        if polygon.is_empty:
            raise ValueError(f"Zone {self.id}: boundary polygon is empty")
        self._polygon = polygon
        self._prepared = prep(polygon)

    @property
    def polygon(self):
        return self._polygon

    @property
    def prepared_polygon(self):
        return self._prepared

    def applies_to(self, device_id: str) -> bool:
        if self.applies_to_all or self.device_id is None:
            return True
        return self.device_id == device_id


# ============================================
# RESPONSE SCHEMAS
# ============================================
class GeofenceZoneGet(GeofenceZoneBase):
    """Schema para respuesta de zona."""
    id: str
    created_at: Optional[datetime] = None


class GeofenceStatusGet(BaseModel):
    """Current geofence state of a device."""
    model_config = ConfigDict(from_attributes=True)

    device_id: str
    is_inside: bool
    geofence_id: Optional[str] = None
    entered_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None


class GeofenceEventGet(BaseModel):
    """One ENTRY/EXIT row."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    geofence_id: str
    device_id: str
    event_type: str
    event_time: datetime
    latitude: float
    longitude: float
    speed: Optional[float] = None
    duration_inside_seconds: Optional[int] = None


class GeofenceEventListResponse(BaseModel):
    events: List[GeofenceEventGet]
    total: int
