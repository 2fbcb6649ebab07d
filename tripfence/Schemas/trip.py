# tripfence/Schemas/trip.py
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Optional, List


# ============================================
# ENGINE OUTPUT
# ============================================
class TripRecord(BaseModel):
    """
    A finalized trip as emitted by the segmentation engine.

    Keyed by (device_id, start_time). Persisting the same key twice
    overwrites the stored metrics.
    """
    model_config = ConfigDict(frozen=True)

    device_id: str
    start_time: datetime
    end_time: datetime
    distance_km: float = Field(..., ge=0)
    duration_seconds: int = Field(..., ge=0)
    avg_speed: float
    max_speed: float
    start_lat: float
    start_lon: float
    end_lat: float
    end_lon: float
    point_count: int = Field(..., ge=1)
    source: str = "derived"

    @property
    def key(self) -> tuple:
        return (self.device_id, self.start_time)


# ============================================
# RESPONSE SCHEMAS
# ============================================
class Trip_get(BaseModel):
    """Schema for trip API responses."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    device_id: str
    start_time: datetime
    end_time: datetime
    distance_km: float
    duration_seconds: int
    avg_speed: Optional[float] = None
    max_speed: Optional[float] = None
    start_lat: float
    start_lon: float
    end_lat: float
    end_lon: float
    point_count: int
    source: str


class TripListResponse(BaseModel):
    """Trips for one device over a time range, with totals."""
    device_id: str
    trips: List[Trip_get]
    total: int
    total_distance_km: float
    total_duration_seconds: int
