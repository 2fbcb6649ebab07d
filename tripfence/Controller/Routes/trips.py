# tripfence/Controller/Routes/trips.py

"""
Trip Query REST API

Endpoints:
- GET /trips/?device_id=...&start=...&end=...   Trips of a device by start_time range
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from tripfence.Controller.deps import get_DB
from tripfence.Repositories.trip import get_trips_by_device
from tripfence.Schemas.trip import Trip_get, TripListResponse

router = APIRouter()


@router.get("/", response_model=TripListResponse)
def list_trips(
    device_id: str = Query(..., min_length=1, description="Device identifier"),
    start: Optional[datetime] = Query(None, description="Trips starting at or after (ISO 8601)"),
    end: Optional[datetime] = Query(None, description="Trips starting at or before (ISO 8601)"),
    limit: int = Query(500, ge=1, le=5000),
    db: Session = Depends(get_DB)
):
    """
    Finalized trips of one device, oldest first, with totals.

    Example Response:
        {
            "device_id": "TRUCK-7",
            "trips": [{"start_time": "...", "end_time": "...", "distance_km": 12.4, ...}],
            "total": 1,
            "total_distance_km": 12.4,
            "total_duration_seconds": 1860
        }
    """
    trips = get_trips_by_device(db, device_id, start_date=start, end_date=end, limit=limit)
    items = [Trip_get.model_validate(t) for t in trips]
    return TripListResponse(
        device_id=device_id,
        trips=items,
        total=len(items),
        total_distance_km=round(sum(t.distance_km for t in items), 3),
        total_duration_seconds=sum(t.duration_seconds for t in items)
    )
