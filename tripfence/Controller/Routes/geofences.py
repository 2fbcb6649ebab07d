# tripfence/Controller/Routes/geofences.py

"""
Geofence REST API

Zones are reference data: this router exposes them read-mostly, plus the
bulk GeoJSON import used to seed them. Crossings and per-device state are
produced by the pipeline and only read here.

Endpoints:
- GET  /geofences/                      List zones
- POST /geofences/                      Create one zone
- GET  /geofences/{geofence_id}         Zone details (geometry included)
- DELETE /geofences/{geofence_id}      Remove a zone
- POST /geofences/import                Bulk import from a GeoJSON FeatureCollection
- GET  /geofence-events                 ENTRY/EXIT log (device / zone / time filters)
- GET  /geofence-status/{device_id}     Current Outside/Inside state of a device

GeoJSON Format:
- Coordinates are in [longitude, latitude] order (NOT lat/lon)
- Polygon must be closed (first point = last point)
- Point features need properties.radius_meters (circle zones)

Usage:
    # In main.py
    from tripfence.Controller.Routes import geofences
    app.include_router(geofences.router, tags=["geofences"])
"""

from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from tripfence.Controller.deps import get_DB, get_pipeline
from tripfence.Repositories import geofence as geofence_repo
from tripfence.Repositories.geofence_event import get_events
from tripfence.Repositories.geofence_status import get_status
from tripfence.Schemas import geofence as geofence_schema
from tripfence.Services.geofence_importer import GeofenceImporter
from tripfence.Services.pipeline import PositionPipeline

router = APIRouter()


# ==========================================================
# 📌 Zones
# ==========================================================

@router.get("/geofences/", response_model=List[geofence_schema.GeofenceZoneGet])
def list_geofences(
    only_active: bool = Query(True, description="Filter only active zones"),
    zone_type: Optional[str] = Query(None, description="Filter by zone type"),
    device_id: Optional[str] = Query(None, description="Only zones that apply to this device"),
    db: Session = Depends(get_DB)
):
    """
    List zones.

    Example Requests:
        GET /geofences/                          # All active zones
        GET /geofences/?only_active=false        # Including inactive
        GET /geofences/?zone_type=warehouse
        GET /geofences/?device_id=TRUCK-7        # Global zones plus TRUCK-7's own
    """
    return geofence_repo.get_all_geofences(
        db, only_active=only_active, zone_type=zone_type, device_id=device_id
    )


@router.post("/geofences/", response_model=geofence_schema.GeofenceZoneGet, status_code=201)
def create_geofence(
    zone: geofence_schema.GeofenceZoneCreate,
    db: Session = Depends(get_DB),
    pipeline: PositionPipeline = Depends(get_pipeline)
):
    """Create one zone. The registry reloads on the next report."""
    if geofence_repo.get_geofence_by_id(db, zone.id):
        raise HTTPException(status_code=409, detail=f"Geofence {zone.id} already exists")

    created = geofence_repo.create_geofence(db, zone.model_dump())
    pipeline.registry.invalidate()
    print(f"[GEOFENCE] Zone created: {created.id} ({created.shape_type})")
    return created


@router.get("/geofences/{geofence_id}", response_model=geofence_schema.GeofenceZoneGet)
def get_geofence(geofence_id: str, db: Session = Depends(get_DB)):
    zone = geofence_repo.get_geofence_by_id(db, geofence_id)
    if not zone:
        raise HTTPException(status_code=404, detail=f"Geofence {geofence_id} not found")
    return zone


@router.delete("/geofences/{geofence_id}", status_code=204)
def delete_geofence(
    geofence_id: str,
    db: Session = Depends(get_DB),
    pipeline: PositionPipeline = Depends(get_pipeline)
):
    """
    Remove a zone.

    Past ENTRY/EXIT rows are kept. A vehicle still inside the zone gets
    its EXIT on the next report, named "Unknown Zone".
    """
    if not geofence_repo.delete_geofence(db, geofence_id):
        raise HTTPException(status_code=404, detail=f"Geofence {geofence_id} not found")
    pipeline.registry.invalidate()
    print(f"[GEOFENCE] Zone deleted: {geofence_id}")


@router.post("/geofences/import")
def import_geofences(
    geojson: dict = Body(..., description="GeoJSON FeatureCollection"),
    mode: str = Query('skip', pattern="^(skip|update|replace)$"),
    db: Session = Depends(get_DB),
    pipeline: PositionPipeline = Depends(get_pipeline)
):
    """
    Bulk import zones.

    Returns:
        {"created": int, "updated": int, "skipped": int, "failed": int}
    """
    importer = GeofenceImporter(registry=pipeline.registry)
    created, updated, skipped, failed = importer.import_from_geojson_dict(db, geojson, mode=mode)
    return {"created": created, "updated": updated, "skipped": skipped, "failed": failed}


# ==========================================================
# 📌 Crossings and state
# ==========================================================

@router.get("/geofence-events", response_model=geofence_schema.GeofenceEventListResponse)
def list_geofence_events(
    device_id: Optional[str] = Query(None),
    geofence_id: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None, description="Events at or after (ISO 8601)"),
    end: Optional[datetime] = Query(None, description="Events at or before (ISO 8601)"),
    limit: int = Query(500, ge=1, le=5000),
    db: Session = Depends(get_DB)
):
    """ENTRY/EXIT rows in chronological order."""
    events = get_events(
        db,
        device_id=device_id,
        geofence_id=geofence_id,
        start_date=start,
        end_date=end,
        limit=limit
    )
    return {"events": events, "total": len(events)}


@router.get("/geofence-status/{device_id}", response_model=geofence_schema.GeofenceStatusGet)
def get_geofence_status(device_id: str, db: Session = Depends(get_DB)):
    """
    Current state of a device.

    A device never processed is reported as Outside rather than 404.
    """
    status = get_status(db, device_id)
    if status is None:
        return geofence_schema.GeofenceStatusGet(device_id=device_id, is_inside=False)
    return status
