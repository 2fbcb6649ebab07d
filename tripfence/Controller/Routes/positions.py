# tripfence/Controller/Routes/positions.py

"""
Position Ingestion REST API

Entry point used by the feed adapter to push position reports into the
derivation engine.

Endpoints:
- POST /positions/         Process one report
- POST /positions/batch    Process many reports (devices in parallel)
- POST /positions/flush    Close open trips (end of a backfill window)
- POST /positions/retry    Re-publish pending outbox events

Delivery:
- At-least-once is fine: a report not newer than the last one processed
  for its device is acknowledged as stale and changes nothing, unless
  the batch asks for a replay
- Rejected reports are acknowledged with accepted=false and a reason;
  they are not an HTTP error
"""

from typing import Optional, List

from fastapi import APIRouter, Depends, Query

from tripfence.Controller.deps import get_pipeline
from tripfence.Schemas.position import (
    PositionReport,
    PositionBatch,
    ProcessingResponse,
    BatchResponse,
    CrossingGet,
)
from tripfence.Schemas.trip import TripRecord
from tripfence.Services.pipeline import PositionPipeline, ProcessingResult, BatchResult

router = APIRouter()


def _to_response(result: ProcessingResult) -> ProcessingResponse:
    return ProcessingResponse(
        device_id=result.device_id,
        timestamp=result.timestamp,
        accepted=result.accepted,
        rejection_reason=result.rejection_reason,
        stale=result.stale,
        zone_id=result.zone_id,
        trip_closed=result.trip is not None,
        crossings=[
            CrossingGet(
                event_type=c.event_type,
                geofence_id=c.zone_id,
                event_time=c.at,
                duration_inside_seconds=c.duration_inside_seconds
            )
            for c in result.crossings
        ],
        speed_alert=result.speed.alert.severity if result.speed and result.speed.emitted else None,
        published=result.published,
        errors=result.errors
    )


def _to_batch_response(summary: BatchResult) -> BatchResponse:
    return BatchResponse(
        received=summary.received,
        processed=summary.processed,
        rejected=summary.rejected,
        stale=summary.stale,
        devices=summary.devices,
        trips=len(summary.trips),
        entries=summary.entries,
        exits=summary.exits,
        speed_alerts=summary.speed_alerts,
        published=summary.published,
        errors=summary.errors
    )


@router.post("/", response_model=ProcessingResponse)
def ingest_position(
    report: PositionReport,
    pipeline: PositionPipeline = Depends(get_pipeline)
):
    """
    Process one position report.

    Example Request:
        POST /positions/
        {
            "device_id": "TRUCK-7",
            "timestamp": "2025-11-03T14:05:00Z",
            "latitude": 10.9878,
            "longitude": -74.7889,
            "speed": 42.0,
            "ignition_on": true
        }
    """
    return _to_response(pipeline.process(report))


@router.post("/batch", response_model=BatchResponse)
def ingest_batch(
    batch: PositionBatch,
    pipeline: PositionPipeline = Depends(get_pipeline)
):
    """
    Process a batch of reports (live bursts or historical backfills).

    Reports are grouped by device and sorted by timestamp before
    processing; the order inside the request does not matter.
    With "replay": true an already processed window is re-derived
    (backfill with more complete data).
    """
    return _to_batch_response(pipeline.process_batch(batch.reports, flush=batch.flush, replay=batch.replay))


@router.post("/flush", response_model=List[TripRecord])
def flush_open_trips(
    device_id: Optional[str] = Query(None, description="Only this device (default: all)"),
    pipeline: PositionPipeline = Depends(get_pipeline)
):
    """Close open trips and return the ones that passed the distance filter."""
    return pipeline.flush(device_id)


@router.post("/retry")
def retry_pending_events(
    limit: int = Query(100, ge=1, le=1000),
    pipeline: PositionPipeline = Depends(get_pipeline)
):
    """Re-publish pending outbox rows."""
    return {"published": pipeline.retry_pending_events(limit=limit)}
