# tripfence/Services/event_handlers/trip_handler.py
"""
Trip Event Handler
==================
Conecta el TripDetector (en memoria) con la base de datos.

Por cada reporte:
1. Si el detector no conoce el dispositivo → hidrata su estado desde
   open_trip_state (restart, otro worker, backfill)
2. Reporte stale (timestamp <= último procesado) → se ignora
3. detector.consume(report)
4. Trip cerrado → upsert por (device_id, start_time)
5. Guarda el acumulador actualizado
6. Commit: trip + acumulador en la misma transacción

Error handling:
- Errores de DB → rollback, log y reset del estado en memoria del
  dispositivo (el próximo reporte re-hidrata desde la DB)
- Nunca propaga: un fallo de trips no bloquea geocercas
- Excepto handle_trip_rewind(): un replay sin rewind no re-deriva nada,
  así que el error llega al pipeline
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tripfence.Core import log_ws
from tripfence.Core.timeutils import as_utc
from tripfence.Repositories.open_trip import (
    load_trip_state,
    save_trip_state,
    get_devices_with_open_trips,
)
from tripfence.Repositories.trip import upsert_trip, get_trip_spanning
from tripfence.Schemas.position import PositionReport
from tripfence.Schemas.trip import TripRecord
from tripfence.Services.trip_detector import TripDetector


@dataclass
class TripOutcome:
    trip: Optional[TripRecord] = None
    stale: bool = False
    error: Optional[str] = None


def _ensure_hydrated(db: Session, detector: TripDetector, device_id: str):
    if not detector.is_tracking(device_id):
        accumulator, last_seen = load_trip_state(db, device_id)
        detector.hydrate(device_id, accumulator, last_seen)


def handle_trip_detection(
    db: Session,
    detector: TripDetector,
    report: PositionReport
) -> TripOutcome:
    """
    Segment one validated report and persist the result.

    Must be called under the device's lock.

    Returns:
        TripOutcome: trip closed by this report (if any), stale flag, or
            the error that prevented persisting
    """
    device_id = report.device_id
    try:
        _ensure_hydrated(db, detector, device_id)

        if detector.is_stale(report):
            print(f"[TRIP_HANDLER] {device_id}: skipping stale report {report.timestamp.isoformat()}")
            return TripOutcome(stale=True)

        trip = detector.consume(report)
        if trip:
            upsert_trip(db, trip)

        accumulator, last_seen = detector.export_state(device_id)
        save_trip_state(db, device_id, accumulator, last_seen)
        db.commit()
        return TripOutcome(trip=trip)

    except SQLAlchemyError as e:
        db.rollback()
        detector.reset_device_state(device_id)
        log_ws.log_from_thread(f"[TRIP_HANDLER] {device_id}: could not persist trip state: {e}", msg_type="error")
        return TripOutcome(error=str(e))


def handle_trip_flush(
    db: Session,
    detector: TripDetector,
    device_id: Optional[str] = None
) -> List[TripRecord]:
    """
    Close open trips (one device, or every device with an open trip).

    Used at the end of a backfill window. Devices only known from
    open_trip_state are hydrated first so they are flushed too.
    """
    if device_id is not None:
        device_ids = [device_id]
    else:
        device_ids = sorted(set(detector.open_device_ids()) | set(get_devices_with_open_trips(db)))

    trips = []
    for dev in device_ids:
        try:
            _ensure_hydrated(db, detector, dev)
            trip = detector.flush(dev)
            if trip:
                upsert_trip(db, trip)
                trips.append(trip)
            accumulator, last_seen = detector.export_state(dev)
            save_trip_state(db, dev, accumulator, last_seen)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            detector.reset_device_state(dev)
            log_ws.log_from_thread(f"[TRIP_HANDLER] {dev}: flush failed: {e}", msg_type="error")

    if trips:
        print(f"[TRIP_HANDLER] Flushed {len(trips)} open trips")
    return trips


def handle_trip_rewind(
    db: Session,
    detector: TripDetector,
    device_id: str,
    since: datetime
) -> bool:
    """
    Roll the device's trip state back before `since` and persist it.

    Must be called under the device's lock. Stored trips are left in
    place: the replay overwrites them by key.

    Returns:
        bool: True if the state changed
    """
    try:
        _ensure_hydrated(db, detector, device_id)
        changed = detector.rewind(device_id, since)
        if not changed:
            return False

        spanning = get_trip_spanning(db, device_id, since)
        if spanning is not None:
            log_ws.log_from_thread(
                f"[TRIP_HANDLER] {device_id}: replay window {since.isoformat()} cuts the stored "
                f"trip started at {as_utc(spanning.start_time).isoformat()}",
                msg_type="warning"
            )

        accumulator, last_seen = detector.export_state(device_id)
        save_trip_state(db, device_id, accumulator, last_seen)
        db.commit()
        return True

    except SQLAlchemyError as e:
        db.rollback()
        detector.reset_device_state(device_id)
        log_ws.log_from_thread(f"[TRIP_HANDLER] {device_id}: rewind failed: {e}", msg_type="error")
        raise
