# tripfence/Services/pipeline.py
"""
Position Pipeline - Orchestrator of the derivation engine.

Flujo por reporte (bajo el lock del dispositivo):

    Validate → Segment (trip) → MatchZone → DetectCrossing → DetectSpeed → Publish

- Validate: implausible reports are dropped with a logged reason
- Segment: TripDetector + trip_handler (own transaction)
- MatchZone: registry + matcher; a ZoneLookupFailure fails open ("no zone")
- DetectCrossing: geofence_handler (own transaction, retried on StateConflict)
- DetectSpeed: speed_handler (own transaction, isolated)
- Publish: outbox rows committed above are handed to the sink; a sink
  failure only leaves them pending

Concurrencia:
- One lock per device (DeviceLockRegistry): reports of the same device
  never run concurrently, different devices run in parallel
- process_batch() groups by device, sorts each device's reports by
  timestamp and runs the devices on a ThreadPoolExecutor

Determinismo:
- Every decision uses report timestamps, never the wall clock (the
  validator's future-skew check aside), so a batch replay produces the
  same trips and geofence events as the live stream

Replay:
- Reports at or before a device's last processed timestamp are stale.
  process_batch(replay=True) first rewinds each device to just before
  its earliest report in the batch (trip accumulator, geofence status,
  speed dedupe markers), so a denser re-ingest of an already processed
  window overwrites its trips by (device_id, start_time); crossings and
  outbox rows derived again dedupe on their idempotency keys
"""

import threading
import weakref
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tripfence.Core.config import settings
from tripfence.Core.exceptions import TripfenceError, ZoneLookupFailure
from tripfence.Core.timeutils import utc_now
from tripfence.Core import log_ws
from tripfence.Repositories.open_trip import get_devices_with_open_trips
from tripfence.Schemas.geofence import ZoneDefinition
from tripfence.Schemas.position import PositionReport
from tripfence.Schemas.trip import TripRecord
from tripfence.Services.event_handlers import (
    handle_trip_detection,
    handle_trip_flush,
    handle_trip_rewind,
    handle_geofence_detection,
    handle_geofence_rewind,
    handle_speed_detection,
    handle_speed_rewind,
    GeofenceOutcome,
    SpeedOutcome,
)
from tripfence.Services.event_publisher import EventPublisher, EventSink, build_default_sink
from tripfence.Services.geofence_matcher import match_zone
from tripfence.Services.geofence_registry import GeofenceRegistry
from tripfence.Services.position_validator import check_position
from tripfence.Services.trip_detector import TripDetector


# ==========================================================
# LOCKS POR DISPOSITIVO
# ==========================================================

class DeviceLock:
    """threading.Lock wrapper that can be weakly referenced."""

    __slots__ = ('_lock', '__weakref__')

    def __init__(self):
        self._lock = threading.Lock()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc):
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()


class DeviceLockRegistry:
    """
    Keyed store of per-device locks. Never a global lock around processing.

    Entries are weak: a device's lock lives only while some caller holds
    or waits on it, so the map is bounded by the devices in flight, not by
    every device ever seen.
    """

    def __init__(self):
        self._master = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[str, DeviceLock]" = weakref.WeakValueDictionary()

    def get(self, device_id: str) -> DeviceLock:
        with self._master:
            lock = self._locks.get(device_id)
            if lock is None:
                lock = DeviceLock()
                self._locks[device_id] = lock
            return lock

    def __len__(self):
        with self._master:
            return len(self._locks)


# ==========================================================
# RESULTADOS
# ==========================================================

@dataclass
class ProcessingResult:
    """What one report produced."""
    device_id: str
    timestamp: datetime
    accepted: bool = True
    rejection_reason: Optional[str] = None
    stale: bool = False
    trip: Optional[TripRecord] = None
    zone_id: Optional[str] = None
    geofence: Optional[GeofenceOutcome] = None
    speed: Optional[SpeedOutcome] = None
    published: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def crossings(self):
        return self.geofence.crossings if self.geofence else []


@dataclass
class BatchResult:
    """Summary of process_batch(). Lists are ordered by device, then timestamp."""
    received: int = 0
    processed: int = 0
    rejected: int = 0
    stale: int = 0
    trips: List[TripRecord] = field(default_factory=list)
    entries: int = 0
    exits: int = 0
    speed_alerts: int = 0
    published: int = 0
    errors: List[str] = field(default_factory=list)
    devices: int = 0

    def add(self, result: ProcessingResult):
        if not result.accepted:
            self.rejected += 1
            return
        if result.stale:
            self.stale += 1
            self.errors.extend(result.errors)
            return
        self.processed += 1
        if result.trip:
            self.trips.append(result.trip)
        for crossing in result.crossings:
            if crossing.event_type == 'entry':
                self.entries += 1
            else:
                self.exits += 1
        if result.speed and result.speed.emitted:
            self.speed_alerts += 1
        self.published += result.published
        self.errors.extend(result.errors)


# ==========================================================
# PIPELINE
# ==========================================================

class PositionPipeline:
    """
    Composes the engine stages for live ingestion and backfills.

    Args:
        session_factory: Callable returning a new Session (default SessionLocal)
        sink: Event sink (default: WebSocket + optional webhook)
        detector: TripDetector instance (one per pipeline)
        registry: GeofenceRegistry (default: loads from session_factory)
        clock: Callable returning "now" for the validator
        workers: Thread pool width for process_batch()
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        sink: Optional[EventSink] = None,
        detector: Optional[TripDetector] = None,
        registry: Optional[GeofenceRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
        workers: Optional[int] = None
    ):
        if session_factory is None:
            from tripfence.DB.session import SessionLocal
            session_factory = SessionLocal

        self.session_factory = session_factory
        self.sink = sink or build_default_sink()
        self.detector = detector or TripDetector()
        self.registry = registry or GeofenceRegistry(session_factory)
        self.publisher = EventPublisher(self.sink, session_factory)
        self.clock = clock or utc_now
        self.workers = workers or settings.PIPELINE_WORKERS
        self.locks = DeviceLockRegistry()

    # ------------------------------------------------------
    # Etapas
    # ------------------------------------------------------

    def _match(self, report: PositionReport) -> Optional[ZoneDefinition]:
        try:
            zones = self.registry.get_zones()
        except ZoneLookupFailure as zf:
            log_ws.log_from_thread(
                f"[PIPELINE] {report.device_id}: zone lookup failed, treating as no zone: {zf}",
                msg_type="warning"
            )
            return None
        return match_zone(report.device_id, report.latitude, report.longitude, report.timestamp, zones)

    def _process_locked(self, report: PositionReport) -> ProcessingResult:
        result = ProcessingResult(device_id=report.device_id, timestamp=report.timestamp)

        reason = check_position(report, now=self.clock())
        if reason is not None:
            result.accepted = False
            result.rejection_reason = reason
            return result

        db = self.session_factory()
        try:
            # 1. Trip segmentation (independent of zones)
            trip_outcome = handle_trip_detection(db, self.detector, report)
            result.trip = trip_outcome.trip
            if trip_outcome.error:
                result.errors.append(f"trip: {trip_outcome.error}")

            # 2. Zone match (fails open)
            zone = self._match(report)
            result.zone_id = zone.id if zone else None

            # 3. Geofence state machine
            geofence = handle_geofence_detection(db, report, zone, self.registry)
            result.geofence = geofence
            if geofence.error:
                result.errors.append(f"geofence: {geofence.error}")

            result.stale = trip_outcome.stale and geofence.stale
            outbox_ids = list(geofence.outbox_ids)

            # 4. Speed limit (skipped for replays)
            if not geofence.stale:
                speed = handle_speed_detection(db, report, zone)
                result.speed = speed
                if speed.error:
                    result.errors.append(f"speed: {speed.error}")
                if speed.outbox_id is not None:
                    outbox_ids.append(speed.outbox_id)
        finally:
            db.close()

        # 5. Publish after every commit
        if outbox_ids:
            try:
                result.published = self.publisher.publish_ids(outbox_ids)
            except Exception as e:
                log_ws.log_from_thread(
                    f"[PIPELINE] {report.device_id}: publish step failed, events stay pending: {e}",
                    msg_type="error"
                )
                result.errors.append(f"publish: {e}")

        return result

    # ------------------------------------------------------
    # API pública
    # ------------------------------------------------------

    def process(self, report: PositionReport) -> ProcessingResult:
        """Process one report under its device's lock."""
        with self.locks.get(report.device_id):
            return self._process_locked(report)

    def _rewind_locked(self, device_id: str, since: datetime) -> bool:
        db = self.session_factory()
        try:
            trip = handle_trip_rewind(db, self.detector, device_id, since)
            geofence = handle_geofence_rewind(db, device_id, since)
            speed = handle_speed_rewind(db, device_id, since)
        finally:
            db.close()

        if trip or geofence or speed:
            log_ws.log_from_thread(
                f"[PIPELINE] {device_id}: rewound to {since.isoformat()} for replay",
                msg_type="log"
            )
        return trip or geofence or speed

    def rewind(self, device_id: str, since: datetime) -> bool:
        """
        Roll a device back to its state just before `since`.

        Afterwards reports at or after `since` are no longer stale, so the
        window can be re-ingested with more complete data.

        Raises:
            SQLAlchemyError / TripfenceError: the state could not be rewound
        """
        with self.locks.get(device_id):
            return self._rewind_locked(device_id, since)

    def _process_device(self, reports: List[PositionReport], replay: bool = False) -> List[ProcessingResult]:
        if not replay:
            return [self.process(r) for r in reports]

        # Rewind and re-ingest under one hold of the lock
        first = reports[0]
        with self.locks.get(first.device_id):
            try:
                self._rewind_locked(first.device_id, first.timestamp)
            except (SQLAlchemyError, TripfenceError) as e:
                log_ws.log_from_thread(
                    f"[PIPELINE] {first.device_id}: rewind failed, replay skipped: {e}",
                    msg_type="error"
                )
                return [
                    ProcessingResult(device_id=r.device_id, timestamp=r.timestamp,
                                     stale=True, errors=[f"rewind: {e}"])
                    for r in reports
                ]
            return [self._process_locked(r) for r in reports]

    def process_batch(
        self,
        reports: Iterable[PositionReport],
        flush: bool = False,
        replay: bool = False
    ) -> BatchResult:
        """
        Process many reports, devices in parallel.

        Each device's reports are stable-sorted by timestamp and processed
        in that order on one worker; the summary is aggregated by device id
        so it does not depend on thread scheduling.

        Args:
            reports: Reports for any number of devices, any order
            flush: Close every open trip afterwards (end of a backfill window)
            replay: Rewind each device to just before its earliest report
                first, so an already processed window is re-derived
        """
        reports = list(reports)
        by_device: Dict[str, List[PositionReport]] = OrderedDict()
        for report in reports:
            by_device.setdefault(report.device_id, []).append(report)

        device_ids = sorted(by_device)
        for device_id in device_ids:
            by_device[device_id].sort(key=lambda r: r.timestamp)

        summary = BatchResult(received=len(reports), devices=len(device_ids))
        if not device_ids:
            return summary

        with ThreadPoolExecutor(max_workers=min(self.workers, len(device_ids))) as pool:
            futures = {d: pool.submit(self._process_device, by_device[d], replay) for d in device_ids}
            for device_id in device_ids:
                for result in futures[device_id].result():
                    summary.add(result)

        if flush:
            summary.trips.extend(self.flush())

        print(f"[PIPELINE] Batch: {summary.received} received, {summary.processed} processed, "
              f"{summary.rejected} rejected, {summary.stale} stale, {len(summary.trips)} trips, "
              f"{summary.entries} entries, {summary.exits} exits, {summary.speed_alerts} speed alerts")
        return summary

    def flush(self, device_id: Optional[str] = None) -> List[TripRecord]:
        """Close and persist open trips (one device or all)."""
        db = self.session_factory()
        try:
            if device_id is not None:
                with self.locks.get(device_id):
                    return handle_trip_flush(db, self.detector, device_id)

            trips = []
            devices = sorted(set(self.detector.open_device_ids()) | set(get_devices_with_open_trips(db)))
            for dev in devices:
                with self.locks.get(dev):
                    trips.extend(handle_trip_flush(db, self.detector, dev))
            return trips
        finally:
            db.close()

    def retry_pending_events(self, limit: int = 100) -> int:
        return self.publisher.retry_pending(limit=limit)
