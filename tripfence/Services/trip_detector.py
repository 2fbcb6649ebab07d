# tripfence/Services/trip_detector.py
"""
Trip Detector Service - Core logic for trip segmentation.

Responsibilities:
- Maintain one open-trip accumulator per device
- Start, extend and close trips from an ordered per-device report stream
- Discard closed trips that never moved (GPS jitter while idling)
- Emit finalized TripRecord objects keyed by (device_id, start_time)

Key Concepts:
- Only ignition-on reports start or extend a trip
- Idle gap: more than TRIP_IDLE_GAP_S between consecutive ignition-on
  reports closes the open trip and starts a new one (strict `>`)
- An ignition-off report closes the trip; the trip ends at the off report
- Unknown ignition closes the trip at its last ignition-on report
- Reports not newer than the last one seen for the device are stale and
  ignored, which makes redelivery and replays idempotent
- rewind() rolls a device back before a window so a backfill with more
  complete data re-derives (and overwrites) the trips in it

Decision Logic (per report):
1. Stale? → ignore
2. Ignition on?
   - No open trip → open one (zero distance)
   - Gap > idle threshold → close current + open new
   - Otherwise → extend (distance, max speed, speed average, end point)
3. Ignition off/unknown → close open trip (if any)
"""

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Dict, List, Tuple

from tripfence.Core.config import settings
from tripfence.Core import log_ws
from tripfence.Schemas.position import PositionReport
from tripfence.Schemas.trip import TripRecord
from tripfence.Services.geodesy import haversine_km


# ==========================================================
# ACUMULADOR DE TRIP ABIERTO
# ==========================================================

@dataclass
class TripAccumulator:
    """Running state of one device's open trip."""
    device_id: str
    start_time: datetime
    start_lat: float
    start_lon: float
    last_time: datetime
    last_lat: float
    last_lon: float
    running_distance_km: float = 0.0
    max_speed: float = 0.0
    speed_sum: float = 0.0
    sample_count: int = 0

    @classmethod
    def open(cls, report: PositionReport) -> "TripAccumulator":
        return cls(
            device_id=report.device_id,
            start_time=report.timestamp,
            start_lat=report.latitude,
            start_lon=report.longitude,
            last_time=report.timestamp,
            last_lat=report.latitude,
            last_lon=report.longitude,
            running_distance_km=0.0,
            max_speed=report.speed,
            speed_sum=report.speed,
            sample_count=1
        )

    def move_end(self, report: PositionReport):
        """Advance the trip end to report, adding the segment distance."""
        self.running_distance_km += haversine_km(
            self.last_lat, self.last_lon, report.latitude, report.longitude
        )
        self.last_time = report.timestamp
        self.last_lat = report.latitude
        self.last_lon = report.longitude

    def extend(self, report: PositionReport):
        self.move_end(report)
        self.max_speed = max(self.max_speed, report.speed)
        self.speed_sum += report.speed
        self.sample_count += 1


# ==========================================================
# CLASE: TRIP DETECTOR
# ==========================================================

class TripDetector:
    """
    Stateful trip segmentation engine.

    Not thread-safe per device: callers must serialize reports of the same
    device (the pipeline holds a per-device lock). Different devices touch
    different keys and can be processed concurrently; the open-trip map
    itself is guarded so it can be listed while workers change it.
    """

    def __init__(
        self,
        idle_gap_s: Optional[float] = None,
        min_distance_km: Optional[float] = None,
        source: Optional[str] = None,
        verbose: bool = False
    ):
        self.idle_gap_s = settings.TRIP_IDLE_GAP_S if idle_gap_s is None else idle_gap_s
        self.min_distance_km = (
            settings.TRIP_MIN_DISTANCE_KM if min_distance_km is None else min_distance_km
        )
        self.source = source or settings.TRIP_SOURCE_TAG
        self.verbose = verbose

        print(f"[TRIP_DETECTOR] Initialized with thresholds:")
        print(f"[TRIP_DETECTOR]   - Idle gap break: > {self.idle_gap_s} s")
        print(f"[TRIP_DETECTOR]   - Minimum trip distance: {self.min_distance_km} km")

        # Estado por dispositivo
        self.open_trips: Dict[str, TripAccumulator] = {}
        self.last_seen: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    # ==========================================================
    # FUNCIÓN PRINCIPAL: CONSUME
    # ==========================================================

    def consume(self, report: PositionReport) -> Optional[TripRecord]:
        """
        Feed one validated report for its device.

        Returns:
            TripRecord: when this report closed a trip that passed the
                minimum-distance filter
            None: otherwise (trip opened, extended, discarded, or report stale)
        """
        device_id = report.device_id

        if self.is_stale(report):
            if self.verbose:
                print(f"[TRIP_DETECTOR] {device_id}: stale report {report.timestamp.isoformat()} ignored")
            return None
        self.last_seen[device_id] = report.timestamp

        current = self.open_trips.get(device_id)

        # ============================================
        # IGNITION OFF / UNKNOWN → cerrar trip abierto
        # ============================================
        if report.ignition_on is not True:
            if current is None:
                return None
            self._pop_open(device_id)
            if report.ignition_on is False:
                current.move_end(report)
                reason = "ignition off"
            else:
                reason = "ignition unknown"
            return self._finalize(current, reason)

        # ============================================
        # IGNITION ON
        # ============================================
        if current is None:
            self._set_open(device_id, TripAccumulator.open(report))
            if self.verbose:
                print(f"[TRIP_DETECTOR] {device_id}: trip opened at {report.timestamp.isoformat()}")
            return None

        gap_s = (report.timestamp - current.last_time).total_seconds()
        if gap_s > self.idle_gap_s:
            closed = self._finalize(current, f"idle gap {gap_s:.3f}s > {self.idle_gap_s}s")
            self._set_open(device_id, TripAccumulator.open(report))
            return closed

        current.extend(report)
        return None

    def is_stale(self, report: PositionReport) -> bool:
        """True if report is not newer than the last report seen for its device."""
        last = self.last_seen.get(report.device_id)
        return last is not None and report.timestamp <= last

    # ==========================================================
    # CIERRE
    # ==========================================================

    def _finalize(self, acc: TripAccumulator, reason: str) -> Optional[TripRecord]:
        """Turn a closed accumulator into a TripRecord, or discard it."""
        if acc.running_distance_km < self.min_distance_km:
            if self.verbose:
                print(f"[TRIP_DETECTOR] {acc.device_id}: discarded trip from "
                      f"{acc.start_time.isoformat()} ({acc.running_distance_km:.3f} km < "
                      f"{self.min_distance_km} km, {reason})")
            return None

        duration = int((acc.last_time - acc.start_time).total_seconds())
        trip = TripRecord(
            device_id=acc.device_id,
            start_time=acc.start_time,
            end_time=acc.last_time,
            distance_km=round(acc.running_distance_km, 6),
            duration_seconds=duration,
            avg_speed=round(acc.speed_sum / acc.sample_count, 3) if acc.sample_count else 0.0,
            max_speed=acc.max_speed,
            start_lat=acc.start_lat,
            start_lon=acc.start_lon,
            end_lat=acc.last_lat,
            end_lon=acc.last_lon,
            point_count=acc.sample_count,
            source=self.source
        )
        log_ws.log_from_thread(
            f"[TRIP_DETECTOR] {acc.device_id}: trip closed ({reason}) "
            f"{trip.distance_km:.2f} km in {duration}s",
            msg_type="log"
        )
        return trip

    def flush(self, device_id: str) -> Optional[TripRecord]:
        """
        Close the device's open trip at its last ignition-on report.

        Used at the end of a backfill window. Same rules as an unknown
        ignition report: no extension, minimum-distance filter applies.
        """
        current = self._pop_open(device_id)
        if current is None:
            return None
        return self._finalize(current, "flush")

    def flush_all(self) -> List[TripRecord]:
        trips = []
        for device_id in self.open_device_ids():
            trip = self.flush(device_id)
            if trip:
                trips.append(trip)
        return trips

    # ==========================================================
    # MÉTODOS AUXILIARES
    # ==========================================================

    def _set_open(self, device_id: str, accumulator: TripAccumulator):
        with self._lock:
            self.open_trips[device_id] = accumulator

    def _pop_open(self, device_id: str) -> Optional[TripAccumulator]:
        with self._lock:
            return self.open_trips.pop(device_id, None)

    def open_device_ids(self) -> List[str]:
        """Sorted snapshot of the devices with an open trip."""
        with self._lock:
            return sorted(self.open_trips)

    def is_tracking(self, device_id: str) -> bool:
        """True once the device has in-memory state (seen or hydrated)."""
        return device_id in self.last_seen

    def rewind(self, device_id: str, since: datetime) -> bool:
        """
        Roll the device back to its state just before `since`.

        Used before re-ingesting a window: reports at or after `since` are
        no longer stale and re-derived trips land on their original
        (device_id, start_time) key.

        - Nothing seen at or after `since` → state is already pre-window
        - Otherwise the open trip (its last report is the last one seen,
          so it reaches into the window) is dropped and the window
          re-derives it, from `since` if it started earlier

        Returns:
            bool: True if the state changed
        """
        last = self.last_seen.get(device_id)
        if last is None or last < since:
            return False

        current = self._pop_open(device_id)
        if current is not None and current.start_time < since:
            log_ws.log_from_thread(
                f"[TRIP_DETECTOR] {device_id}: replay window {since.isoformat()} starts "
                f"inside the trip opened at {current.start_time.isoformat()}",
                msg_type="warning"
            )
        self.last_seen.pop(device_id, None)

        print(f"[TRIP_DETECTOR] {device_id}: rewound to {since.isoformat()}")
        return True

    def hydrate(
        self,
        device_id: str,
        accumulator: Optional[TripAccumulator],
        last_seen: Optional[datetime]
    ):
        """Restore a device's state loaded from durable storage."""
        if accumulator is not None:
            self._set_open(device_id, accumulator)
        else:
            self._pop_open(device_id)
        if last_seen is not None:
            self.last_seen[device_id] = last_seen

    def export_state(self, device_id: str) -> Tuple[Optional[TripAccumulator], Optional[datetime]]:
        """Copy of the device's open trip (if any) and last report time."""
        current = self.open_trips.get(device_id)
        return (replace(current) if current else None, self.last_seen.get(device_id))

    def get_open_trip(self, device_id: str) -> Optional[TripAccumulator]:
        current = self.open_trips.get(device_id)
        return replace(current) if current else None

    def reset_device_state(self, device_id: str):
        """
        Forget everything about a device.

        Called when persisting its state failed, so the next report
        re-hydrates from the database instead of trusting memory.
        """
        self._pop_open(device_id)
        self.last_seen.pop(device_id, None)
        print(f"[TRIP_DETECTOR] State reset for device: {device_id}")
