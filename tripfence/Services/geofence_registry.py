# tripfence/Services/geofence_registry.py
"""
Geofence Registry
=================
Read-only, in-memory view of the geofence_zones table.

- Loads every zone (active and inactive) once and parses it into a
  ZoneDefinition with its shapely geometry prepared
- Inactive zones stay loaded so an EXIT for a zone deactivated while a
  vehicle was inside can still be named; the matcher skips them
- A zone whose row fails to parse is skipped and reported as a
  ZoneLookupFailure in the operator log; the rest of the set still loads
- If the table cannot be read at all, get_zones() raises
  ZoneLookupFailure and the caller treats the report as "no zone"

Zones are admin-managed; call invalidate() after changing them so the
next lookup reloads.
"""

import threading
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tripfence.Core import log_ws
from tripfence.Core.exceptions import ZoneLookupFailure
from tripfence.Models.geofence import GeofenceZone
from tripfence.Repositories.geofence import get_all_geofences
from tripfence.Schemas.geofence import ZoneDefinition

UNKNOWN_ZONE_NAME = 'Unknown Zone'


def zone_from_row(row: GeofenceZone) -> ZoneDefinition:
    """Parse one row. Raises ZoneLookupFailure if geometry or fields are corrupt."""
    try:
        return ZoneDefinition.model_validate(row, from_attributes=True)
    except ValueError as e:
        raise ZoneLookupFailure(f"Zone {row.id} is corrupt: {e}", zone_id=row.id) from e


class GeofenceRegistry:
    """Thread-safe cache of ZoneDefinition objects."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory
        self._lock = threading.Lock()
        self._zones: Optional[List[ZoneDefinition]] = None
        self._by_id: Dict[str, ZoneDefinition] = {}

    def _open_session(self) -> Session:
        if self._session_factory is None:
            from tripfence.DB.session import SessionLocal
            self._session_factory = SessionLocal
        return self._session_factory()

    # ==========================================================
    # CARGA
    # ==========================================================

    def load(self) -> List[ZoneDefinition]:
        """(Re)load every zone from the database."""
        try:
            db = self._open_session()
            try:
                rows = get_all_geofences(db, only_active=False)
            finally:
                db.close()
        except SQLAlchemyError as e:
            raise ZoneLookupFailure(f"Could not load geofence zones: {e}") from e

        zones = []
        for row in rows:
            try:
                zones.append(zone_from_row(row))
            except ZoneLookupFailure as zf:
                log_ws.log_from_thread(f"[GEOFENCE] Skipping zone: {zf}", msg_type="warning")

        self.set_zones(zones)
        print(f"[GEOFENCE] Registry loaded {len(zones)} zones ({len(rows) - len(zones)} skipped)")
        return zones

    def set_zones(self, zones: List[ZoneDefinition]):
        """Replace the cached set (used by load() and by offline backfills)."""
        with self._lock:
            self._zones = list(zones)
            self._by_id = {z.id: z for z in zones}

    def invalidate(self):
        with self._lock:
            self._zones = None
            self._by_id = {}

    # ==========================================================
    # CONSULTAS
    # ==========================================================

    def get_zones(self) -> List[ZoneDefinition]:
        """Cached zone set, loading on first use. May raise ZoneLookupFailure."""
        with self._lock:
            zones = self._zones
        if zones is None:
            zones = self.load()
        return zones

    def get_zone(self, zone_id: Optional[str]) -> Optional[ZoneDefinition]:
        if zone_id is None:
            return None
        with self._lock:
            loaded = self._zones is not None
            zone = self._by_id.get(zone_id)
        if zone is None and not loaded:
            try:
                self.load()
            except ZoneLookupFailure:
                return None
            with self._lock:
                zone = self._by_id.get(zone_id)
        return zone

    def zone_name(self, zone_id: Optional[str]) -> str:
        zone = self.get_zone(zone_id)
        return zone.name if zone else UNKNOWN_ZONE_NAME
