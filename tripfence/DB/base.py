"""
tripfence/DB/base.py
==========================
SQLAlchemy Model Registry
==========================

Central registry for all SQLAlchemy models. Importing every model here
ensures they are registered with Base.metadata before create_all() or an
Alembic autogenerate run.

Models Registered:
-----------------
- Trip: Finalized trips derived from ignition-on position streams
- GeofenceZone: Zone geometry and configuration (reference data)
- GeofenceStatus: Current inside/outside state per device
- GeofenceEvent: Append-only ENTRY/EXIT log
- ProactiveEvent: Domain event outbox for the event sink
- SpeedAlertMarker: Last speed alert per (device, zone) for dedupe
- OpenTripState: Durable trip accumulator per device

Important:
----------
Any new model classes MUST be imported here.
"""

from tripfence.DB.base_class import Base

# ============================================================
# MODEL IMPORTS - DO NOT REMOVE
# ============================================================
from tripfence.Models.trip import Trip
from tripfence.Models.geofence import GeofenceZone
from tripfence.Models.geofence_status import GeofenceStatus
from tripfence.Models.geofence_event import GeofenceEvent
from tripfence.Models.proactive_event import ProactiveEvent
from tripfence.Models.speed_alert import SpeedAlertMarker
from tripfence.Models.open_trip import OpenTripState
