# tripfence/Services/event_handlers/__init__.py
"""
Event Handlers Module
=====================
Conectan cada etapa del motor con la persistencia.

Componentes:
- trip_handler: Segmentación de trips + upsert + estado del acumulador
- geofence_handler: Transiciones Outside/Inside + ENTRY/EXIT + outbox
- speed_handler: Alertas de velocidad con dedupe + outbox

Arquitectura:
- Handlers reciben inputs explícitos (session, report, zona)
- Cada handler confirma su propia transacción
- Error handling interno (no propagan excepciones): devuelven un
  Outcome con el error para que el pipeline lo cuente
- Los rewind (replay de una ventana) sí propagan: el pipeline aborta el
  replay de ese dispositivo
"""

from .trip_handler import handle_trip_detection, handle_trip_flush, handle_trip_rewind, TripOutcome
from .geofence_handler import handle_geofence_detection, handle_geofence_rewind, GeofenceOutcome
from .speed_handler import handle_speed_detection, handle_speed_rewind, SpeedOutcome

__all__ = [
    # Trip handler
    'handle_trip_detection',
    'handle_trip_flush',
    'handle_trip_rewind',
    'TripOutcome',

    # Geofence handler
    'handle_geofence_detection',
    'handle_geofence_rewind',
    'GeofenceOutcome',

    # Speed handler
    'handle_speed_detection',
    'handle_speed_rewind',
    'SpeedOutcome',
]
