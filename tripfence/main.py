"""
tripfence/main.py
=====================================================
FastAPI Application for the Telemetry Derivation Engine
=====================================================

This module is the entry point of the service that turns raw vehicle
position reports into trips and geofence/speed domain events.

Architecture Overview:
---------------------
- REST API: position ingestion (single and batch) plus read endpoints for
  trips, geofence events and per-device geofence state
- WebSocket: operator logs on /ws/logs, live domain events on /ws/events
- Background Services: periodic re-publishing of pending outbox events

Processing happens in the PositionPipeline (Services/pipeline.py); this
module only wires it to HTTP.
"""

# Environment Configuration
from dotenv import load_dotenv
import os
load_dotenv()

# FastAPI Core
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from pathlib import Path
import asyncio

from tripfence.Core.config import settings
from tripfence.Controller.Routes import positions, trips, geofences
from tripfence.Controller.deps import get_pipeline

# WebSocket Management
from tripfence.Core import log_ws
from tripfence.Core.events_ws import events_ws_manager

# Database
from tripfence.DB.session import SessionLocal
from tripfence.DB.database import check_db_connection

# Geofence Management
from tripfence.Core.exceptions import ZoneLookupFailure
from tripfence.Repositories.geofence import count_geofences
from tripfence.Services.geofence_importer import GeofenceImporter


# ============================================================
# CORS CONFIGURATION
# ============================================================
def _parse_origins(csv_value: str):
    """
    Parse comma-separated origin values into a list for CORS configuration.

    Returns:
        Tuple of (is_wildcard: bool, origins: list)

    Examples:
        "*" → (True, ["*"])
        "https://app.com,https://admin.app.com" → (False, ["https://app.com", "https://admin.app.com"])
        "" → (False, [])
    """
    if not csv_value:
        return (False, [])

    csv_value = csv_value.strip()

    if csv_value == "*":
        return (True, ["*"])

    origins = [origin.strip() for origin in csv_value.split(",") if origin.strip()]
    return (False, origins)


_http_allow_all, _http_origins = _parse_origins(
    os.getenv("HTTP_ALLOWED_ORIGINS", "*")
)
_ws_allow_all, _ws_origins = _parse_origins(
    os.getenv("WS_ALLOWED_ORIGINS", "*")
)


# ============================================================
# BACKGROUND SERVICES
# ============================================================
async def _outbox_retry_loop(interval_s: int):
    """Re-publish pending outbox rows every interval_s seconds."""
    pipeline = get_pipeline()
    while True:
        await asyncio.sleep(interval_s)
        try:
            await asyncio.to_thread(pipeline.retry_pending_events)
        except Exception as e:
            log_ws.log_from_thread(f"[PUBLISHER] Outbox retry failed: {e}", msg_type="error")


def _seed_geofences():
    """Import GEOFENCE_SEED_FILE when the zone table is empty."""
    if not settings.GEOFENCE_SEED_FILE:
        return

    seed_file = Path(settings.GEOFENCE_SEED_FILE)
    if not seed_file.exists():
        print(f"[STARTUP] ⚠️  Geofence seed file not found at {seed_file}, skipping import")
        return

    with SessionLocal() as db:
        count = count_geofences(db, only_active=False)
        if count > 0:
            print(f"[STARTUP] ✅ Database contains {count} geofences, skipping import")
            return

        print("[STARTUP] 📄 Empty zone table detected, importing geofences...")
        importer = GeofenceImporter(registry=get_pipeline().registry)
        created, updated, skipped, failed = importer.import_from_file(db, str(seed_file), mode='skip')
        print(f"[STARTUP] ✅ Geofence import completed:")
        print(f"[STARTUP]    • Created: {created}")
        print(f"[STARTUP]    • Skipped: {skipped}")
        print(f"[STARTUP]    • Failed: {failed}")


# ============================================================
# APPLICATION LIFESPAN MANAGEMENT
# ============================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Startup Sequence:
        1. Configure event loop for WebSocket managers
        2. Check database connectivity
        3. Seed geofences if configured and the table is empty
        4. Warm the zone registry
        5. Start the outbox retry loop

    Shutdown Sequence:
        - Retry loop is cancelled
        - WebSocket connections are dropped with the loop
    """

    # ========================================
    # STARTUP: Configure WebSocket Event Loop
    # ========================================
    loop = asyncio.get_running_loop()
    log_ws.log_ws_manager.set_main_loop(loop)
    events_ws_manager.set_main_loop(loop)

    # ========================================
    # STARTUP: Database
    # ========================================
    if check_db_connection():
        print("[STARTUP] ✅ Database reachable")
    else:
        print("[STARTUP] ❌ Database unreachable, requests will fail until it is back")

    _seed_geofences()

    try:
        get_pipeline().registry.load()
    except ZoneLookupFailure as zf:
        print(f"[STARTUP] ⚠️  Zone registry not loaded: {zf}")

    # ========================================
    # STARTUP: Background Services
    # ========================================
    retry_task = None
    if settings.EVENT_RETRY_INTERVAL_S > 0:
        retry_task = asyncio.create_task(_outbox_retry_loop(settings.EVENT_RETRY_INTERVAL_S))
        print(f"[SERVICES] Outbox retry every {settings.EVENT_RETRY_INTERVAL_S}s")

    print("[STARTUP] ✅ Application initialization complete")

    yield

    # ========================================
    # SHUTDOWN: Cleanup
    # ========================================
    if retry_task:
        retry_task.cancel()
    print("[SHUTDOWN] 🛑 Application shutdown initiated")


# ============================================================
# APPLICATION INSTANCE CREATION
# ============================================================
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.PROJECT_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_http_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================
# HEALTH CHECK ENDPOINT
# ============================================================
@app.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
        dict: {"status": "ok" | "degraded", "database": bool}
    """
    db_ok = check_db_connection()
    return {"status": "ok" if db_ok else "degraded", "database": db_ok}


# ============================================================
# REST API ROUTE REGISTRATION
# ============================================================
app.include_router(positions.router, prefix="/positions", tags=["positions"])
app.include_router(trips.router, prefix="/trips", tags=["trips"])
app.include_router(geofences.router, tags=["geofences"])


# ============================================================
# WEBSOCKET ENDPOINTS
# ============================================================
async def socket_handler(ws: WebSocket, manager):
    """
    Generic WebSocket connection handler with origin validation.

    1. Validates the request origin against allowed WebSocket origins
    2. Registers the connection with the manager
    3. Forwards incoming text to manager.handle_message()
    4. Unregisters on disconnect
    """
    origin = ws.headers.get("origin")

    if (not _ws_allow_all) and (origin not in _ws_origins):
        print(f"[WS] ❌ Connection rejected - unauthorized origin: {origin}")
        await ws.close(code=403)
        return

    await manager.register(ws)

    try:
        while True:
            message = await ws.receive_text()
            await manager.handle_message(ws, message)
    except Exception as e:
        print(f"[WS] Connection closed: {e}")
    finally:
        manager.unregister(ws)


@app.websocket("/ws/logs")
async def websocket_logs(ws: WebSocket):
    """
    Operator log stream.

    Message Format:
        {"msg_type": "log" | "warning" | "error", "message": "..."}
    """
    await socket_handler(ws, log_ws.log_ws_manager)


@app.websocket("/ws/events")
async def websocket_events(ws: WebSocket):
    """
    Live domain events (geofence_enter, geofence_exit, geofence_speed_limit).

    Send "subscribe:<device_id>" to receive a single device's events.
    """
    await socket_handler(ws, events_ws_manager)


# ============================================================
# API INFORMATION ENDPOINT
# ============================================================
@app.get("/api")
def api_info():
    """API information and enabled features."""
    return {
        "status": "online",
        "version": settings.PROJECT_VERSION,
        "features": {
            "websockets": ["/ws/logs", "/ws/events"],
            "webhook_sink": bool(settings.EVENT_WEBHOOK_URL),
            "exit_on_zone_switch": settings.GEOFENCE_EMIT_EXIT_ON_SWITCH
        },
        "endpoints": {
            "positions": "/positions/*",
            "trips": "/trips/",
            "geofences": "/geofences/*",
            "geofence_events": "/geofence-events",
            "geofence_status": "/geofence-status/{device_id}",
            "health": "/health"
        }
    }
