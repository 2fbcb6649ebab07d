"""
Log WebSocket Management Module
================================

Real-time operator log streaming over WebSocket. Rejected reports, trip
closures, geofence crossings, speed alerts and publish failures are pushed
to every client connected to /ws/logs.

Message Format:
--------------
    {
        "msg_type": "log" | "error" | "warning",
        "message": "The log message content"
    }

Usage Example:
-------------
    from tripfence.Core import log_ws

    log_ws.log_from_thread("[TRIP] TRUCK-7 closed trip (12.4 km)")
    log_ws.log_from_thread("[VALIDATOR] TRUCK-7 rejected: (0, 0) sentinel", "warning")

Thread Safety:
-------------
log_from_thread() may be called from pipeline worker threads. Scheduling
onto the FastAPI loop is delegated to WebSocketManager.send_from_thread().
When no client is connected, or the loop is not running (batch jobs,
tests), the message goes to stdout only.
"""

from typing import Dict, Any
from fastapi import WebSocket
from .wsBase import WebSocketManager


def log_from_thread(message: str, msg_type: str = "log"):
    """
    Thread-safe entry point for broadcasting operator log messages.

    Args:
        message: The log message content to broadcast
        msg_type: Message severity level: "log", "warning" or "error"

    Behavior:
        - Always echoes to stdout
        - If clients are connected and the loop is running, the message is
          also queued for broadcast
    """
    print(message)

    if log_ws_manager.has_clients:
        payload: Dict[str, Any] = {"msg_type": msg_type, "message": str(message)}
        log_ws_manager.send_from_thread(payload)


class LogWebSocketManager(WebSocketManager):
    """
    Specialized WebSocket manager for real-time log streaming.

    Log clients are receive-only; anything they send is echoed to stdout.
    """

    async def handle_message(self, ws: WebSocket, message: str):
        print(f"[LOG-WS] Received message from client: {message}")


# ============================================================
# GLOBAL LOG WEBSOCKET MANAGER INSTANCE
# ============================================================
log_ws_manager = LogWebSocketManager()
