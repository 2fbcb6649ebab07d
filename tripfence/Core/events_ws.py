# tripfence/Core/events_ws.py
"""
Domain Event WebSocket Manager
Manages WebSocket connections receiving geofence and speed events live.

Features:
- Thread-safe broadcasting of published domain events
- Optional per-client device filter ("subscribe:<device_id>")

Integration:
- Used by the WebSocket event sink in Services/event_publisher.py
- Broadcasts to dashboard clients connected to /ws/events

Usage:
    from tripfence.Core.events_ws import event_from_thread

    event_from_thread({
        "device_id": "TRUCK-001",
        "event_type": "geofence_enter",
        "severity": "info",
        ...
    })
"""

import json
from typing import Dict, Any, Optional, Set

from fastapi import WebSocket

from .wsBase import WebSocketManager


class EventWebSocketManager(WebSocketManager):
    """
    Specialized WebSocket manager for domain events.

    Extends WebSocketManager with a per-client device filter so a
    dashboard focused on one vehicle only receives that vehicle's events.
    """

    def __init__(self):
        super().__init__()
        self.filters: Dict[WebSocket, Set[str]] = {}

    def unregister(self, ws: WebSocket):
        with self._lock:
            self.filters.pop(ws, None)
        super().unregister(ws)

    async def handle_message(self, ws: WebSocket, message: str):
        """
        Handle client commands.

        Supported:
            subscribe:<device_id>    only receive events for that device (repeatable)
            unsubscribe              clear the filter, receive everything
        """
        if message.startswith("subscribe:"):
            device_id = message.split(":", 1)[1].strip()
            if device_id:
                with self._lock:
                    self.filters.setdefault(ws, set()).add(device_id)
        elif message.strip() == "unsubscribe":
            with self._lock:
                self.filters.pop(ws, None)
        else:
            print(f"[EVENTS-WS] Unknown command: {message}")

    def _wants(self, ws: WebSocket, device_id: Optional[str]) -> bool:
        wanted = self.filters.get(ws)
        return not wanted or device_id in wanted

    async def broadcast(self, message: Dict[str, Any]):
        to_remove = []
        device_id = message.get("device_id")

        with self._lock:
            targets = [ws for ws in self.clients if self._wants(ws, device_id)]

        for ws in targets:
            try:
                await ws.send_text(json.dumps(message, default=str))
            except Exception:
                to_remove.append(ws)

        for ws in to_remove:
            self.unregister(ws)


# ==========================================================
# Global Singleton Instance
# ==========================================================
events_ws_manager = EventWebSocketManager()


# ==========================================================
# Thread-Safe Public API
# ==========================================================
def event_from_thread(data: Dict[str, Any]) -> bool:
    """
    Thread-safe entry point to broadcast a domain event.

    Returns:
        bool: True if a broadcast was scheduled
    """
    return events_ws_manager.send_from_thread(data)
