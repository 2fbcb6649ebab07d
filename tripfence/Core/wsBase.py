"""
WebSocket Base Manager Module
==============================

Thread-safe foundation for WebSocket connection management. Both live
streams of the service (operator logs and domain events) are built on
this class.

Architecture:
------------
- Thread-Safe Operations: All client list modifications protected by a lock
- Lifecycle Management: Registration on connect, cleanup on disconnect
- Broadcasting: Message distribution to all connected clients
- Event Loop Integration: send_from_thread() lets pipeline worker threads
  schedule broadcasts on FastAPI's main loop

Thread Safety Considerations:
----------------------------
The manager is touched from several places at once:
- FastAPI async handlers (WebSocket accept/send)
- Pipeline worker threads (batch processing, publisher retries)
- Multiple concurrent WebSocket connections

All client list operations are protected by threading.Lock.

Usage Example:
-------------
    class CustomWebSocketManager(WebSocketManager):
        async def handle_message(self, ws: WebSocket, message: str):
            print(f"Received: {message}")

    manager = CustomWebSocketManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager.set_main_loop(asyncio.get_running_loop())
        yield

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        await manager.register(ws)
        try:
            while True:
                message = await ws.receive_text()
                await manager.handle_message(ws, message)
        finally:
            manager.unregister(ws)
"""

from fastapi import WebSocket
import asyncio
from typing import List, Optional, Dict, Any
import json
import threading


class WebSocketManager:
    """
    Base WebSocket manager for handling multiple concurrent client connections.

    Attributes:
        clients (List[WebSocket]): Currently active WebSocket connections
        main_loop (Optional[asyncio.AbstractEventLoop]): FastAPI's main event loop
        _lock (threading.Lock): Thread synchronization primitive for client list

    Lifecycle:
        1. Instantiate manager
        2. Call set_main_loop() during application startup
        3. Call register() when client connects
        4. Call broadcast() / send_from_thread() to send messages
        5. Call unregister() when client disconnects (automatic on error)
    """

    def __init__(self):
        self.clients: List[WebSocket] = []
        """List of currently active WebSocket client connections."""

        self.main_loop: Optional[asyncio.AbstractEventLoop] = None
        """Reference to FastAPI's main async event loop for thread-safe scheduling."""

        self._lock = threading.Lock()
        """Thread lock protecting access to self.clients across concurrent operations."""

    def set_main_loop(self, loop: Optional[asyncio.AbstractEventLoop]):
        """
        Register FastAPI's main event loop for thread-safe async operations.

        Must be called during application startup (lifespan) to enable
        send_from_thread(). Passing None detaches the loop on shutdown.
        """
        self.main_loop = loop

    async def register(self, ws: WebSocket):
        """
        Accept and register a new WebSocket client connection.

        The client is added BEFORE accept() so no broadcast scheduled during
        the handshake is lost. If accept() fails the client is removed and
        the error re-raised.
        """
        with self._lock:
            if ws not in self.clients:
                self.clients.append(ws)

        try:
            await ws.accept()
            print(f"[WSBase] Client registered. Total clients: {len(self.clients)}")
        except Exception:
            # Handshake failed - ensure cleanup before propagating error
            self.unregister(ws)
            raise

    def unregister(self, ws: WebSocket):
        """
        Remove a WebSocket client from the active connections list.

        Idempotent: calling it twice for the same socket is safe. Does not
        close the socket itself.
        """
        with self._lock:
            if ws in self.clients:
                self.clients.remove(ws)
                print(f"[WSBase] Client unregistered. Total clients: {len(self.clients)}")

    @property
    def has_clients(self) -> bool:
        """True if at least one client is connected."""
        with self._lock:
            return len(self.clients) > 0

    async def broadcast(self, message: Dict[str, Any]):
        """
        Send a JSON message to every connected client.

        The client list is snapshotted under the lock and the lock is
        released before any I/O. Clients whose send fails are unregistered
        in one batch afterwards.
        """
        to_remove = []

        with self._lock:
            current_clients = list(self.clients)

        for ws in current_clients:
            try:
                await ws.send_text(json.dumps(message, default=str))
            except Exception:
                to_remove.append(ws)

        for ws in to_remove:
            self.unregister(ws)

    def send_from_thread(self, message: Dict[str, Any]) -> bool:
        """
        Schedule a broadcast on the main event loop from any thread.

        Fire and forget: the coroutine is scheduled with
        asyncio.run_coroutine_threadsafe() and not awaited.

        Returns:
            bool: True if the broadcast was scheduled, False if there were
            no clients or no event loop registered yet.
        """
        if not self.has_clients:
            return False

        if self.main_loop is None or self.main_loop.is_closed():
            print("[WSBase] Main loop not set. Message not sent.")
            return False

        asyncio.run_coroutine_threadsafe(self.broadcast(message), self.main_loop)
        return True

    async def handle_message(self, ws: WebSocket, message: str):
        """
        Handle an incoming client message.

        Default implementation ignores it. Subclasses override this to
        support client commands.
        """
        pass
