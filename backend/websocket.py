"""
WebSocket Handler für Real-time Updates.

Der ConnectionManager hängt am EventBus der Engine. Events landen in einer
Queue und werden von EINER Pump-Task in Emissions-Reihenfolge verteilt.
"""

import asyncio
import json
import logging
from typing import Callable, Set
from fastapi import WebSocket

from automode import ActivityEvent, EventBus

log = logging.getLogger(__name__)


class ConnectionManager:
    """Verwaltet WebSocket Connections."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pump_task: asyncio.Task | None = None
        self._unsubscribe: Callable[[], None] | None = None

    async def connect(self, websocket: WebSocket) -> None:
        """Neue Connection akzeptieren."""
        await websocket.accept()
        async with self._lock:
            self.active_connections.add(websocket)

    async def disconnect(self, websocket: WebSocket) -> None:
        """Connection entfernen."""
        async with self._lock:
            self.active_connections.discard(websocket)

    async def broadcast(self, message: dict) -> None:
        """Nachricht an alle Clients senden."""
        if not self.active_connections:
            return

        json_message = json.dumps(message, default=str)
        disconnected = set()

        for connection in self.active_connections.copy():
            try:
                await connection.send_text(json_message)
            except Exception:
                disconnected.add(connection)

        # Disconnected Connections entfernen
        if disconnected:
            async with self._lock:
                self.active_connections -= disconnected

    async def send_to(self, websocket: WebSocket, message: dict) -> None:
        """Nachricht an spezifischen Client senden."""
        try:
            await websocket.send_text(json.dumps(message, default=str))
        except Exception:
            await self.disconnect(websocket)

    @property
    def connection_count(self) -> int:
        """Anzahl aktiver Connections."""
        return len(self.active_connections)

    # ===== EVENT BUS BRIDGE =====

    def attach(self, events: EventBus) -> None:
        """Am EventBus anmelden und die Pump-Task starten."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._unsubscribe = events.subscribe(self._on_event)
        self._pump_task = asyncio.create_task(self._pump(), name="ws-event-pump")

    async def detach(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._pump_task:
            self._pump_task.cancel()
            await asyncio.gather(self._pump_task, return_exceptions=True)
            self._pump_task = None

    def _on_event(self, event: ActivityEvent) -> None:
        # Kann aus jedem Thread kommen
        if self._loop and self._queue is not None:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event.to_dict())

    async def _pump(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                await self.broadcast({"type": "auto-mode:event", "event": payload})
            except Exception:
                log.exception("Broadcast of %s failed", payload.get("type"))
