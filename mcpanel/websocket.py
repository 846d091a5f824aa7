"""
mcpanel - WebSocket Manager
=============================
Pushes live process events to the browser console.

Message types (server -> client):
    - "status"  : A managed process changed state (starting/online/...)
    - "console" : One new console line from a server

Message format:
    {
        "type": "console",
        "data": {"server": "survival", "line": "[Server thread/INFO]: Done"},
        "timestamp": "2026-02-08T12:00:00+00:00"
    }

Usage:
    backend.add_listener(ws_manager.send_process_event)

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket):
        await ws_manager.connect(websocket)
        try:
            while True:
                await websocket.receive_text()  # Keep connection alive
        except WebSocketDisconnect:
            ws_manager.disconnect(websocket)
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketManager:
    """
    Manages browser WebSocket connections and message broadcasting.

    A simple in-memory manager for a single-process deployment. Every
    connected client receives every event.

    Attributes:
        active_connections: Set of currently connected WebSocket instances.
    """

    def __init__(self):
        self.active_connections: set[WebSocket] = set()

    @property
    def client_count(self) -> int:
        return len(self.active_connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        self.active_connections.discard(websocket)

    async def broadcast(self, message: dict[str, Any]) -> None:
        """
        Send a message to all connected clients.

        Adds a timestamp if missing. Clients that fail to receive are
        dropped from the active set.
        """
        if "timestamp" not in message:
            message["timestamp"] = datetime.now(timezone.utc).isoformat()

        payload = json.dumps(message, ensure_ascii=False)
        disconnected = set()

        for ws in list(self.active_connections):
            try:
                await ws.send_text(payload)
            except Exception as e:
                logger.debug("Dropping WebSocket client: %s", e)
                disconnected.add(ws)

        self.active_connections -= disconnected

    async def send_process_event(self, event: dict[str, Any]) -> None:
        """Listener for the process backend: forwards status and console events."""
        if not self.active_connections:
            return
        data = {k: v for k, v in event.items() if k not in ("type", "name")}
        data["server"] = event.get("name")
        await self.broadcast({"type": event.get("type", "status"), "data": data})
