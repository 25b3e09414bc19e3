import asyncio
import json
import logging
from typing import Any, Dict, Set

from fastapi import WebSocket

from tracker.notify import NotificationPort

logger = logging.getLogger(__name__)


class WebSocketBroadcaster(NotificationPort):
    """Pushes ``{"type": ..., "data": ...}`` events to every connected dashboard socket."""

    def __init__(self) -> None:
        self._clients: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._clients.add(ws)
        logger.info("WebSocket client connected (%d open)", len(self._clients))

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(ws)
        logger.info("WebSocket client disconnected (%d open)", len(self._clients))

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        message = json.dumps({"type": event_type, "data": payload}, default=str)
        async with self._lock:
            clients = list(self._clients)
        stale = []
        for ws in clients:
            try:
                await ws.send_text(message)
            except Exception as e:
                logger.warning("Dropping WebSocket client after send failure: %s", e)
                stale.append(ws)
        if stale:
            async with self._lock:
                for ws in stale:
                    self._clients.discard(ws)
