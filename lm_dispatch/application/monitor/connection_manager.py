from typing import Dict, Optional
from fastapi import WebSocket
import asyncio
import itertools
from datetime import datetime
import structlog

from .schema.events import BaseEvent, ErrorEvent

logger = structlog.get_logger(__name__)


class MonitorConnectionManager:
    """Manages monitor WebSocket connections and broadcasts"""

    def __init__(self):
        self.active_connections: Dict[int, WebSocket] = {}
        self.connection_metadata: Dict[int, Dict] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> int:
        """Accept a new WebSocket connection and return its client id"""
        await websocket.accept()

        async with self._lock:
            client_id = next(self._ids)
            self.active_connections[client_id] = websocket
            self.connection_metadata[client_id] = {
                "connected_at": datetime.utcnow(),
                "last_activity": datetime.utcnow()
            }

        logger.info("Monitor connected", client_id=client_id)
        return client_id

    async def disconnect(self, client_id: int):
        """Forget a connection, closing it if still open"""
        async with self._lock:
            ws = self.active_connections.pop(client_id, None)
            self.connection_metadata.pop(client_id, None)

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Error closing WebSocket", client_id=client_id, error=str(e))

        logger.info("Monitor disconnected", client_id=client_id)

    async def send_event(self, client_id: int, event: BaseEvent) -> bool:
        """Send an event to a specific client"""
        websocket = self.active_connections.get(client_id)
        if websocket is None:
            logger.warning("Attempted to send to disconnected monitor", client_id=client_id)
            return False

        try:
            await websocket.send_json(event.model_dump(mode="json"))

            if client_id in self.connection_metadata:
                self.connection_metadata[client_id]["last_activity"] = datetime.utcnow()

            return True

        except Exception as e:
            logger.error("Failed to send event", client_id=client_id, error=str(e))
            await self.disconnect(client_id)
            return False

    async def broadcast(self, event: BaseEvent):
        """Send an event to every connected monitor"""
        client_ids = list(self.active_connections.keys())
        tasks = [self.send_event(client_id, event) for client_id in client_ids]
        await asyncio.gather(*tasks, return_exceptions=True)

    async def send_error(self, client_id: int, error_message: str, error_code: Optional[str] = None):
        """Send an error event to a client"""
        error_event = ErrorEvent(
            payload={"message": error_message},
            error_code=error_code
        )
        await self.send_event(client_id, error_event)

    async def disconnect_all(self):
        for client_id in list(self.active_connections.keys()):
            await self.disconnect(client_id)
