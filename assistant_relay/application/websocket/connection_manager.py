from typing import Dict, List, Optional
from fastapi import WebSocket
from fastapi.websockets import WebSocketState
import asyncio
import structlog

from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Tracks the user's open chat connections and routes events to them"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, connection_id: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            self.active_connections[connection_id] = websocket

        await self.send_event(
            connection_id,
            ConnectionEvent(status="connected", connection_id=connection_id)
        )

        logger.info("WebSocket connected", connection_id=connection_id)

    async def disconnect(self, connection_id: str):
        """Forget a connection, closing it if still open"""
        async with self._lock:
            ws = self.active_connections.pop(connection_id, None)

        if ws is not None:
            if ws.client_state == WebSocketState.CONNECTED:
                try:
                    await ws.close()
                except RuntimeError:
                    # Close raced with the client hanging up
                    pass
            logger.info("WebSocket disconnected", connection_id=connection_id)

    async def send_event(self, connection_id: str, event: BaseEvent) -> bool:
        """Send an event to one connection"""
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            logger.warning("Attempted to send to disconnected client", connection_id=connection_id)
            return False

        try:
            await websocket.send_json(event.model_dump(mode="json"))
            return True
        except Exception as e:
            logger.error("Failed to send event", connection_id=connection_id, error=str(e))
            await self.disconnect(connection_id)
            return False

    async def broadcast(self, event: BaseEvent) -> int:
        """Send an event to every open connection; returns how many received it"""
        connection_ids = list(self.active_connections.keys())
        results = await asyncio.gather(
            *(self.send_event(connection_id, event) for connection_id in connection_ids)
        )
        return sum(1 for delivered in results if delivered)

    async def send_error(self, connection_id: str, error_message: str, error_code: Optional[str] = None):
        """Send an error event to a connection"""
        await self.send_event(
            connection_id,
            ErrorEvent(payload={"message": error_message}, error_code=error_code)
        )

    def get_active_connections(self) -> List[str]:
        return list(self.active_connections.keys())
