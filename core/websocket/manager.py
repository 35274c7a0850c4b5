"""
BLOOMFIT WebSocket Connection Manager

Tracks the clients watching the exercise stream, enforces the connection
limit and drops dead sockets on a heartbeat.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from core.config import settings
from core.scheduling import PeriodicTask

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """Control messages exchanged on the stream socket."""
    PING = "PING"
    PONG = "PONG"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


@dataclass
class WebSocketMessage:
    """Structured control message."""
    type: MessageType
    payload: Any = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "payload": self.payload, "timestamp": self.timestamp}

    @classmethod
    def from_json(cls, raw: str) -> "WebSocketMessage":
        data = json.loads(raw)
        return cls(type=MessageType(data.get("type")), payload=data.get("payload"))


@dataclass
class ConnectedClient:
    websocket: WebSocket
    client_id: str
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    messages_sent: int = 0

    def is_connected(self) -> bool:
        return self.websocket.client_state == WebSocketState.CONNECTED


class ConnectionManager:
    """
    Manages stream WebSocket connections.

    Features:
    - Connection limit (closes with 1013 when at capacity)
    - JSON send with automatic cleanup of broken sockets
    - PING/PONG handling
    - Heartbeat that drops disconnected clients
    """

    def __init__(self, max_connections: Optional[int] = None):
        self.max_connections = max_connections or settings.WS_MAX_CONNECTIONS
        self._connections: Dict[str, ConnectedClient] = {}
        self._heartbeat: Optional[PeriodicTask] = None
        self._counter = 0

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> ConnectedClient:
        """Accept a connection. Raises ConnectionError when at capacity."""
        if self.connection_count >= self.max_connections:
            await websocket.close(code=1013, reason="Server at capacity")
            raise ConnectionError("Maximum connections reached")

        await websocket.accept()
        self._counter += 1
        client = ConnectedClient(websocket=websocket, client_id=f"stream_{self._counter}")
        self._connections[client.client_id] = client

        logger.info(f"✅ Stream client connected: {client.client_id}")
        await self.send(client.client_id, WebSocketMessage(
            type=MessageType.CONNECTED,
            payload={"client_id": client.client_id}
        ).to_dict())
        return client

    def disconnect(self, client_id: str) -> None:
        if self._connections.pop(client_id, None) is not None:
            logger.info(f"👋 Stream client disconnected: {client_id}")

    async def send(self, client_id: str, data: Dict[str, Any]) -> bool:
        """Send one JSON message. Broken sockets are disconnected."""
        client = self._connections.get(client_id)
        if client is None or not client.is_connected():
            return False

        try:
            await client.websocket.send_json(data)
        except Exception as e:
            logger.error(f"Failed to send to {client_id}: {e}")
            self.disconnect(client_id)
            return False

        client.last_activity = datetime.now(timezone.utc)
        client.messages_sent += 1
        return True

    async def handle_message(self, client_id: str, raw_message: str) -> None:
        """Process an incoming control message."""
        try:
            message = WebSocketMessage.from_json(raw_message)
        except (json.JSONDecodeError, ValueError, AttributeError):
            await self.send(client_id, WebSocketMessage(
                type=MessageType.ERROR,
                payload={"error": "Invalid message"}
            ).to_dict())
            return

        client = self._connections.get(client_id)
        if client is not None:
            client.last_activity = datetime.now(timezone.utc)

        if message.type == MessageType.PING:
            await self.send(client_id, WebSocketMessage(type=MessageType.PONG).to_dict())

    async def _check_connections(self) -> None:
        for client_id, client in list(self._connections.items()):
            if not client.is_connected():
                self.disconnect(client_id)

    def start_heartbeat(self, interval: Optional[float] = None) -> None:
        interval = interval or settings.WS_HEARTBEAT_INTERVAL
        if self._heartbeat is None or not self._heartbeat.running:
            self._heartbeat = PeriodicTask(
                self._check_connections, interval, name="ws-heartbeat", run_immediately=False
            ).start()
            logger.info(f"💓 Heartbeat started (interval: {interval}s)")

    def stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    def get_stats(self) -> dict:
        return {
            "total_connections": self.connection_count,
            "max_connections": self.max_connections,
            "messages_sent": sum(c.messages_sent for c in self._connections.values()),
        }


# Global connection manager instance
connection_manager = ConnectionManager()
