"""
BLOOMFIT WebSocket Module
"""

from .manager import (
    ConnectionManager,
    connection_manager,
    WebSocketMessage,
    MessageType,
    ConnectedClient,
)

__all__ = [
    'ConnectionManager',
    'connection_manager',
    'WebSocketMessage',
    'MessageType',
    'ConnectedClient',
]
