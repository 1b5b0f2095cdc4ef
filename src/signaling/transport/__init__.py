"""Transport layer for signaling client connections.

Provides the connection abstraction used by signaling sessions and the
WebSocket server that produces connections.
"""

from src.signaling.transport.base import ClientConnection, Transport
from src.signaling.transport.websocket_transport import (
    WebSocketConnection,
    WebSocketTransport,
)

__all__ = [
    "ClientConnection",
    "Transport",
    "WebSocketConnection",
    "WebSocketTransport",
]
