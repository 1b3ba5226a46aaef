"""Transport layer for signaling client connections.

Provides abstraction over the client transport so the session coordinator
can address connections individually and by room.
"""

from src.signaling.transport.base import Connection, Transport
from src.signaling.transport.websocket_transport import (
    WebSocketConnection,
    WebSocketTransport,
)

__all__ = [
    "Connection",
    "Transport",
    "WebSocketConnection",
    "WebSocketTransport",
]
