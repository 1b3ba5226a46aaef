"""Base transport abstraction for client connections.

Defines the interface that transport implementations must provide so the
session coordinator can address connections individually without knowing
how messages travel.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from src.signaling.models import Identity
from src.signaling.transport.websocket_protocol import ServerMessage


class Connection(ABC):
    """One persistent, full-duplex, message-oriented client connection."""

    @abstractmethod
    async def send(self, message: ServerMessage) -> None:
        """Send a server event to the client.

        Args:
            message: Server event model, serialized with field aliases

        Raises:
            ConnectionError: If the connection is closed or broken
        """

    @abstractmethod
    async def receive_events(self) -> AsyncIterator[dict[str, Any]]:
        """Receive client events in arrival order.

        Yields decoded JSON objects. Frames that are not JSON objects are
        reported to the client by the transport and skipped. Iteration ends
        when the client disconnects.

        Yields:
            dict: Decoded client event
        """
        # Using yield to make this an async generator
        if False:
            yield {}

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and release transport resources."""

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Unique connection identifier, also used as the relay address."""

    @property
    @abstractmethod
    def identity(self) -> Identity | None:
        """Verified identity from authentication, if the client presented one."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the connection is still open."""


class Transport(ABC):
    """Transport server.

    Manages the lifecycle of a transport listener and hands out a Connection
    for every client that connects.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start accepting connections.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails (for network transports)
        """

    @abstractmethod
    async def stop(self) -> None:
        """Stop accepting connections and close the active ones."""

    @abstractmethod
    async def accept_connection(self) -> Connection:
        """Wait for the next client connection.

        Raises:
            RuntimeError: If the transport is not running
        """

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport is currently running."""

    @property
    @abstractmethod
    def connection_count(self) -> int:
        """Number of currently open connections."""
