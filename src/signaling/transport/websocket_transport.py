"""WebSocket transport implementation.

Provides WebSocket-based client connections for the signaling server. Each
browser tab holds one connection; its connection id doubles as the address
peers use to relay offers, answers and ICE candidates.
"""

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from http import HTTPStatus
from typing import Any

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.http11 import Request, Response
from websockets.protocol import State

from src.signaling.auth import AuthenticationError, Authenticator
from src.signaling.models import Identity
from src.signaling.transport.base import Connection, Transport
from src.signaling.transport.websocket_protocol import (
    ErrorMessage,
    ServerMessage,
    encode_message,
)

logger = logging.getLogger(__name__)


class WebSocketConnection(Connection):
    """WebSocket-based client connection.

    Implements the Connection interface for WebSocket clients, handling JSON
    framing of signaling events.
    """

    def __init__(
        self,
        websocket: ServerConnection,
        connection_id: str,
        identity: Identity | None = None,
        send_timeout_s: float = 5.0,
    ) -> None:
        """Initialize WebSocket connection.

        Args:
            websocket: WebSocket connection
            connection_id: Unique connection identifier
            identity: Verified identity from the handshake, if any
            send_timeout_s: Timeout for a single outbound send
        """
        self._websocket = websocket
        self._connection_id = connection_id
        self._identity = identity
        self._send_timeout_s = send_timeout_s
        self._connected = True

        logger.info(
            "WebSocket connection initialized",
            extra={
                "connection_id": connection_id,
                "remote": websocket.remote_address,
                "user_id": identity.user_id if identity else None,
            },
        )

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def identity(self) -> Identity | None:
        return self._identity

    @property
    def is_connected(self) -> bool:
        """Check if the connection is still open."""
        return self._connected and self._websocket.state == State.OPEN

    async def send(self, message: ServerMessage) -> None:
        """Send a server event to the client.

        Raises:
            ConnectionError: If the connection is closed, broken, or the send
                does not complete within the send timeout
        """
        if not self.is_connected:
            raise ConnectionError("WebSocket connection is closed")

        try:
            await asyncio.wait_for(
                self._websocket.send(encode_message(message)), timeout=self._send_timeout_s
            )
        except websockets.exceptions.ConnectionClosed as e:
            self._connected = False
            raise ConnectionError(f"WebSocket connection closed: {e}") from e
        except TimeoutError as e:
            raise ConnectionError(
                f"WebSocket send timed out after {self._send_timeout_s}s"
            ) from e

    async def receive_events(self) -> AsyncIterator[dict[str, Any]]:
        """Receive client events in arrival order.

        Yields:
            dict: Decoded JSON object from the client
        """
        try:
            async for raw_message in self._websocket:
                if not isinstance(raw_message, str):
                    logger.warning(
                        "Received non-text WebSocket message, skipping",
                        extra={"connection_id": self._connection_id},
                    )
                    await self._send_error("Binary frames are not supported", "INVALID_MESSAGE")
                    continue

                try:
                    data = json.loads(raw_message)
                except json.JSONDecodeError as e:
                    logger.warning(
                        "Invalid JSON message",
                        extra={"connection_id": self._connection_id, "error": str(e)},
                    )
                    await self._send_error(f"Invalid JSON: {e}", "INVALID_MESSAGE")
                    continue

                if not isinstance(data, dict):
                    await self._send_error("Messages must be JSON objects", "INVALID_MESSAGE")
                    continue

                yield data

        except websockets.exceptions.ConnectionClosed:
            logger.info(
                "WebSocket connection closed by client",
                extra={"connection_id": self._connection_id},
            )
        finally:
            self._connected = False

    async def _send_error(self, error_msg: str, code: str = "INTERNAL_ERROR") -> None:
        """Send error message to client, ignoring a closed connection."""
        try:
            await self.send(ErrorMessage(message=error_msg, code=code))
        except ConnectionError:
            pass

    async def close(self) -> None:
        """Close the WebSocket connection."""
        if not self._connected:
            return

        logger.info("Closing WebSocket connection", extra={"connection_id": self._connection_id})

        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning(
                "Error during connection close",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )
        finally:
            self._connected = False


class WebSocketTransport(Transport):
    """WebSocket transport server.

    Manages WebSocket server lifecycle, authenticates handshakes, and creates
    WebSocketConnection instances for incoming clients.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8080,
        max_connections: int = 500,
        max_message_bytes: int = 2**20,
        send_timeout_s: float = 5.0,
        allowed_origins: list[str] | None = None,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            authenticator: Verifies handshake tokens
            host: Bind host address
            port: Bind port (0 picks a free port)
            max_connections: Maximum concurrent connections
            max_message_bytes: Maximum inbound message size
            send_timeout_s: Timeout for a single outbound send
            allowed_origins: Accepted Origin headers; empty or None accepts any
        """
        self._authenticator = authenticator
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._send_timeout_s = send_timeout_s
        self._allowed_origins = allowed_origins or []
        self._server: Server | None = None
        self._running = False
        self._connection_queue: asyncio.Queue[WebSocketConnection] = asyncio.Queue()
        self._connections: dict[str, WebSocketConnection] = {}

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "max_connections": max_connections},
        )

    @property
    def transport_type(self) -> str:
        return "websocket"

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def port(self) -> int:
        """Bound port (resolves port 0 after start)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the transport is already running or fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info("Starting WebSocket server", extra={"host": self._host, "port": self._port})

        # Non-browser clients send no Origin header.
        origins: list[str | None] | None = None
        if self._allowed_origins:
            origins = [*self._allowed_origins, None]

        try:
            self._server = await serve(
                self._handle_connection,
                self._host,
                self._port,
                process_request=self._process_request,
                origins=origins,  # type: ignore[arg-type]
                max_size=self._max_message_bytes,
            )
            self._running = True

            logger.info("WebSocket server started", extra={"host": self._host, "port": self.port})

        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error("Failed to start WebSocket server", extra={"error": str(e)})
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

    async def stop(self) -> None:
        """Stop the WebSocket server and close all connections."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server", extra={"connections": self.connection_count})

        self._running = False

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def accept_connection(self) -> Connection:
        """Wait for the next authenticated client connection.

        Raises:
            RuntimeError: If the transport is not running
        """
        if not self._running:
            raise RuntimeError("WebSocket transport is not running")

        return await self._connection_queue.get()

    def _process_request(self, connection: ServerConnection, request: Request) -> Response | None:
        """Reject handshakes over capacity or with invalid credentials."""
        if len(self._connections) >= self._max_connections:
            logger.warning(
                "Rejecting connection, server at capacity",
                extra={"max_connections": self._max_connections},
            )
            return connection.respond(HTTPStatus.SERVICE_UNAVAILABLE, "Server at capacity\n")

        try:
            self._authenticator.authenticate(request.headers, request.path)
        except AuthenticationError as e:
            logger.info(
                "Rejecting unauthenticated connection",
                extra={"remote": connection.remote_address, "error": str(e)},
            )
            return connection.respond(HTTPStatus.UNAUTHORIZED, f"{e}\n")

        return None

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle incoming WebSocket connection.

        Args:
            websocket: WebSocket connection
        """
        connection_id = uuid.uuid4().hex[:20]

        identity: Identity | None = None
        if websocket.request is not None:
            try:
                identity = self._authenticator.authenticate(
                    websocket.request.headers, websocket.request.path
                )
            except AuthenticationError:
                # process_request already rejected required-auth failures.
                identity = None

        connection = WebSocketConnection(
            websocket,
            connection_id,
            identity=identity,
            send_timeout_s=self._send_timeout_s,
        )
        self._connections[connection_id] = connection

        # Queue connection for the coordinator to accept
        await self._connection_queue.put(connection)

        # Keep connection alive until closed
        try:
            await websocket.wait_closed()
        except Exception as e:
            logger.error(
                "Error in connection handler",
                extra={"connection_id": connection_id, "error": str(e)},
            )
        finally:
            self._connections.pop(connection_id, None)
            logger.info("WebSocket connection closed", extra={"connection_id": connection_id})
