"""Integration test fixtures and utilities.

Provides shared fixtures for:
- Signaling server lifecycle (real WebSocket and health ports)
- Signed client tokens
- WebSocket client helpers for waiting on specific events
"""

import asyncio
import json
import logging
import socket
from collections.abc import AsyncIterator
from typing import Any

import pytest_asyncio
import websockets
from jose import jwt
from websockets.asyncio.client import ClientConnection

from src.signaling.config import (
    AuthConfig,
    HealthConfig,
    SignalingConfig,
    StoreConfig,
    TransportConfig,
    WebSocketConfig,
)
from src.signaling.server import SignalingServer
from tests.helpers.signaling_fakes import appointment_rows

logger = logging.getLogger(__name__)

JWT_SECRET = "integration-secret"


# ============================================================================
# Utility Functions for Port Allocation
# ============================================================================


def get_free_port() -> int:
    """Get a free TCP port for binding.

    Returns:
        Available port number

    Notes:
        The port is freed immediately after discovery, so there's a small
        race condition window, but this is acceptable for tests.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port: int = s.getsockname()[1]
    return port


def make_config(auth_required: bool = False) -> SignalingConfig:
    return SignalingConfig(
        transport=TransportConfig(
            websocket=WebSocketConfig(
                host="127.0.0.1",
                port=get_free_port(),
                max_connections=10,
                send_timeout_s=2.0,
            )
        ),
        store=StoreConfig(backend="memory", seed_appointments=appointment_rows()),
        auth=AuthConfig(required=auth_required, jwt_secret=JWT_SECRET),
        health=HealthConfig(enabled=True, host="127.0.0.1", port=get_free_port()),
        graceful_shutdown_timeout_s=2,
    )


def make_token(user_id: str, role: str | None = None) -> str:
    claims: dict[str, Any] = {"id": user_id}
    if role is not None:
        claims["role"] = role
    return jwt.encode(claims, JWT_SECRET, algorithm="HS256")


# ============================================================================
# Server Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def signaling_server() -> AsyncIterator[SignalingServer]:
    """Start a signaling server with optional authentication."""
    server = SignalingServer(make_config(auth_required=False))
    await server.start()
    logger.info("Signaling server started", extra={"port": server.transport.port})
    try:
        yield server
    finally:
        await server.stop()


@pytest_asyncio.fixture
async def authenticated_server() -> AsyncIterator[SignalingServer]:
    """Start a signaling server that requires a bearer token."""
    server = SignalingServer(make_config(auth_required=True))
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


def ws_url(server: SignalingServer, token: str | None = None) -> str:
    url = f"ws://127.0.0.1:{server.transport.port}/"
    if token is not None:
        url += f"?token={token}"
    return url


# ============================================================================
# WebSocket Client Helpers
# ============================================================================


class SignalingClient:
    """Thin test client that keeps every received event."""

    def __init__(self, ws: ClientConnection, socket_id: str) -> None:
        self.ws = ws
        self.socket_id = socket_id
        self.received: list[dict[str, Any]] = []

    async def emit(self, event_type: str, **fields: Any) -> None:
        await self.ws.send(json.dumps({"type": event_type, **fields}))

    async def send_raw(self, raw: str) -> None:
        await self.ws.send(raw)

    async def wait_for(self, event_type: str, timeout_s: float = 3.0) -> dict[str, Any]:
        """Receive until an event of the given type arrives."""
        async with asyncio.timeout(timeout_s):
            while True:
                data = json.loads(await self.ws.recv())
                self.received.append(data)
                if data["type"] == event_type:
                    return data

    async def close(self) -> None:
        await self.ws.close()


async def connect_client(url: str) -> SignalingClient:
    """Open a connection and wait for the server's connected event."""
    ws = await websockets.connect(url)
    data = json.loads(await asyncio.wait_for(ws.recv(), timeout=3.0))
    assert data["type"] == "connected"
    return SignalingClient(ws, data["socketId"])


@pytest_asyncio.fixture
async def clients() -> AsyncIterator[list[SignalingClient]]:
    """Collects clients opened by a test and closes them afterwards."""
    opened: list[SignalingClient] = []
    try:
        yield opened
    finally:
        for client in opened:
            await client.close()
