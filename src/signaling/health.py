"""Health check endpoints for the signaling server.

Provides HTTP endpoints for load balancers, monitoring systems and
orchestration tools (Docker healthcheck, Kubernetes probes), plus a room
summary for operators.
"""

import logging
import time

from aiohttp import web

from src.signaling.coordinator import SessionCoordinator
from src.signaling.registry import RoomRegistry
from src.signaling.transport.base import Transport

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the signaling server.

    Provides /health that checks:
    - Transport is accepting connections
    - Room registry and connection counts
    - Service uptime
    """

    def __init__(
        self,
        registry: RoomRegistry,
        transport: Transport,
        coordinator: SessionCoordinator | None = None,
    ) -> None:
        """Initialize health check handler.

        Args:
            registry: Room registry to report on
            transport: Client transport whose state decides health
            coordinator: Session coordinator (optional, for connection counts)
        """
        self.registry = registry
        self.transport = transport
        self.coordinator = coordinator
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Transport is running
            503 Service Unavailable: Transport is not running

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "transport": {"type": str, "running": bool, "connections": int},
            "rooms": {"rooms": int, "participants": int, "active_calls": int}
        }
        """
        running = self.transport.is_running
        status_code = 200 if running else 503

        response_data = {
            "status": "healthy" if running else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "transport": {
                "type": self.transport.transport_type,
                "running": running,
                "connections": self.transport.connection_count,
            },
            "rooms": self.registry.stats(),
        }
        if self.coordinator is not None:
            response_data["attached_connections"] = self.coordinator.connection_count

        logger.debug("Health check performed", extra={"status": response_data["status"]})

        return web.json_response(response_data, status=status_code)

    async def readiness_check(self, request: web.Request) -> web.Response:
        """Readiness check endpoint.

        Returns:
            200 OK: Server accepts connections
            503 Service Unavailable: Server is not ready
        """
        return await self.health_check(request)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, even if the transport is down.

        Returns:
            200 OK: Service is alive
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def rooms(self, request: web.Request) -> web.Response:
        """Room summary endpoint: one entry per live room.

        Lists appointment ids and the user ids that started calls, without
        authentication. Keep the health server bound to an internal
        interface (the default host is 127.0.0.1).
        """
        summaries = [room.summary() for room in self.registry.rooms()]
        return web.json_response({"stats": self.registry.stats(), "rooms": summaries})


def setup_health_routes(
    app: web.Application,
    registry: RoomRegistry,
    transport: Transport,
    coordinator: SessionCoordinator | None = None,
) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        registry: Room registry
        transport: Client transport
        coordinator: Session coordinator (optional)
    """
    handler = HealthCheckHandler(registry=registry, transport=transport, coordinator=coordinator)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/ready", handler.readiness_check)
    app.router.add_get("/liveness", handler.liveness_check)
    app.router.add_get("/rooms", handler.rooms)

    logger.info("Health check endpoints configured: /health, /ready, /liveness, /rooms")
