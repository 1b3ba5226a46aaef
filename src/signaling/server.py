"""Signaling server with WebSocket transport.

Main server implementation that:
1. Starts the WebSocket transport
2. Provides HTTP health check endpoints
3. Accepts client connections and hands them to the session coordinator
4. Periodically evicts idle rooms from the registry
"""

import argparse
import asyncio
import logging
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite

from src.signaling.auth import Authenticator
from src.signaling.config import SignalingConfig
from src.signaling.coordinator import SessionCoordinator
from src.signaling.health import setup_health_routes
from src.signaling.registry import RoomRegistry
from src.signaling.resolver import IdentityResolver
from src.signaling.store import AppointmentStore, create_store
from src.signaling.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)


class SignalingServer:
    """Wires the signaling components together and owns their lifecycle.

    Thread-safety: This class is NOT thread-safe. Use from a single async task.
    """

    def __init__(self, config: SignalingConfig, store: AppointmentStore | None = None) -> None:
        """Initialize signaling server.

        Args:
            config: Server configuration
            store: Appointment store (created from config if not given)
        """
        self.config = config
        self.store = store if store is not None else create_store(config.store)
        self.registry = RoomRegistry()
        self.coordinator = SessionCoordinator(
            registry=self.registry,
            resolver=IdentityResolver(self.store),
            identity_mismatch_policy=config.auth.identity_mismatch_policy,
        )

        ws_config = config.transport.websocket
        self.transport = WebSocketTransport(
            authenticator=Authenticator(config.auth),
            host=ws_config.host,
            port=ws_config.port,
            max_connections=ws_config.max_connections,
            max_message_bytes=ws_config.max_message_bytes,
            send_timeout_s=ws_config.send_timeout_s,
            allowed_origins=ws_config.allowed_origins,
        )

        self._health_runner: AppRunner | None = None
        self._accept_task: asyncio.Task[None] | None = None
        self._sweep_task: asyncio.Task[None] | None = None
        self._connection_tasks: set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        """Start transport, health server and background loops.

        Raises:
            OSError: If a port cannot be bound
            RuntimeError: If the transport fails to start
        """
        await self.transport.start()

        if self.config.health.enabled:
            health_app = Application()
            setup_health_routes(health_app, self.registry, self.transport, self.coordinator)
            self._health_runner = AppRunner(health_app)
            await self._health_runner.setup()
            site = TCPSite(self._health_runner, self.config.health.host, self.config.health.port)
            await site.start()
            logger.info("Health check server started", extra={"port": self.config.health.port})

        self._accept_task = asyncio.create_task(self._accept_loop())
        self._sweep_task = asyncio.create_task(self._sweep_loop())

        logger.info(
            "Signaling server ready",
            extra={"port": self.transport.port, "store": self.config.store.backend},
        )

    async def run(self) -> None:
        """Run until the accept loop stops or the task is cancelled."""
        if self._accept_task is None:
            raise RuntimeError("Signaling server is not started")
        await self._accept_task

    async def stop(self) -> None:
        """Stop accepting connections, close sessions and release resources."""
        logger.info("Shutting down signaling server")

        for task in (self._accept_task, self._sweep_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._accept_task = None
        self._sweep_task = None

        await self.transport.stop()
        logger.info("WebSocket transport stopped")

        if self._connection_tasks:
            logger.info(
                "Waiting for connections to close",
                extra={"count": len(self._connection_tasks)},
            )
            _, pending = await asyncio.wait(
                self._connection_tasks, timeout=self.config.graceful_shutdown_timeout_s
            )
            for task in pending:
                task.cancel()

        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None
            logger.info("Health check server stopped")

        await self.store.close()
        logger.info("Signaling server stopped")

    async def _accept_loop(self) -> None:
        while True:
            connection = await self.transport.accept_connection()
            task = asyncio.create_task(self.coordinator.handle_connection(connection))
            self._connection_tasks.add(task)
            task.add_done_callback(self._connection_tasks.discard)

    async def _sweep_loop(self) -> None:
        interval = self.config.registry.sweep_interval_s
        while True:
            await asyncio.sleep(interval)
            self.registry.sweep()


async def start_server(config_path: Path) -> None:
    """Start the signaling server and run until interrupted.

    Args:
        config_path: Path to YAML config file (defaults apply if missing)
    """
    config = SignalingConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    server = SignalingServer(config)
    await server.start()
    try:
        await server.run()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        await server.stop()


def main() -> None:
    """Entry point for the signaling server."""
    parser = argparse.ArgumentParser(description="Telehealth call signaling server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "signaling.yaml",
        help="Path to signaling config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Signaling server interrupted")


if __name__ == "__main__":
    main()
