"""Signaling server entry point.

Main server loop that:
1. Loads configuration and starts the media engine
2. Accepts WebSocket client connections
3. Runs one SignalingSession per connection against the shared registry
4. Provides HTTP health check and metrics endpoints
5. Stops with exit status 1 if the media engine dies
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite
from dotenv import load_dotenv

from src.signaling.config import SignalingServerConfig
from src.signaling.fanout import BroadcastFanout
from src.signaling.health import setup_health_routes
from src.signaling.media import MediaEngine, create_media_engine
from src.signaling.metrics import MetricsCollector, get_metrics_collector
from src.signaling.registry import SessionRegistry
from src.signaling.session import SignalingSession
from src.signaling.transport.base import ClientConnection, Transport
from src.signaling.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)


class SignalingServer:
    """Wires the media engine, registry, fanout and transport together.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        config: SignalingServerConfig,
        engine: MediaEngine | None = None,
        transport: Transport | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize signaling server.

        Args:
            config: Server configuration
            engine: Media engine (defaults to the configured adapter)
            transport: Client transport (defaults to a WebSocket server)
            metrics: Metrics collector (defaults to the global collector)
        """
        self.config = config
        self.engine = engine or create_media_engine(config.media_engine)
        self.metrics = metrics or get_metrics_collector()
        self.registry = SessionRegistry()
        self.fanout = BroadcastFanout(self.registry, self.metrics)

        ws_config = config.transport.websocket
        self.transport = transport or WebSocketTransport(
            host=ws_config.host,
            port=ws_config.port,
            max_connections=ws_config.max_connections,
            max_message_bytes=ws_config.max_message_bytes,
            max_pending_messages=ws_config.max_pending_messages,
        )

        self.exit_code = 0
        self.sessions: set[SignalingSession] = set()
        self._session_tasks: set[asyncio.Task[None]] = set()
        self._accept_task: asyncio.Task[None] | None = None
        self._health_runner: AppRunner | None = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the media engine, the client transport and the health server.

        Raises:
            MediaEngineError: If the media engine fails to start
            OSError: If a port cannot be bound
        """
        self.engine.add_died_callback(self._on_engine_died)
        await self.engine.start()
        logger.info("Media engine started", extra={"adapter": self.config.media_engine.adapter})

        await self.transport.start()
        logger.info(
            "Client transport started",
            extra={"transport": self.transport.transport_type},
        )

        if self.config.health.enabled:
            await self._start_health_server()

        self._accept_task = asyncio.create_task(self._accept_loop())

        logger.info(
            "Signaling server ready",
            extra={
                "port": self.config.transport.websocket.port,
                "strict_errors": self.config.signaling.strict_errors,
            },
        )

    async def _start_health_server(self) -> None:
        health_app = Application()
        setup_health_routes(health_app, self.registry, self.engine, self.metrics)

        self._health_runner = AppRunner(health_app)
        await self._health_runner.setup()
        site = TCPSite(self._health_runner, self.config.health.host, self.config.health_port)
        await site.start()
        logger.info("Health check server started", extra={"port": self.config.health_port})

    async def _accept_loop(self) -> None:
        while True:
            connection = await self.transport.accept_connection()
            logger.info(
                "New connection accepted",
                extra={"connection_id": connection.connection_id},
            )
            self.spawn_session(connection)

    def spawn_session(self, connection: ClientConnection) -> SignalingSession:
        """Register a client for the connection and run its session in a task."""
        session = SignalingSession(
            connection,
            self.registry,
            self.engine,
            config=self.config.signaling,
            metrics=self.metrics,
        )
        session.open()
        self.sessions.add(session)

        task = asyncio.create_task(session.run())
        self._session_tasks.add(task)

        def _on_done(finished: asyncio.Task[None]) -> None:
            self._session_tasks.discard(finished)
            self.sessions.discard(session)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(
                    "Session task failed",
                    extra={"client_id": session.client_id, "error": str(finished.exception())},
                )

        task.add_done_callback(_on_done)
        return session

    def _on_engine_died(self, reason: str) -> None:
        logger.error("Media engine died, shutting down", extra={"reason": reason})
        self.exit_code = 1
        self._shutdown_event.set()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop accepting clients, close every session and release the engine."""
        logger.info("Shutting down signaling server")

        if self._accept_task is not None:
            self._accept_task.cancel()
            await asyncio.gather(self._accept_task, return_exceptions=True)
            self._accept_task = None

        if self.sessions:
            logger.info("Closing sessions", extra={"count": len(self.sessions)})
            try:
                await asyncio.wait_for(
                    asyncio.gather(
                        *(session.close() for session in list(self.sessions)),
                        return_exceptions=True,
                    ),
                    timeout=self.config.graceful_shutdown_timeout_s,
                )
            except TimeoutError:
                logger.warning(
                    "Graceful shutdown timed out",
                    extra={"timeout_s": self.config.graceful_shutdown_timeout_s},
                )

        for task in list(self._session_tasks):
            task.cancel()
        if self._session_tasks:
            await asyncio.gather(*self._session_tasks, return_exceptions=True)

        await self.transport.stop()
        logger.info("Client transport stopped")

        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None
            logger.info("Health check server stopped")

        await self.engine.close()
        logger.info("Signaling server stopped")


async def start_server(config_path: Path, server: SignalingServer | None = None) -> int:
    """Start the signaling server and run until interrupted or the engine dies.

    Args:
        config_path: Path to YAML config file
        server: Optional pre-created server (for testing)

    Returns:
        Process exit status (1 if the media engine died, else 0)
    """
    config = SignalingServerConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    if server is None:
        server = SignalingServer(config)

    await server.start()
    try:
        await server.wait_for_shutdown()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        await server.stop()

    return server.exit_code


def main() -> None:
    """Entry point for the signaling server."""
    parser = argparse.ArgumentParser(description="SFU signaling server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "signaling.yaml",
        help="Path to signaling config YAML file",
    )
    args = parser.parse_args()

    load_dotenv()

    try:
        exit_code = asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Signaling server interrupted")
        exit_code = 0

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
