"""WebSocket transport implementation.

Accepts signaling clients over WebSocket. Each connection owns one outbound
queue drained by a single writer task, so responses and broadcasts reach a
client in the order they were posted.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

import websockets
from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from src.signaling.transport.base import ClientConnection, Transport
from src.signaling.transport.websocket_protocol import ServerMessage

logger = logging.getLogger(__name__)

# Time allowed for queued messages to flush on close
CLOSE_FLUSH_TIMEOUT_S = 2.0

# RFC 6455 close code 1013: Try Again Later
CLOSE_CODE_TRY_AGAIN_LATER = 1013

# RFC 6455 close code 1008: Policy Violation
CLOSE_CODE_POLICY_VIOLATION = 1008

DEFAULT_MAX_PENDING_MESSAGES = 256


class WebSocketConnection(ClientConnection):
    """WebSocket-based client connection.

    Implements the ClientConnection interface for WebSocket connections,
    handling JSON serialization and ordered delivery of outbound messages.
    """

    def __init__(
        self,
        websocket: ServerConnection,
        connection_id: str,
        max_pending_messages: int = DEFAULT_MAX_PENDING_MESSAGES,
    ) -> None:
        """Initialize WebSocket connection.

        Args:
            websocket: WebSocket connection
            connection_id: Unique connection identifier
            max_pending_messages: Outbound backlog at which the client is dropped
        """
        self._websocket = websocket
        self._connection_id = connection_id
        self._max_pending_messages = max_pending_messages
        self._connected = True
        self._closing = False
        self._abort_task: asyncio.Task[None] | None = None

        # None is the writer shutdown sentinel
        self._outbound: asyncio.Queue[ServerMessage | None] = asyncio.Queue()
        self._writer_task: asyncio.Task[None] | None = None

        logger.info(
            "WebSocket connection initialized",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def is_connected(self) -> bool:
        return self._connected and self._websocket.state == State.OPEN

    @property
    def pending_messages(self) -> int:
        """Number of messages queued but not yet written."""
        return self._outbound.qsize()

    def post(self, message: ServerMessage) -> None:
        """Queue a message for delivery to the client.

        Raises:
            ConnectionError: If the connection is closed or closing, or the client
                has stopped reading and the outbound backlog is full
        """
        if self._closing or not self.is_connected:
            raise ConnectionError("WebSocket connection is closed")

        if self._outbound.qsize() >= self._max_pending_messages:
            logger.warning(
                "Outbound backlog full, dropping slow client",
                extra={
                    "connection_id": self._connection_id,
                    "pending": self._outbound.qsize(),
                },
            )
            self._closing = True
            self._abort_task = asyncio.create_task(self._abort("outbound backlog full"))
            raise ConnectionError("WebSocket outbound backlog is full")

        self._ensure_writer()
        self._outbound.put_nowait(message)

    def _ensure_writer(self) -> None:
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._writer_loop())

    async def _writer_loop(self) -> None:
        """Write queued messages to the socket in FIFO order."""
        while True:
            message = await self._outbound.get()
            if message is None:
                return

            try:
                await self._websocket.send(message.to_json())
                logger.debug(
                    "Message sent",
                    extra={"connection_id": self._connection_id, "action": message.action},
                )
            except websockets.exceptions.ConnectionClosed:
                self._connected = False
                logger.debug(
                    "Connection closed while sending",
                    extra={"connection_id": self._connection_id},
                )
                return
            except Exception as e:
                logger.error(
                    "Failed to send message",
                    extra={
                        "connection_id": self._connection_id,
                        "action": message.action,
                        "error": str(e),
                    },
                )

    async def receive_messages(self) -> AsyncIterator[str]:
        """Receive text frames from the client.

        Yields:
            str: Raw message text

        Raises:
            ConnectionError: If the connection fails unexpectedly
        """
        try:
            async for raw_message in self._websocket:
                if not isinstance(raw_message, str):
                    logger.warning(
                        "Received non-text WebSocket message, skipping",
                        extra={"connection_id": self._connection_id},
                    )
                    continue
                yield raw_message

        except websockets.exceptions.ConnectionClosed:
            logger.info(
                "WebSocket connection closed by client",
                extra={"connection_id": self._connection_id},
            )
        except Exception as e:
            self._connected = False
            logger.error(
                "Error receiving WebSocket message",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )
            raise ConnectionError(f"WebSocket receive error: {e}") from e
        finally:
            self._connected = False

    async def _abort(self, reason: str) -> None:
        """Close without flushing; queued messages are discarded."""
        if self._writer_task is not None:
            self._writer_task.cancel()
        try:
            await self._websocket.close(CLOSE_CODE_POLICY_VIOLATION, reason)
        except Exception as e:
            logger.warning(
                "Error aborting connection",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )
        finally:
            self._connected = False

    async def close(self) -> None:
        """Flush queued messages and close the WebSocket."""
        if self._closing:
            if self._abort_task is not None:
                await self._abort_task
            return
        self._closing = True

        logger.info("Closing WebSocket connection", extra={"connection_id": self._connection_id})

        try:
            if self._writer_task is not None:
                self._outbound.put_nowait(None)
                try:
                    await asyncio.wait_for(self._writer_task, timeout=CLOSE_FLUSH_TIMEOUT_S)
                except TimeoutError:
                    self._writer_task.cancel()

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

    Manages WebSocket server lifecycle and creates WebSocketConnection
    instances for incoming clients.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 5000,
        max_connections: int = 100,
        max_message_bytes: int = 2**20,
        max_pending_messages: int = DEFAULT_MAX_PENDING_MESSAGES,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            host: Bind host address
            port: Bind port
            max_connections: Maximum concurrent connections
            max_message_bytes: Maximum inbound message size
            max_pending_messages: Per-connection outbound backlog limit
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._max_pending_messages = max_pending_messages
        self._server: Any = None  # websockets.Server type
        self._running = False
        self._active_connections = 0
        self._connection_queue: asyncio.Queue[WebSocketConnection] = asyncio.Queue()

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
    def active_connections(self) -> int:
        return self._active_connections

    @property
    def port(self) -> int:
        """Bound port (resolved after start when configured as 0)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info(
            "Starting WebSocket server", extra={"host": self._host, "port": self._port}
        )

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
            )
            self._running = True

            logger.info(
                "WebSocket server started",
                extra={"host": self._host, "port": self.port},
            )

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
        """Stop the WebSocket server and close open connections."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")

        self._running = False

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def accept_connection(self) -> ClientConnection:
        """Block until a client connects and return its connection.

        Raises:
            RuntimeError: If the transport is not running
        """
        if not self._running:
            raise RuntimeError("WebSocket transport is not running")

        return await self._connection_queue.get()

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle an incoming WebSocket connection.

        Args:
            websocket: WebSocket connection
        """
        if self._active_connections >= self._max_connections:
            logger.warning(
                "Connection limit reached, rejecting client",
                extra={"remote": websocket.remote_address, "limit": self._max_connections},
            )
            await websocket.close(CLOSE_CODE_TRY_AGAIN_LATER, "server full")
            return

        connection_id = f"ws-{uuid.uuid4().hex[:12]}"
        self._active_connections += 1

        logger.info(
            "New WebSocket connection",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

        connection = WebSocketConnection(
            websocket, connection_id, max_pending_messages=self._max_pending_messages
        )
        await self._connection_queue.put(connection)

        # Keep the handler alive until the socket closes
        try:
            await websocket.wait_closed()
        except Exception as e:
            logger.error(
                "Error in connection handler",
                extra={"connection_id": connection_id, "error": str(e)},
            )
        finally:
            self._active_connections -= 1
            logger.info("WebSocket connection closed", extra={"connection_id": connection_id})
