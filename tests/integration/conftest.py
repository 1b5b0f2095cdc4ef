"""Integration test fixtures and utilities.

Provides shared fixtures for:
- Free port allocation
- Signaling server lifecycle on real sockets
- WebSocket signaling clients that collect server messages
"""

import asyncio
import json
import logging
import socket
from collections.abc import AsyncIterator
from typing import Any

import pytest_asyncio
import websockets
from websockets.asyncio.client import ClientConnection

from src.signaling.config import (
    HealthConfig,
    SignalingServerConfig,
    TransportConfig,
    WebSocketConfig,
)
from src.signaling.server import SignalingServer

logger = logging.getLogger(__name__)


# ============================================================================
# Utility Functions for Port Allocation
# ============================================================================


def get_free_port() -> int:
    """Get a free TCP port for binding.

    Returns:
        Available port number

    Notes:
        Uses ephemeral port allocation (port=0) to avoid conflicts.
        The port is freed immediately after discovery, so there's a small
        race condition window, but this is acceptable for tests.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        s.listen(1)
        port: int = s.getsockname()[1]
    return port


# ============================================================================
# Signaling Client
# ============================================================================


class SignalingClient:
    """WebSocket client that sends requests and buffers server messages."""

    def __init__(self, websocket: ClientConnection) -> None:
        self.websocket = websocket
        self.messages: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._reader = asyncio.create_task(self._read())

    async def _read(self) -> None:
        try:
            async for raw in self.websocket:
                self.messages.put_nowait(json.loads(raw))
        except websockets.exceptions.ConnectionClosed:
            pass

    async def send(self, action: str, **fields: Any) -> None:
        await self.websocket.send(json.dumps({"action": action, **fields}))

    async def expect(self, action: str, timeout: float = 2.0) -> dict[str, Any]:
        """Wait for the next message and check its action."""
        message = await asyncio.wait_for(self.messages.get(), timeout=timeout)
        assert message["action"] == action, f"expected {action!r}, got {message}"
        return message

    async def request(self, action: str, expected: str, **fields: Any) -> dict[str, Any]:
        await self.send(action, **fields)
        return await self.expect(expected)

    async def assert_silent(self, wait_s: float = 0.2) -> None:
        """Assert no message arrives within the wait window."""
        await asyncio.sleep(wait_s)
        assert self.messages.empty(), f"unexpected message: {self.messages.get_nowait()}"

    async def close(self) -> None:
        await self.websocket.close()
        await asyncio.gather(self._reader, return_exceptions=True)


# ============================================================================
# Server Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def signaling_server() -> AsyncIterator[SignalingServer]:
    """Start a signaling server with the loopback engine on free ports."""
    config = SignalingServerConfig(
        transport=TransportConfig(
            websocket=WebSocketConfig(host="127.0.0.1", port=get_free_port())
        ),
        health=HealthConfig(port=get_free_port()),
    )
    server = SignalingServer(config)
    await server.start()
    logger.info("Test signaling server started", extra={"port": config.transport.websocket.port})

    yield server

    await server.stop()


@pytest_asyncio.fixture
async def connect_client(
    signaling_server: SignalingServer,
) -> AsyncIterator[Any]:
    """Factory fixture opening signaling clients against the test server."""
    clients: list[SignalingClient] = []
    url = f"ws://127.0.0.1:{signaling_server.config.transport.websocket.port}"

    async def _connect() -> SignalingClient:
        websocket = await websockets.connect(url)
        client = SignalingClient(websocket)
        clients.append(client)
        return client

    yield _connect

    for client in clients:
        await client.close()
