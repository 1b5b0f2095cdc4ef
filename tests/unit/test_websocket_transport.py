"""Unit tests for WebSocket transport implementation.

Tests ordered outbound delivery, inbound frame handling and transport
server lifecycle.
"""

import asyncio
import json
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import websockets
from websockets.protocol import State

from src.signaling.transport.websocket_protocol import (
    ExistingProducersMessage,
    NewProducerMessage,
    ProducerRef,
)
from src.signaling.transport.websocket_transport import (
    WebSocketConnection,
    WebSocketTransport,
)


class TestWebSocketConnection:
    """Test WebSocket connection."""

    @pytest.fixture
    def mock_websocket(self) -> MagicMock:
        """Create mock WebSocket connection."""
        ws = MagicMock()
        ws.state = State.OPEN
        ws.remote_address = ("127.0.0.1", 50000)
        ws.send = AsyncMock()
        ws.close = AsyncMock()
        return ws

    def test_connection_initialization(self, mock_websocket: MagicMock) -> None:
        """Test connection initialization."""
        connection = WebSocketConnection(mock_websocket, "ws-test")

        assert connection.connection_id == "ws-test"
        assert connection.is_connected is True
        assert connection.pending_messages == 0

    @pytest.mark.asyncio
    async def test_post_delivers_in_order(self, mock_websocket: MagicMock) -> None:
        """Test posted messages are written in FIFO order."""
        connection = WebSocketConnection(mock_websocket, "ws-test")

        for index in range(5):
            connection.post(NewProducerMessage(data=ProducerRef(producer_id=f"p{index}")))
        await connection.close()

        sent = [json.loads(call.args[0]) for call in mock_websocket.send.call_args_list]
        assert [m["data"]["producerId"] for m in sent] == ["p0", "p1", "p2", "p3", "p4"]
        mock_websocket.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_full_backlog_drops_slow_client(self, mock_websocket: MagicMock) -> None:
        """Test a client that stops reading is closed once its backlog fills."""
        connection = WebSocketConnection(mock_websocket, "ws-test", max_pending_messages=3)

        for index in range(3):
            connection.post(NewProducerMessage(data=ProducerRef(producer_id=f"p{index}")))

        with pytest.raises(ConnectionError, match="backlog"):
            connection.post(NewProducerMessage(data=ProducerRef(producer_id="p3")))
        with pytest.raises(ConnectionError):
            connection.post(NewProducerMessage(data=ProducerRef(producer_id="p4")))

        await connection.close()

        mock_websocket.close.assert_called_once_with(1008, "outbound backlog full")
        mock_websocket.send.assert_not_called()
        assert connection.is_connected is False

    @pytest.mark.asyncio
    async def test_post_serializes_wire_format(self, mock_websocket: MagicMock) -> None:
        """Test messages are sent as camelCase JSON text."""
        connection = WebSocketConnection(mock_websocket, "ws-test")

        connection.post(ExistingProducersMessage(data=["p1"], request_id=9))
        await connection.close()

        assert json.loads(mock_websocket.send.call_args[0][0]) == {
            "action": "existingProducers",
            "data": ["p1"],
            "requestId": 9,
        }

    @pytest.mark.asyncio
    async def test_post_when_disconnected(self, mock_websocket: MagicMock) -> None:
        """Test posting to a closed socket raises ConnectionError."""
        mock_websocket.state = State.CLOSED
        connection = WebSocketConnection(mock_websocket, "ws-test")

        with pytest.raises(ConnectionError, match="connection is closed"):
            connection.post(ExistingProducersMessage(data=[]))

    @pytest.mark.asyncio
    async def test_post_after_close(self, mock_websocket: MagicMock) -> None:
        """Test posting after close() raises ConnectionError."""
        connection = WebSocketConnection(mock_websocket, "ws-test")
        await connection.close()

        with pytest.raises(ConnectionError):
            connection.post(ExistingProducersMessage(data=[]))

    @pytest.mark.asyncio
    async def test_send_failure_does_not_stop_writer(self, mock_websocket: MagicMock) -> None:
        """Test one failed write does not block later messages."""
        mock_websocket.send.side_effect = [RuntimeError("boom"), None]
        connection = WebSocketConnection(mock_websocket, "ws-test")

        connection.post(ExistingProducersMessage(data=["a"]))
        connection.post(ExistingProducersMessage(data=["b"]))
        await connection.close()

        assert mock_websocket.send.call_count == 2

    @pytest.mark.asyncio
    async def test_receive_messages(self, mock_websocket: MagicMock) -> None:
        """Test text frames are yielded and binary frames skipped."""
        frames: list[str | bytes] = [
            json.dumps({"action": "getProducers"}),
            b"\x00\x01",
            json.dumps({"action": "getRouterRtpCapabilities"}),
        ]

        async def mock_iter() -> AsyncGenerator[str | bytes]:
            for frame in frames:
                yield frame

        mock_websocket.__aiter__ = lambda self: mock_iter()
        connection = WebSocketConnection(mock_websocket, "ws-test")

        received = [raw async for raw in connection.receive_messages()]

        assert [json.loads(raw)["action"] for raw in received] == [
            "getProducers",
            "getRouterRtpCapabilities",
        ]
        assert connection.is_connected is False

    @pytest.mark.asyncio
    async def test_receive_messages_connection_closed(self, mock_websocket: MagicMock) -> None:
        """Test a client close ends iteration without raising."""

        async def mock_iter() -> AsyncGenerator[str]:
            yield json.dumps({"action": "getProducers"})
            raise websockets.exceptions.ConnectionClosedOK(None, None)

        mock_websocket.__aiter__ = lambda self: mock_iter()
        connection = WebSocketConnection(mock_websocket, "ws-test")

        received = [raw async for raw in connection.receive_messages()]

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_receive_messages_error(self, mock_websocket: MagicMock) -> None:
        """Test unexpected receive errors surface as ConnectionError."""

        async def mock_iter() -> AsyncGenerator[str]:
            raise OSError("reset")
            yield ""

        mock_websocket.__aiter__ = lambda self: mock_iter()
        connection = WebSocketConnection(mock_websocket, "ws-test")

        with pytest.raises(ConnectionError, match="receive error"):
            async for _ in connection.receive_messages():
                pass

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, mock_websocket: MagicMock) -> None:
        """Test connection close."""
        connection = WebSocketConnection(mock_websocket, "ws-test")

        await connection.close()
        await connection.close()

        assert connection.is_connected is False
        mock_websocket.close.assert_called_once()


class TestWebSocketTransport:
    """Test WebSocket transport server."""

    def test_transport_initialization(self) -> None:
        """Test transport initialization."""
        transport = WebSocketTransport(host="0.0.0.0", port=5000, max_connections=100)  # noqa: S104

        assert transport.transport_type == "websocket"
        assert transport.is_running is False
        assert transport.port == 5000

    @pytest.mark.asyncio
    async def test_transport_start_stop(self) -> None:
        """Test transport start and stop."""
        transport = WebSocketTransport(host="127.0.0.1", port=0, max_connections=10)

        await transport.start()
        assert transport.is_running is True
        assert transport.port > 0

        await transport.stop()
        assert transport.is_running is False

    @pytest.mark.asyncio
    async def test_transport_double_start(self) -> None:
        """Test starting an already running transport."""
        transport = WebSocketTransport(host="127.0.0.1", port=0)
        await transport.start()

        try:
            with pytest.raises(RuntimeError, match="already running"):
                await transport.start()
        finally:
            await transport.stop()

    @pytest.mark.asyncio
    async def test_accept_connection_not_running(self) -> None:
        """Test accepting connections before start."""
        transport = WebSocketTransport()

        with pytest.raises(RuntimeError, match="not running"):
            await transport.accept_connection()

    @pytest.mark.asyncio
    async def test_accept_connection(self) -> None:
        """Test a real client connection is handed out."""
        transport = WebSocketTransport(host="127.0.0.1", port=0)
        await transport.start()

        try:
            async with websockets.connect(f"ws://127.0.0.1:{transport.port}") as client:
                connection = await asyncio.wait_for(transport.accept_connection(), timeout=2.0)
                assert connection.connection_id.startswith("ws-")
                assert transport.active_connections == 1

                connection.post(ExistingProducersMessage(data=["p1"]))
                reply = await asyncio.wait_for(client.recv(), timeout=2.0)
                assert json.loads(reply) == {"action": "existingProducers", "data": ["p1"]}

                await connection.close()
        finally:
            await transport.stop()

    @pytest.mark.asyncio
    async def test_connection_limit(self) -> None:
        """Test clients beyond max_connections are turned away."""
        transport = WebSocketTransport(host="127.0.0.1", port=0, max_connections=1)
        await transport.start()

        try:
            async with websockets.connect(f"ws://127.0.0.1:{transport.port}"):
                await asyncio.wait_for(transport.accept_connection(), timeout=2.0)

                async with websockets.connect(f"ws://127.0.0.1:{transport.port}") as second:
                    with pytest.raises(websockets.exceptions.ConnectionClosed) as exc_info:
                        await asyncio.wait_for(second.recv(), timeout=2.0)
                    assert exc_info.value.rcvd is not None
                    assert exc_info.value.rcvd.code == 1013
        finally:
            await transport.stop()
