"""Unit tests for CLI WebSocket client."""

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.client.cli_client import CLIClient

ROUTER_CAPS: dict[str, Any] = {
    "codecs": [
        {"kind": "audio", "mimeType": "audio/opus", "clockRate": 48000, "channels": 2},
        {"kind": "video", "mimeType": "video/VP8", "clockRate": 90000},
    ],
    "headerExtensions": [],
}


@pytest.fixture
def client() -> CLIClient:
    """Create a CLI client with a mock WebSocket."""
    client = CLIClient("ws://localhost:5000")
    client.websocket = MagicMock()
    client.websocket.send = AsyncMock()
    return client


def sent_requests(client: CLIClient) -> list[dict[str, Any]]:
    assert client.websocket is not None
    return [json.loads(call.args[0]) for call in client.websocket.send.call_args_list]


def server(action: str, **fields: Any) -> str:
    return json.dumps({"action": action, **fields})


class TestCLIClient:
    """Test suite for CLIClient class."""

    def test_init(self) -> None:
        """Test CLIClient initialization."""
        client = CLIClient("ws://localhost:5000", verbose=True)

        assert client.server_url == "ws://localhost:5000"
        assert client.verbose is True
        assert client.running is True
        assert client.rtp_capabilities is None

    @pytest.mark.asyncio
    async def test_caps_command(self, client: CLIClient) -> None:
        """Test /caps requests router capabilities."""
        await client.handle_command("/caps")

        assert sent_requests(client) == [{"action": "getRouterRtpCapabilities"}]

    @pytest.mark.asyncio
    async def test_router_capabilities_stored(self, client: CLIClient) -> None:
        """Test capabilities are kept for later produce/consume."""
        await client.handle_message(server("routerRtpCapabilities", data=ROUTER_CAPS))

        assert client.rtp_capabilities == ROUTER_CAPS

    @pytest.mark.asyncio
    async def test_send_requires_capabilities(
        self, client: CLIClient, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test /send without capabilities prints a hint."""
        await client.handle_command("/send")

        assert sent_requests(client) == []
        assert "/caps" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_send_flow(self, client: CLIClient) -> None:
        """Test /send creates, connects and then produces."""
        client.rtp_capabilities = ROUTER_CAPS

        await client.handle_command("/send video")
        await client.handle_message(
            server(
                "sendTransportCreated",
                data={"id": "t1", "iceParameters": {}, "iceCandidates": [], "dtlsParameters": {}},
            )
        )
        await client.handle_message(server("transportConnected", transportId="t1"))
        await client.handle_message(server("produced", data={"producerId": "p1"}))

        requests = sent_requests(client)
        assert [r["action"] for r in requests] == [
            "createSendTransport",
            "connectTransport",
            "produce",
        ]
        assert requests[1]["transportId"] == "t1"
        assert requests[1]["dtlsParameters"]["fingerprints"]
        assert requests[2]["kind"] == "video"
        assert requests[2]["rtpParameters"]["codecs"][0]["mimeType"] == "video/VP8"
        assert client.producer_ids == ["p1"]

    @pytest.mark.asyncio
    async def test_send_invalid_kind(self, client: CLIClient) -> None:
        """Test /send rejects unknown kinds."""
        client.rtp_capabilities = ROUTER_CAPS

        await client.handle_command("/send smell")

        assert sent_requests(client) == []

    @pytest.mark.asyncio
    async def test_recv_flow_consumes_existing_and_new(self, client: CLIClient) -> None:
        """Test /recv consumes listed producers and later newProducer events."""
        client.rtp_capabilities = ROUTER_CAPS

        await client.handle_command("/recv")
        await client.handle_message(
            server(
                "recvTransportCreated",
                data={"id": "r1", "iceParameters": {}, "iceCandidates": [], "dtlsParameters": {}},
            )
        )
        await client.handle_message(server("transportConnected", transportId="r1"))
        await client.handle_message(server("existingProducers", data=["p1"]))
        await client.handle_message(server("newProducer", data={"producerId": "p2"}))

        actions = [(r["action"], r.get("producerId")) for r in sent_requests(client)]
        assert actions == [
            ("createRecvTransport", None),
            ("connectTransport", None),
            ("getProducers", None),
            ("consume", "p1"),
            ("consume", "p2"),
        ]

    @pytest.mark.asyncio
    async def test_consumed_and_client_left(self, client: CLIClient) -> None:
        """Test consumer bookkeeping follows clientLeft."""
        await client.handle_message(
            server(
                "consumed",
                data={"id": "c1", "producerId": "p1", "kind": "audio", "rtpParameters": {}},
            )
        )
        assert client.consumers == {"p1": "c1"}

        await client.handle_message(server("clientLeft", data={"producerId": "p1"}))
        assert client.consumers == {}

    @pytest.mark.asyncio
    async def test_new_producer_printed_without_recv(
        self, client: CLIClient, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test broadcasts are printed even when not consuming."""
        await client.handle_message(server("newProducer", data={"producerId": "p9"}))

        assert "newProducer p9" in capsys.readouterr().out
        assert sent_requests(client) == []

    @pytest.mark.asyncio
    async def test_error_message(
        self, client: CLIClient, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test error messages are displayed."""
        await client.handle_message(
            server("error", data={"code": "NOT_FOUND", "message": "producer not found: p1"})
        )

        assert "producer not found: p1" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_invalid_json_ignored(self, client: CLIClient) -> None:
        """Test garbage frames do not raise."""
        await client.handle_message("not json")

    @pytest.mark.asyncio
    async def test_quit_command(self, client: CLIClient) -> None:
        """Test /quit stops the input loop."""
        await client.handle_command("/quit")

        assert client.running is False
