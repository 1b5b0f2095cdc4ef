"""WebSocket CLI client for probing the signaling server.

Provides a command-line interface for connecting to the signaling server,
negotiating send/recv transports, producing a test stream and consuming the
streams of other clients. Broadcast events (newProducer, clientLeft) are
printed as they arrive.
"""

import argparse
import asyncio
import json
import logging
import secrets
import signal
import sys
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

# Configure logging
logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /caps              - Fetch router RTP capabilities
  /producers         - List producers of other clients
  /send [audio|video] - Create send transport (once) and produce a stream
  /recv              - Create recv transport (once) and consume all producers
  /quit              - Exit client
  /help              - Show this help
"""


def _client_dtls_parameters() -> dict[str, Any]:
    fingerprint = ":".join(f"{b:02X}" for b in secrets.token_bytes(32))
    return {"role": "client", "fingerprints": [{"algorithm": "sha-256", "value": fingerprint}]}


class CLIClient:
    """WebSocket CLI client for signaling server communication."""

    def __init__(self, server_url: str, verbose: bool = False) -> None:
        """Initialize CLI client.

        Args:
            server_url: WebSocket server URL (e.g., ws://localhost:5000)
            verbose: Enable verbose logging
        """
        self.server_url = server_url
        self.verbose = verbose
        self.running = True
        self.websocket: ClientConnection | None = None

        self.rtp_capabilities: dict[str, Any] | None = None
        self.send_transport_id: str | None = None
        self.recv_transport_id: str | None = None
        self.send_connected = False
        self.recv_connected = False
        self.producer_ids: list[str] = []
        # producer id -> consumer id
        self.consumers: dict[str, str] = {}
        self._pending_kinds: list[str] = []

        # Setup logging
        level = logging.DEBUG if verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%H:%M:%S",
        )

    async def send_request(self, action: str, **fields: Any) -> None:
        """Send one signaling request.

        Args:
            action: Request action name
            **fields: Request fields (camelCase wire names)
        """
        if self.websocket is None:
            raise RuntimeError("Not connected")
        await self.websocket.send(json.dumps({"action": action, **fields}))
        logger.debug(f"Sent: {action}")

    async def request_produce(self, kind: str) -> None:
        """Produce a stream, creating and connecting the send transport first if needed."""
        if self.rtp_capabilities is None:
            print("Fetch capabilities first with /caps")
            return

        if self.send_connected and self.send_transport_id is not None:
            await self._produce(kind)
            return

        self._pending_kinds.append(kind)
        if self.send_transport_id is None:
            await self.send_request("createSendTransport")

    async def request_consume_all(self) -> None:
        """Create and connect the recv transport, then consume every producer."""
        if self.rtp_capabilities is None:
            print("Fetch capabilities first with /caps")
            return

        if self.recv_transport_id is None:
            await self.send_request("createRecvTransport")
        elif self.recv_connected:
            await self.send_request("getProducers")

    async def _produce(self, kind: str) -> None:
        assert self.rtp_capabilities is not None
        codecs = [c for c in self.rtp_capabilities.get("codecs", []) if c.get("kind") == kind]
        if not codecs:
            print(f"Router has no {kind} codec")
            return
        await self.send_request("produce", kind=kind, rtpParameters={"codecs": codecs[:1]})

    async def _consume(self, producer_id: str) -> None:
        if producer_id in self.consumers or producer_id in self.producer_ids:
            return
        await self.send_request(
            "consume", producerId=producer_id, rtpCapabilities=self.rtp_capabilities
        )

    async def handle_message(self, message_data: str) -> None:
        """Handle incoming message from server.

        Args:
            message_data: Raw JSON message from server
        """
        try:
            data = json.loads(message_data)
            action = data.get("action")
            payload = data.get("data")

            if action == "routerRtpCapabilities":
                self.rtp_capabilities = payload
                mime_types = [c.get("mimeType") for c in payload.get("codecs", [])]
                print(f"\nRouter codecs: {', '.join(mime_types)}")

            elif action == "sendTransportCreated":
                self.send_transport_id = payload["id"]
                print(f"\nSend transport created: {self.send_transport_id}")
                await self.send_request(
                    "connectTransport",
                    transportId=self.send_transport_id,
                    dtlsParameters=_client_dtls_parameters(),
                )

            elif action == "recvTransportCreated":
                self.recv_transport_id = payload["id"]
                print(f"\nRecv transport created: {self.recv_transport_id}")
                await self.send_request(
                    "connectTransport",
                    transportId=self.recv_transport_id,
                    dtlsParameters=_client_dtls_parameters(),
                )

            elif action == "transportConnected":
                transport_id = data.get("transportId")
                print(f"\nTransport connected: {transport_id}")
                if transport_id == self.send_transport_id:
                    self.send_connected = True
                    pending, self._pending_kinds = self._pending_kinds, []
                    for kind in pending:
                        await self._produce(kind)
                elif transport_id == self.recv_transport_id:
                    self.recv_connected = True
                    await self.send_request("getProducers")

            elif action == "produced":
                producer_id = payload["producerId"]
                self.producer_ids.append(producer_id)
                print(f"\nProducing: {producer_id}")

            elif action == "existingProducers":
                print(f"\nProducers of other clients: {payload or 'none'}")
                if self.recv_connected:
                    for producer_id in payload:
                        await self._consume(producer_id)

            elif action == "newProducer":
                producer_id = payload["producerId"]
                print(f"\n+ newProducer {producer_id}")
                if self.recv_connected:
                    await self._consume(producer_id)

            elif action == "clientLeft":
                producer_id = payload["producerId"]
                self.consumers.pop(producer_id, None)
                print(f"\n- clientLeft {producer_id}")

            elif action == "consumed":
                self.consumers[payload["producerId"]] = payload["id"]
                print(
                    f"\nConsuming {payload['kind']} producer {payload['producerId']} "
                    f"(consumer {payload['id']})"
                )

            elif action == "producerClosed":
                producer_id = payload["producerId"]
                if producer_id in self.producer_ids:
                    self.producer_ids.remove(producer_id)
                print(f"\nProducer closed: {producer_id}")

            elif action == "error":
                logger.error(f"Server error [{payload.get('code')}]: {payload.get('message')}")
                print(f"\nError: {payload.get('message')}")

            else:
                logger.warning(f"Unknown message action: {action}")

        except Exception as e:
            logger.error(f"Failed to handle message: {e}")

    async def receive_messages(self, websocket: ClientConnection) -> None:
        """Receive and handle messages from server.

        Args:
            websocket: WebSocket connection
        """
        try:
            async for message in websocket:
                if isinstance(message, bytes):
                    message_str = message.decode("utf-8")
                else:
                    message_str = message
                await self.handle_message(message_str)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed by server")
        except Exception as e:
            logger.error(f"Error receiving messages: {e}")
        finally:
            self.running = False

    async def handle_command(self, text: str) -> None:
        """Execute one slash command typed by the user."""
        command, _, argument = text[1:].partition(" ")
        command = command.lower()
        argument = argument.strip().lower()

        if command == "quit":
            self.running = False
            print("\nGoodbye!")
        elif command == "help":
            print(HELP_TEXT)
        elif command == "caps":
            await self.send_request("getRouterRtpCapabilities")
        elif command == "producers":
            await self.send_request("getProducers")
        elif command == "send":
            kind = argument or "audio"
            if kind not in ("audio", "video"):
                print("Usage: /send [audio|video]")
                return
            await self.request_produce(kind)
        elif command == "recv":
            await self.request_consume_all()
        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    async def input_loop(self) -> None:
        """Handle user input from stdin."""
        print("\n" + "=" * 60)
        print("Signaling CLI Client")
        print("=" * 60)
        print(HELP_TEXT)

        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, input, "> ")
                text = text.strip()

                if not text:
                    continue
                if not text.startswith("/"):
                    print("Commands start with /, type /help")
                    continue

                await self.handle_command(text)

            except EOFError:
                # Handle Ctrl+D
                self.running = False
                break
            except Exception as e:
                logger.error(f"Input error: {e}")

    async def run(self) -> None:
        """Run the CLI client."""
        try:
            async with websockets.connect(self.server_url) as websocket:
                self.websocket = websocket
                logger.info(f"Connected to {self.server_url}")

                def signal_handler() -> None:
                    self.running = False

                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, signal_handler)

                receiver = asyncio.create_task(self.receive_messages(websocket))
                try:
                    await self.input_loop()
                finally:
                    for sig in (signal.SIGINT, signal.SIGTERM):
                        loop.remove_signal_handler(sig)
                    receiver.cancel()
                    await asyncio.gather(receiver, return_exceptions=True)
                    self.websocket = None

        except Exception as e:
            logger.error(f"Client error: {e}")
            sys.exit(1)


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(description="WebSocket CLI client for the signaling server")
    parser.add_argument(
        "--host",
        type=str,
        default="ws://localhost:5000",
        help="WebSocket server URL (default: ws://localhost:5000)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    try:
        asyncio.run(CLIClient(args.host, verbose=args.verbose).run())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
