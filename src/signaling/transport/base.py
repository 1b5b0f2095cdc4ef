"""Base transport abstraction for client connections.

Defines the interface the signaling session uses to talk to a client,
independent of the framing used on the wire.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from src.signaling.transport.websocket_protocol import ServerMessage


class ClientConnection(ABC):
    """Bidirectional message channel to a single client.

    Outbound messages are posted without blocking and delivered in posting
    order (FIFO per connection).
    """

    @abstractmethod
    def post(self, message: ServerMessage) -> None:
        """Queue a message for delivery to the client.

        Args:
            message: Server message to deliver

        Raises:
            ConnectionError: If the connection is closed
        """
        pass

    @abstractmethod
    async def receive_messages(self) -> AsyncIterator[str]:
        """Receive raw text frames from the client until it disconnects.

        Yields:
            str: Raw message text
        """
        # Using yield to make this an async generator
        if False:
            yield ""

    @abstractmethod
    async def close(self) -> None:
        """Flush pending outbound messages and close the connection."""
        pass

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Unique connection identifier for logging."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the connection is still open."""
        pass


class Transport(ABC):
    """Base transport server.

    Manages the lifecycle of a transport type and hands out a ClientConnection
    per accepted client.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start the transport server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport server and close open connections."""
        pass

    @abstractmethod
    async def accept_connection(self) -> ClientConnection:
        """Block until a client connects and return its connection.

        Raises:
            RuntimeError: If the transport is not running
        """
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        pass
