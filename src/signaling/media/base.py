"""Base media engine abstraction.

Defines the capability surface the signaling core calls into. The engine owns
ICE/DTLS establishment, RTP routing and codec negotiation; the core only
stores the identifiers it hands back.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TransportDirection(Enum):
    """Direction of a client transport, fixed at creation."""

    SEND = "send"
    RECV = "recv"


class MediaKind(Enum):
    """Kind of media carried by a producer."""

    AUDIO = "audio"
    VIDEO = "video"


@dataclass
class TransportParameters:
    """Connection parameters returned to the client for a new transport."""

    id: str
    ice_parameters: dict[str, Any]
    ice_candidates: list[dict[str, Any]]
    dtls_parameters: dict[str, Any]
    ice_servers: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ConsumerParameters:
    """Parameters of a consumer created on a recv transport."""

    id: str
    producer_id: str
    kind: str
    rtp_parameters: dict[str, Any]


DiedCallback = Callable[[str], None]


class MediaEngine(ABC):
    """Media engine interface.

    All operations except can_consume may suspend for an unbounded time.
    Implementations raise MediaEngineError for per-request failures and fire
    died callbacks when the engine as a whole becomes unusable.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start the engine and create the shared router.

        Raises:
            MediaEngineError: If the engine cannot be started
        """
        pass

    @abstractmethod
    async def create_router(self, media_codecs: list[dict[str, Any]]) -> dict[str, Any]:
        """Create the router and return its RTP capabilities."""
        pass

    @property
    @abstractmethod
    def rtp_capabilities(self) -> dict[str, Any]:
        """Router RTP capabilities (opaque to the core)."""
        pass

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the engine can still create transports."""
        pass

    @abstractmethod
    async def create_transport(self, direction: TransportDirection) -> TransportParameters:
        """Create a WebRTC transport."""
        pass

    @abstractmethod
    async def connect_transport(self, transport_id: str, dtls_parameters: dict[str, Any]) -> None:
        """Complete the DTLS handshake parameters for a transport."""
        pass

    @abstractmethod
    async def produce(
        self, transport_id: str, kind: MediaKind, rtp_parameters: dict[str, Any]
    ) -> str:
        """Create a producer on a send transport and return its id."""
        pass

    @abstractmethod
    async def consume(
        self,
        transport_id: str,
        producer_id: str,
        rtp_capabilities: dict[str, Any],
        paused: bool = False,
    ) -> ConsumerParameters:
        """Create a consumer for a producer on a recv transport."""
        pass

    @abstractmethod
    def can_consume(self, producer_id: str, rtp_capabilities: dict[str, Any]) -> bool:
        """Check codec compatibility between a producer and receive capabilities."""
        pass

    @abstractmethod
    async def close_transport(self, transport_id: str) -> None:
        """Close a transport and everything created on it. Unknown ids are ignored."""
        pass

    @abstractmethod
    async def close_producer(self, producer_id: str) -> None:
        """Close a producer. Unknown ids are ignored."""
        pass

    @abstractmethod
    def add_died_callback(self, callback: DiedCallback) -> None:
        """Register a callback fired once if the engine dies."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release all engine resources."""
        pass
