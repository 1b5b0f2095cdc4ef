"""Loopback media engine for development and testing.

Implements the MediaEngine interface in-process without moving any media.
It keeps the same bookkeeping a real SFU worker would (router capabilities,
transports, producers, consumers, RTC port allocation) so the signaling core
can be exercised end to end, and it can be killed to simulate worker death.
"""

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Any, Final

from src.signaling.config import MediaEngineConfig
from src.signaling.errors import MediaEngineDied, MediaEngineError
from src.signaling.media.base import (
    ConsumerParameters,
    DiedCallback,
    MediaEngine,
    MediaKind,
    TransportDirection,
    TransportParameters,
)

# Dynamic RTP payload types start here (RFC 3551)
FIRST_DYNAMIC_PAYLOAD_TYPE: Final[int] = 100

logger = logging.getLogger(__name__)


@dataclass
class _LoopbackTransport:
    id: str
    direction: TransportDirection
    port: int
    connected: bool = False
    producer_ids: set[str] = field(default_factory=set)
    consumer_ids: set[str] = field(default_factory=set)


@dataclass
class _LoopbackProducer:
    id: str
    kind: MediaKind
    transport_id: str
    mime_types: set[str]
    consumer_ids: set[str] = field(default_factory=set)


@dataclass
class _LoopbackConsumer:
    id: str
    producer_id: str
    transport_id: str


class LoopbackMediaEngine(MediaEngine):
    """In-process media engine with SFU-style bookkeeping.

    Attributes:
        config: Media engine configuration (ports, addresses, codecs)
        latency_s: Artificial delay applied to every async engine call
    """

    def __init__(self, config: MediaEngineConfig | None = None, latency_s: float = 0.0) -> None:
        self.config = config or MediaEngineConfig()
        self.latency_s = latency_s
        self._alive = False
        self._rtp_capabilities: dict[str, Any] = {}
        self._transports: dict[str, _LoopbackTransport] = {}
        self._producers: dict[str, _LoopbackProducer] = {}
        self._consumers: dict[str, _LoopbackConsumer] = {}
        self._free_ports = list(range(self.config.rtc_min_port, self.config.rtc_max_port + 1))
        self._died_callbacks: list[DiedCallback] = []
        self._next_mid = 0

        logger.info(
            "LoopbackMediaEngine initialized",
            extra={
                "rtc_min_port": self.config.rtc_min_port,
                "rtc_max_port": self.config.rtc_max_port,
            },
        )

    @property
    def rtp_capabilities(self) -> dict[str, Any]:
        return self._rtp_capabilities

    @property
    def is_alive(self) -> bool:
        return self._alive

    @property
    def transport_count(self) -> int:
        return len(self._transports)

    @property
    def producer_count(self) -> int:
        return len(self._producers)

    async def start(self) -> None:
        """Start the engine and create the router from the configured codecs."""
        self._alive = True
        await self.create_router(self.config.media_codecs)
        logger.info(
            "Loopback media engine started",
            extra={"codecs": [c["mimeType"] for c in self._rtp_capabilities["codecs"]]},
        )

    async def create_router(self, media_codecs: list[dict[str, Any]]) -> dict[str, Any]:
        await self._suspend()

        codecs = []
        for index, codec in enumerate(media_codecs):
            entry: dict[str, Any] = {
                "kind": codec["kind"],
                "mimeType": codec["mimeType"],
                "clockRate": codec["clockRate"],
                "preferredPayloadType": FIRST_DYNAMIC_PAYLOAD_TYPE + index,
                "parameters": dict(codec.get("parameters", {})),
                "rtcpFeedback": [],
            }
            if "channels" in codec:
                entry["channels"] = codec["channels"]
            codecs.append(entry)

        self._rtp_capabilities = {"codecs": codecs, "headerExtensions": []}
        return self._rtp_capabilities

    async def create_transport(self, direction: TransportDirection) -> TransportParameters:
        await self._suspend()

        if not self._free_ports:
            raise MediaEngineError(
                "No free RTC ports",
                {
                    "rtc_min_port": self.config.rtc_min_port,
                    "rtc_max_port": self.config.rtc_max_port,
                },
            )

        port = self._free_ports.pop(0)
        transport = _LoopbackTransport(id=str(uuid.uuid4()), direction=direction, port=port)
        self._transports[transport.id] = transport

        logger.debug(
            "Loopback transport created",
            extra={"transport_id": transport.id, "direction": direction.value, "port": port},
        )

        return TransportParameters(
            id=transport.id,
            ice_parameters={
                "usernameFragment": secrets.token_hex(8),
                "password": secrets.token_hex(16),
                "iceLite": True,
            },
            ice_candidates=self._build_candidates(port),
            dtls_parameters={
                "role": "auto",
                "fingerprints": [{"algorithm": "sha-256", "value": _fake_fingerprint()}],
            },
            ice_servers=list(self.config.ice_servers),
        )

    async def connect_transport(self, transport_id: str, dtls_parameters: dict[str, Any]) -> None:
        await self._suspend()

        transport = self._get_transport(transport_id)
        if transport.connected:
            raise MediaEngineError(f"Transport already connected: {transport_id}")
        fingerprints = dtls_parameters.get("fingerprints") if dtls_parameters else None
        if not fingerprints:
            raise MediaEngineError(
                "dtlsParameters must include at least one fingerprint",
                {"transport_id": transport_id},
            )

        transport.connected = True

    async def produce(
        self, transport_id: str, kind: MediaKind, rtp_parameters: dict[str, Any]
    ) -> str:
        await self._suspend()

        transport = self._get_transport(transport_id)
        if transport.direction is not TransportDirection.SEND:
            raise MediaEngineError(f"Cannot produce on a recv transport: {transport_id}")

        router_mimes = {
            c["mimeType"].lower()
            for c in self._rtp_capabilities.get("codecs", [])
            if c["kind"] == kind.value
        }
        requested = {c["mimeType"].lower() for c in rtp_parameters.get("codecs", [])}
        mime_types = requested or router_mimes
        if not mime_types or not mime_types <= router_mimes:
            raise MediaEngineError(
                f"Unsupported {kind.value} codecs: {sorted(mime_types - router_mimes)}",
                {"transport_id": transport_id},
            )

        producer = _LoopbackProducer(
            id=str(uuid.uuid4()), kind=kind, transport_id=transport_id, mime_types=mime_types
        )
        self._producers[producer.id] = producer
        transport.producer_ids.add(producer.id)
        return producer.id

    def can_consume(self, producer_id: str, rtp_capabilities: dict[str, Any]) -> bool:
        producer = self._producers.get(producer_id)
        if producer is None or not isinstance(rtp_capabilities, dict):
            return False
        offered = {
            c.get("mimeType", "").lower()
            for c in rtp_capabilities.get("codecs", [])
            if isinstance(c, dict)
        }
        return bool(offered & producer.mime_types)

    async def consume(
        self,
        transport_id: str,
        producer_id: str,
        rtp_capabilities: dict[str, Any],
        paused: bool = False,
    ) -> ConsumerParameters:
        await self._suspend()

        transport = self._get_transport(transport_id)
        if transport.direction is not TransportDirection.RECV:
            raise MediaEngineError(f"Cannot consume on a send transport: {transport_id}")
        producer = self._producers.get(producer_id)
        if producer is None:
            raise MediaEngineError(f"Unknown producer: {producer_id}")
        if not self.can_consume(producer_id, rtp_capabilities):
            raise MediaEngineError(f"Incompatible rtpCapabilities for producer {producer_id}")

        codecs = [
            c
            for c in self._rtp_capabilities["codecs"]
            if c["mimeType"].lower() in producer.mime_types
        ]
        consumer = _LoopbackConsumer(
            id=str(uuid.uuid4()), producer_id=producer_id, transport_id=transport_id
        )
        self._consumers[consumer.id] = consumer
        transport.consumer_ids.add(consumer.id)
        producer.consumer_ids.add(consumer.id)

        mid = str(self._next_mid)
        self._next_mid += 1

        return ConsumerParameters(
            id=consumer.id,
            producer_id=producer_id,
            kind=producer.kind.value,
            rtp_parameters={
                "mid": mid,
                "codecs": codecs,
                "encodings": [{"ssrc": secrets.randbelow(2**32 - 1) + 1}],
                "paused": paused,
            },
        )

    async def close_transport(self, transport_id: str) -> None:
        transport = self._transports.pop(transport_id, None)
        if transport is None:
            return
        for producer_id in list(transport.producer_ids):
            self._drop_producer(producer_id)
        for consumer_id in transport.consumer_ids:
            consumer = self._consumers.pop(consumer_id, None)
            if consumer is not None and consumer.producer_id in self._producers:
                self._producers[consumer.producer_id].consumer_ids.discard(consumer_id)
        self._free_ports.append(transport.port)

    async def close_producer(self, producer_id: str) -> None:
        self._drop_producer(producer_id)

    def add_died_callback(self, callback: DiedCallback) -> None:
        self._died_callbacks.append(callback)

    def kill(self, reason: str = "worker died") -> None:
        """Simulate engine death: mark unusable and fire died callbacks once."""
        if not self._alive:
            return
        self._alive = False
        logger.error("Loopback media engine died", extra={"reason": reason})
        for callback in self._died_callbacks:
            callback(reason)

    async def close(self) -> None:
        self._alive = False
        self._transports.clear()
        self._producers.clear()
        self._consumers.clear()
        self._free_ports = list(range(self.config.rtc_min_port, self.config.rtc_max_port + 1))

    async def _suspend(self) -> None:
        if self.latency_s > 0:
            await asyncio.sleep(self.latency_s)
        if not self._alive:
            raise MediaEngineDied("Media engine is not running")

    def _get_transport(self, transport_id: str) -> _LoopbackTransport:
        transport = self._transports.get(transport_id)
        if transport is None:
            raise MediaEngineError(f"Unknown transport: {transport_id}")
        return transport

    def _drop_producer(self, producer_id: str) -> None:
        producer = self._producers.pop(producer_id, None)
        if producer is None:
            return
        transport = self._transports.get(producer.transport_id)
        if transport is not None:
            transport.producer_ids.discard(producer_id)
        for consumer_id in producer.consumer_ids:
            consumer = self._consumers.pop(consumer_id, None)
            if consumer is not None and consumer.transport_id in self._transports:
                self._transports[consumer.transport_id].consumer_ids.discard(consumer_id)

    def _build_candidates(self, port: int) -> list[dict[str, Any]]:
        ip = self.config.announced_ip or self.config.listen_ip
        candidates = []
        protocols = []
        if self.config.enable_udp:
            protocols.append("udp")
        if self.config.enable_tcp:
            protocols.append("tcp")
        if not self.config.prefer_udp:
            protocols.reverse()
        for rank, protocol in enumerate(protocols):
            candidate: dict[str, Any] = {
                "foundation": f"{protocol}candidate",
                "priority": 1076302079 - rank * 1000,
                "ip": ip,
                "address": ip,
                "protocol": protocol,
                "port": port,
                "type": "host",
            }
            if protocol == "tcp":
                candidate["tcpType"] = "passive"
            candidates.append(candidate)
        return candidates


def _fake_fingerprint() -> str:
    return ":".join(f"{b:02X}" for b in secrets.token_bytes(32))
