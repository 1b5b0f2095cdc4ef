"""Session registry: authoritative store of clients, transports and producers.

All reads and mutations run under a single short-held re-entrant lock, so no
caller ever observes a partially applied mutation. The lock is never held
across a media engine call; callers perform engine work first and apply the
result here afterwards, re-checking that the client still exists.

Listeners are notified inside the critical section of the mutation that
triggered them, which keeps event order per recipient identical to mutation
order.

Invariants:
    - Every producer's owner is a registered client (removed together).
    - A producer id appears in the global index iff it appears in exactly one
      owner's producer set.
    - Client and live producer ids are unique.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from src.signaling.errors import (
    NoSendTransport,
    NotFound,
    ProducerAlreadyExists,
    TransportAlreadyExists,
    UnknownClient,
)
from src.signaling.media.base import MediaKind, TransportDirection
from src.signaling.transport.base import ClientConnection

logger = logging.getLogger(__name__)


class TransportState(Enum):
    """Transport negotiation state.

    State Transitions:
    - CREATED → CONNECTED (on successful engine connect)
    - * → CLOSED (on client removal)
    """

    CREATED = "created"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass
class TransportRecord:
    """A client transport slot entry."""

    transport_id: str
    direction: TransportDirection
    state: TransportState = TransportState.CREATED

    @property
    def is_connected(self) -> bool:
        return self.state is TransportState.CONNECTED

    @property
    def is_closed(self) -> bool:
        return self.state is TransportState.CLOSED


@dataclass(frozen=True)
class ProducerRecord:
    """A live producer. Ownership is immutable for the producer's lifetime."""

    producer_id: str
    owner_client_id: str
    kind: MediaKind


@dataclass
class ClientRecord:
    """A registered client and everything it owns."""

    client_id: str
    connection: ClientConnection
    send_transport: TransportRecord | None = None
    recv_transport: TransportRecord | None = None
    # dict used as an insertion-ordered set
    producer_ids: dict[str, None] = field(default_factory=dict)

    def transport(self, direction: TransportDirection) -> TransportRecord | None:
        if direction is TransportDirection.SEND:
            return self.send_transport
        return self.recv_transport


@dataclass(frozen=True)
class RegistrySnapshot:
    """Point-in-time counts for health and metrics reporting."""

    clients: int
    producers: int
    transports: int


class RegistryListener(Protocol):
    """Observer of producer lifecycle mutations."""

    def on_producer_added(self, producer: ProducerRecord) -> None: ...

    def on_producers_removed(self, owner_client_id: str, producer_ids: list[str]) -> None: ...


class SessionRegistry:
    """Single source of truth for client, transport and producer existence.

    Thread-safety: all public methods are safe to call from any thread; each
    holds the registry lock only for in-memory bookkeeping.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._clients: dict[str, ClientRecord] = {}
        # Insertion order is registration order
        self._producers: dict[str, ProducerRecord] = {}
        self._listeners: list[RegistryListener] = []

    def add_listener(self, listener: RegistryListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register_client(self, connection: ClientConnection) -> str:
        """Register a new client with empty transports and producer set.

        Args:
            connection: Outbound channel for the client

        Returns:
            New unique client id
        """
        with self._lock:
            client_id = str(uuid.uuid4())
            while client_id in self._clients:
                client_id = str(uuid.uuid4())
            self._clients[client_id] = ClientRecord(client_id=client_id, connection=connection)

        logger.info("Client registered", extra={"client_id": client_id})
        return client_id

    def attach_transport(
        self, client_id: str, direction: TransportDirection, transport_id: str
    ) -> TransportRecord:
        """Store a newly created transport in the client's slot.

        Raises:
            UnknownClient: If the client is not registered
            TransportAlreadyExists: If the slot holds a transport that is not closed
        """
        with self._lock:
            client = self._require_client(client_id)
            existing = client.transport(direction)
            if existing is not None and not existing.is_closed:
                raise TransportAlreadyExists(client_id, direction.value, existing.transport_id)

            record = TransportRecord(transport_id=transport_id, direction=direction)
            if direction is TransportDirection.SEND:
                client.send_transport = record
            else:
                client.recv_transport = record

        logger.debug(
            "Transport attached",
            extra={
                "client_id": client_id,
                "transport_id": transport_id,
                "direction": direction.value,
            },
        )
        return record

    def mark_transport_connected(self, client_id: str, transport_id: str) -> TransportRecord:
        """Mark one of the client's transports as connected.

        Raises:
            UnknownClient: If the client is not registered
            NotFound: If neither slot holds an open transport with this id
        """
        with self._lock:
            record = self._find_transport(self._require_client(client_id), transport_id)
            if record is None:
                raise NotFound("transport", transport_id)
            record.state = TransportState.CONNECTED
            return record

    def add_producer(self, client_id: str, kind: MediaKind, producer_id: str) -> ProducerRecord:
        """Register a producer under its owner and in the global index.

        Raises:
            UnknownClient: If the client is not registered
            NoSendTransport: If the client has no connected send transport
            ProducerAlreadyExists: If the id is already live
        """
        with self._lock:
            client = self._require_client(client_id)
            if client.send_transport is None or not client.send_transport.is_connected:
                raise NoSendTransport(client_id)
            if producer_id in self._producers:
                raise ProducerAlreadyExists(producer_id)

            record = ProducerRecord(producer_id=producer_id, owner_client_id=client_id, kind=kind)
            self._producers[producer_id] = record
            client.producer_ids[producer_id] = None

            for listener in self._listeners:
                self._notify(listener.on_producer_added, record)

        logger.info(
            "Producer registered",
            extra={"client_id": client_id, "producer_id": producer_id, "kind": kind.value},
        )
        return record

    def remove_producer(self, client_id: str, producer_id: str) -> ProducerRecord:
        """Remove one producer owned by the client (explicit close).

        Raises:
            UnknownClient: If the client is not registered
            NotFound: If the client does not own a producer with this id
        """
        with self._lock:
            client = self._require_client(client_id)
            if producer_id not in client.producer_ids:
                raise NotFound("producer", producer_id)

            del client.producer_ids[producer_id]
            record = self._producers.pop(producer_id)

            for listener in self._listeners:
                self._notify(listener.on_producers_removed, client_id, [producer_id])

        logger.info(
            "Producer removed", extra={"client_id": client_id, "producer_id": producer_id}
        )
        return record

    def remove_client(self, client_id: str) -> list[str]:
        """Remove a client and every producer it owns.

        Both transport slots are marked closed. Removing an unknown or already
        removed client is a no-op.

        Returns:
            Removed producer ids in the owner's registration order
        """
        with self._lock:
            client = self._clients.pop(client_id, None)
            if client is None:
                return []

            removed = list(client.producer_ids)
            for producer_id in removed:
                self._producers.pop(producer_id, None)
            client.producer_ids.clear()

            for record in (client.send_transport, client.recv_transport):
                if record is not None:
                    record.state = TransportState.CLOSED

            if removed:
                for listener in self._listeners:
                    self._notify(listener.on_producers_removed, client_id, removed)

        logger.info(
            "Client removed",
            extra={"client_id": client_id, "removed_producers": len(removed)},
        )
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_client(self, client_id: str) -> bool:
        with self._lock:
            return client_id in self._clients

    def get_client(self, client_id: str) -> ClientRecord:
        """Look up a client.

        Raises:
            UnknownClient: If the client is not registered
        """
        with self._lock:
            return self._require_client(client_id)

    def find_transport(self, client_id: str, transport_id: str) -> TransportRecord | None:
        """Return the client's open transport with this id, if any."""
        with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                return None
            return self._find_transport(client, transport_id)

    def get_producer(self, producer_id: str) -> ProducerRecord:
        """Look up a live producer.

        Raises:
            NotFound: If no live producer has this id
        """
        with self._lock:
            record = self._producers.get(producer_id)
            if record is None:
                raise NotFound("producer", producer_id)
            return record

    def list_producers_excluding(self, client_id: str) -> list[str]:
        """List live producers not owned by the client, oldest first."""
        with self._lock:
            return [
                producer_id
                for producer_id, record in self._producers.items()
                if record.owner_client_id != client_id
            ]

    def producers_owned_by(self, client_id: str) -> list[str]:
        with self._lock:
            client = self._clients.get(client_id)
            return list(client.producer_ids) if client is not None else []

    def client_ids(self) -> list[str]:
        with self._lock:
            return list(self._clients)

    def connections_excluding(self, client_id: str) -> list[tuple[str, ClientConnection]]:
        """Connections of every registered client except one, in registration order."""
        with self._lock:
            return [
                (cid, client.connection)
                for cid, client in self._clients.items()
                if cid != client_id
            ]

    def snapshot(self) -> RegistrySnapshot:
        with self._lock:
            transports = sum(
                1
                for client in self._clients.values()
                for record in (client.send_transport, client.recv_transport)
                if record is not None and not record.is_closed
            )
            return RegistrySnapshot(
                clients=len(self._clients),
                producers=len(self._producers),
                transports=transports,
            )

    # ------------------------------------------------------------------
    # Internals (lock held)
    # ------------------------------------------------------------------

    def _require_client(self, client_id: str) -> ClientRecord:
        client = self._clients.get(client_id)
        if client is None:
            raise UnknownClient(client_id)
        return client

    @staticmethod
    def _find_transport(client: ClientRecord, transport_id: str) -> TransportRecord | None:
        for record in (client.send_transport, client.recv_transport):
            if record is not None and record.transport_id == transport_id and not record.is_closed:
                return record
        return None

    @staticmethod
    def _notify(callback, *args) -> None:  # type: ignore[no-untyped-def]
        try:
            callback(*args)
        except Exception as e:
            logger.error(
                "Registry listener failed",
                extra={"error": str(e)},
                exc_info=True,
            )
