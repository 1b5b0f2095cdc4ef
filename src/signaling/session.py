"""Per-connection signaling state machine.

Translates inbound client requests into registry operations and media engine
calls, and produces the matching responses. One SignalingSession exists per
client connection; requests from that connection are handled in arrival
order.

Stale or malformed requests (unknown transport, unknown producer, failed
consumption gate, invalid frames) are dropped without a response unless
strict errors are enabled. Media engine failures fail only the request that
triggered them and never leave partial registry state behind.
"""

import json
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from pydantic import ValidationError

from src.signaling.config import SignalingConfig
from src.signaling.errors import (
    GateRejected,
    MediaEngineError,
    NoRecvTransport,
    NoSendTransport,
    NotFound,
    SignalingError,
    TransportAlreadyExists,
    UnknownClient,
)
from src.signaling.gatekeeper import can_consume
from src.signaling.media.base import MediaEngine, MediaKind, TransportDirection
from src.signaling.metrics import MetricsCollector, get_metrics_collector
from src.signaling.registry import SessionRegistry
from src.signaling.transport.base import ClientConnection
from src.signaling.transport.websocket_protocol import (
    CLIENT_ACTIONS,
    CloseProducerRequest,
    ConnectTransportRequest,
    ConsumedData,
    ConsumedMessage,
    ConsumeRequest,
    CreateRecvTransportRequest,
    CreateSendTransportRequest,
    ErrorData,
    ErrorMessage,
    ExistingProducersMessage,
    GetProducersRequest,
    GetRouterRtpCapabilitiesRequest,
    ProduceRequest,
    ProducedMessage,
    ProducerClosedMessage,
    ProducerRef,
    RecvTransportCreatedMessage,
    RequestId,
    RouterRtpCapabilitiesMessage,
    SendTransportCreatedMessage,
    ServerMessage,
    TransportConnectedMessage,
    TransportCreatedData,
    parse_client_request,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(Enum):
    """Session state machine states.

    State Transitions:
    - INIT → ACTIVE (client registered)
    - INIT → CLOSED (closed before registration)
    - ACTIVE → CLOSED (on disconnect)

    States:
    - INIT: Connection accepted, client id not yet assigned
    - ACTIVE: Client registered, requests are processed
    - CLOSED: Client removed and resources released, no further transitions
    """

    INIT = "init"
    ACTIVE = "active"
    CLOSED = "closed"


# Valid state transitions
VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.INIT: {SessionState.ACTIVE, SessionState.CLOSED},
    SessionState.ACTIVE: {SessionState.CLOSED},
    SessionState.CLOSED: set(),  # Terminal state
}


class SignalingSession:
    """Signaling protocol handler for a single client connection."""

    def __init__(
        self,
        connection: ClientConnection,
        registry: SessionRegistry,
        engine: MediaEngine,
        config: SignalingConfig | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize signaling session.

        Args:
            connection: Client connection (inbound frames, outbound queue)
            registry: Shared session registry
            engine: Shared media engine
            config: Signaling behavior settings
            metrics: Metrics collector (defaults to the global collector)
        """
        self.connection = connection
        self.registry = registry
        self.engine = engine
        self.config = config or SignalingConfig()
        self.metrics = metrics or get_metrics_collector()
        self.state = SessionState.INIT
        self.client_id: str | None = None
        self._closing = False

        self._handlers: dict[str, Callable[[Any], Awaitable[ServerMessage]]] = {
            "getRouterRtpCapabilities": self._handle_get_router_rtp_capabilities,
            "createSendTransport": self._handle_create_send_transport,
            "createRecvTransport": self._handle_create_recv_transport,
            "connectTransport": self._handle_connect_transport,
            "produce": self._handle_produce,
            "consume": self._handle_consume,
            "getProducers": self._handle_get_producers,
            "closeProducer": self._handle_close_producer,
        }

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def open(self) -> str:
        """Register the client and enter ACTIVE.

        Returns:
            Assigned client id
        """
        self.client_id = self.registry.register_client(self.connection)
        self.transition_state(SessionState.ACTIVE)
        self.metrics.record_client_connected()
        logger.info(
            "Client joined",
            extra={"client_id": self.client_id, "connection_id": self.connection.connection_id},
        )
        return self.client_id

    async def run(self) -> None:
        """Process inbound messages until the client disconnects, then clean up."""
        if self.state is SessionState.INIT:
            self.open()

        try:
            async for raw_message in self.connection.receive_messages():
                if not self.is_active:
                    break
                await self.handle_message(raw_message)
        except ConnectionError as e:
            logger.info(
                "Client connection lost",
                extra={"client_id": self.client_id, "error": str(e)},
            )
        finally:
            await self.close()

    async def handle_message(self, raw_message: str) -> None:
        """Decode, validate and dispatch one inbound frame."""
        try:
            data = json.loads(raw_message)
        except json.JSONDecodeError as e:
            self._drop("unknown", "INVALID_JSON", f"Invalid JSON: {e}")
            return

        if not isinstance(data, dict):
            self._drop("unknown", "INVALID_REQUEST", "Request must be a JSON object")
            return

        action = data.get("action")
        request_id = data.get("requestId")
        if not isinstance(request_id, str | int) or isinstance(request_id, bool):
            request_id = None

        # action may be any JSON value, including unhashable ones
        if not isinstance(action, str) or action not in CLIENT_ACTIONS:
            self._drop(
                action if isinstance(action, str) and action else "unknown",
                "UNKNOWN_ACTION",
                f"Unknown action: {action!r}",
                request_id,
            )
            return

        try:
            request = parse_client_request(data)
        except ValidationError as e:
            self._drop(action, "INVALID_REQUEST", _summarize_validation_error(e), request_id)
            return

        self.metrics.record_request(request.action)
        logger.debug(
            "Request received",
            extra={"client_id": self.client_id, "action": request.action},
        )

        try:
            response = await self._handlers[request.action](request)
        except SignalingError as e:
            self._drop(request.action, e.code, e.message, request.request_id, error=e)
            return

        response.request_id = request.request_id
        self._send(response)

    def transition_state(self, new_state: SessionState) -> None:
        """Transition session to a new state with validation.

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state

        logger.debug(
            "Session state transition",
            extra={
                "client_id": self.client_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    async def close(self) -> None:
        """Remove the client, fan out its departure and release engine resources.

        Safe to call any number of times; only the first call has effect.
        """
        if self._closing or self.state is SessionState.CLOSED:
            return
        self._closing = True

        client_id = self.client_id
        if client_id is not None:
            transport_ids: list[str] = []
            try:
                client = self.registry.get_client(client_id)
                transport_ids = [
                    record.transport_id
                    for record in (client.send_transport, client.recv_transport)
                    if record is not None and not record.is_closed
                ]
            except UnknownClient:
                pass

            # clientLeft fanout runs inside remove_client
            removed = self.registry.remove_client(client_id)

            for producer_id in removed:
                await self._release("close_producer", self.engine.close_producer, producer_id)
            for transport_id in transport_ids:
                await self._release("close_transport", self.engine.close_transport, transport_id)

            self.metrics.record_client_disconnected()
            logger.info(
                "Client left",
                extra={"client_id": client_id, "removed_producers": len(removed)},
            )

        self.transition_state(SessionState.CLOSED)
        await self.connection.close()

    # ------------------------------------------------------------------
    # Request handlers
    # ------------------------------------------------------------------

    async def _handle_get_router_rtp_capabilities(
        self, request: GetRouterRtpCapabilitiesRequest
    ) -> ServerMessage:
        return RouterRtpCapabilitiesMessage(data=self.engine.rtp_capabilities)

    async def _handle_create_send_transport(
        self, request: CreateSendTransportRequest
    ) -> ServerMessage:
        data = await self._create_transport(TransportDirection.SEND)
        return SendTransportCreatedMessage(data=data)

    async def _handle_create_recv_transport(
        self, request: CreateRecvTransportRequest
    ) -> ServerMessage:
        data = await self._create_transport(TransportDirection.RECV)
        return RecvTransportCreatedMessage(data=data)

    async def _create_transport(self, direction: TransportDirection) -> TransportCreatedData:
        client_id = self._require_client_id()
        existing = self.registry.get_client(client_id).transport(direction)
        if existing is not None and not existing.is_closed:
            raise TransportAlreadyExists(client_id, direction.value, existing.transport_id)

        params = await self._engine_call(
            "create_transport", self.engine.create_transport(direction)
        )

        try:
            self.registry.attach_transport(client_id, direction, params.id)
        except SignalingError:
            # Client left or a concurrent create won the slot while the engine was busy
            await self._release("close_transport", self.engine.close_transport, params.id)
            raise

        self.metrics.record_transport_created(direction.value)
        logger.info(
            "Transport created",
            extra={
                "client_id": client_id,
                "transport_id": params.id,
                "direction": direction.value,
            },
        )

        return TransportCreatedData(
            id=params.id,
            ice_parameters=params.ice_parameters,
            ice_candidates=params.ice_candidates,
            dtls_parameters=params.dtls_parameters,
            ice_servers=params.ice_servers,
        )

    async def _handle_connect_transport(self, request: ConnectTransportRequest) -> ServerMessage:
        client_id = self._require_client_id()
        record = self.registry.find_transport(client_id, request.transport_id)
        if record is None:
            raise NotFound("transport", request.transport_id)

        await self._engine_call(
            "connect_transport",
            self.engine.connect_transport(record.transport_id, request.dtls_parameters),
        )
        self.registry.mark_transport_connected(client_id, record.transport_id)

        logger.info(
            "Transport connected",
            extra={"client_id": client_id, "transport_id": record.transport_id},
        )
        return TransportConnectedMessage(transport_id=record.transport_id)

    async def _handle_produce(self, request: ProduceRequest) -> ServerMessage:
        client_id = self._require_client_id()
        send_transport = self.registry.get_client(client_id).send_transport
        if send_transport is None or not send_transport.is_connected:
            raise NoSendTransport(client_id)

        kind = MediaKind(request.kind)
        producer_id = await self._engine_call(
            "produce",
            self.engine.produce(send_transport.transport_id, kind, request.rtp_parameters),
        )

        try:
            # newProducer fanout runs inside add_producer
            self.registry.add_producer(client_id, kind, producer_id)
        except SignalingError:
            await self._release("close_producer", self.engine.close_producer, producer_id)
            raise

        return ProducedMessage(data=ProducerRef(producer_id=producer_id))

    async def _handle_consume(self, request: ConsumeRequest) -> ServerMessage:
        client_id = self._require_client_id()
        producer = self.registry.get_producer(request.producer_id)

        if not can_consume(client_id, producer, request.rtp_capabilities, self.engine):
            raise GateRejected(client_id, producer.producer_id)

        recv_transport = self.registry.get_client(client_id).recv_transport
        if recv_transport is None or not recv_transport.is_connected:
            raise NoRecvTransport(client_id)

        consumer = await self._engine_call(
            "consume",
            self.engine.consume(
                recv_transport.transport_id,
                producer.producer_id,
                request.rtp_capabilities,
                paused=False,
            ),
        )

        if not self.registry.has_client(client_id):
            # Disconnected while the engine was busy; the consumer dies with its transport
            raise UnknownClient(client_id)

        return ConsumedMessage(
            data=ConsumedData(
                id=consumer.id,
                producer_id=consumer.producer_id,
                kind=consumer.kind,
                rtp_parameters=consumer.rtp_parameters,
            )
        )

    async def _handle_get_producers(self, request: GetProducersRequest) -> ServerMessage:
        client_id = self._require_client_id()
        return ExistingProducersMessage(data=self.registry.list_producers_excluding(client_id))

    async def _handle_close_producer(self, request: CloseProducerRequest) -> ServerMessage:
        client_id = self._require_client_id()
        # clientLeft fanout runs inside remove_producer
        self.registry.remove_producer(client_id, request.producer_id)
        await self._release("close_producer", self.engine.close_producer, request.producer_id)
        return ProducerClosedMessage(data=ProducerRef(producer_id=request.producer_id))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_client_id(self) -> str:
        if self.client_id is None or not self.is_active:
            raise UnknownClient(self.client_id or "<unregistered>")
        return self.client_id

    async def _engine_call(self, operation: str, call: Awaitable[T]) -> T:
        """Await a media engine call, timing it and normalizing failures.

        Raises:
            MediaEngineError: If the engine call fails for any reason
        """
        start = time.monotonic()
        try:
            result = await call
        except SignalingError:
            self.metrics.record_engine_call(time.monotonic() - start, error=True)
            raise
        except Exception as e:
            self.metrics.record_engine_call(time.monotonic() - start, error=True)
            raise MediaEngineError(f"{operation} failed: {e}", {"operation": operation}) from e

        self.metrics.record_engine_call(time.monotonic() - start)
        return result

    async def _release(
        self, operation: str, release: Callable[[str], Awaitable[None]], resource_id: str
    ) -> None:
        try:
            await release(resource_id)
        except Exception as e:
            logger.warning(
                "Failed to release media engine resource",
                extra={
                    "client_id": self.client_id,
                    "operation": operation,
                    "resource_id": resource_id,
                    "error": str(e),
                },
            )

    def _send(self, message: ServerMessage) -> None:
        try:
            self.connection.post(message)
        except ConnectionError as e:
            logger.debug(
                "Response discarded, connection closed",
                extra={"client_id": self.client_id, "action": message.action, "error": str(e)},
            )

    def _drop(
        self,
        action: str,
        code: str,
        message: str,
        request_id: RequestId | None = None,
        error: Exception | None = None,
    ) -> None:
        self.metrics.record_request_dropped(action, code)
        log = logger.error if isinstance(error, MediaEngineError) else logger.warning
        log(
            "Request dropped",
            extra={
                "client_id": self.client_id,
                "action": action,
                "code": code,
                "error": message,
            },
        )

        if self.config.strict_errors:
            self._send(
                ErrorMessage(
                    data=ErrorData(code=code, message=message, request_action=action),
                    request_id=request_id,
                )
            )


def _summarize_validation_error(error: ValidationError) -> str:
    parts = []
    for detail in error.errors():
        location = ".".join(str(p) for p in detail.get("loc", ()))
        parts.append(f"{location}: {detail.get('msg')}" if location else str(detail.get("msg")))
    return "; ".join(parts) or str(error)
