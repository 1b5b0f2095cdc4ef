"""WebSocket message protocol definitions.

Defines Pydantic models for WebSocket message serialization/deserialization.
Messages are JSON-encoded text frames. Requests are flat objects keyed by
``action``; responses and broadcasts wrap their payload in ``data`` (except
``transportConnected``, which carries ``transportId`` at top level). Field
names are camelCase on the wire.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

RequestId = str | int


class WireModel(BaseModel):
    """Base model with camelCase wire aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Client → Server requests
# ---------------------------------------------------------------------------


class GetRouterRtpCapabilitiesRequest(WireModel):
    """Client → Server: Ask for the router RTP capabilities."""

    action: Literal["getRouterRtpCapabilities"]
    request_id: RequestId | None = None


class CreateSendTransportRequest(WireModel):
    """Client → Server: Create the client's send transport."""

    action: Literal["createSendTransport"]
    request_id: RequestId | None = None


class CreateRecvTransportRequest(WireModel):
    """Client → Server: Create the client's recv transport."""

    action: Literal["createRecvTransport"]
    request_id: RequestId | None = None


class ConnectTransportRequest(WireModel):
    """Client → Server: Connect one of the client's transports."""

    action: Literal["connectTransport"]
    transport_id: str = Field(..., min_length=1, description="Transport to connect")
    dtls_parameters: dict[str, Any] = Field(..., description="Client DTLS parameters")
    request_id: RequestId | None = None


class ProduceRequest(WireModel):
    """Client → Server: Start producing media on the send transport."""

    action: Literal["produce"]
    kind: Literal["audio", "video"] = Field(..., description="Media kind")
    rtp_parameters: dict[str, Any] = Field(..., description="Producer RTP parameters")
    request_id: RequestId | None = None


class ConsumeRequest(WireModel):
    """Client → Server: Consume a remote producer on the recv transport."""

    action: Literal["consume"]
    producer_id: str = Field(..., min_length=1, description="Producer to consume")
    rtp_capabilities: dict[str, Any] = Field(..., description="Client receive capabilities")
    request_id: RequestId | None = None


class GetProducersRequest(WireModel):
    """Client → Server: List producers owned by other clients."""

    action: Literal["getProducers"]
    request_id: RequestId | None = None


class CloseProducerRequest(WireModel):
    """Client → Server: Close one of the client's own producers."""

    action: Literal["closeProducer"]
    producer_id: str = Field(..., min_length=1, description="Producer to close")
    request_id: RequestId | None = None


ClientRequest = Annotated[
    GetRouterRtpCapabilitiesRequest
    | CreateSendTransportRequest
    | CreateRecvTransportRequest
    | ConnectTransportRequest
    | ProduceRequest
    | ConsumeRequest
    | GetProducersRequest
    | CloseProducerRequest,
    Field(discriminator="action"),
]

_client_request_adapter: TypeAdapter[ClientRequest] = TypeAdapter(ClientRequest)

CLIENT_ACTIONS = frozenset(
    {
        "getRouterRtpCapabilities",
        "createSendTransport",
        "createRecvTransport",
        "connectTransport",
        "produce",
        "consume",
        "getProducers",
        "closeProducer",
    }
)


def parse_client_request(data: dict[str, Any]) -> ClientRequest:
    """Validate a decoded JSON object as a client request.

    Raises:
        pydantic.ValidationError: If the action is unknown or fields are invalid
    """
    return _client_request_adapter.validate_python(data)


# ---------------------------------------------------------------------------
# Server → Client messages
# ---------------------------------------------------------------------------


class ServerMessage(WireModel):
    """Base class for all server → client messages."""

    action: str
    request_id: RequestId | None = None

    def to_json(self) -> str:
        """Serialize with wire aliases, omitting an unset request id."""
        exclude = {"request_id"} if self.request_id is None else None
        return self.model_dump_json(by_alias=True, exclude=exclude)


class ProducerRef(WireModel):
    producer_id: str


class TransportCreatedData(WireModel):
    id: str
    ice_parameters: dict[str, Any]
    ice_candidates: list[dict[str, Any]]
    dtls_parameters: dict[str, Any]
    ice_servers: list[dict[str, Any]] = Field(default_factory=list)


class ConsumedData(WireModel):
    id: str
    producer_id: str
    kind: str
    rtp_parameters: dict[str, Any]


class ErrorData(WireModel):
    code: str
    message: str
    request_action: str | None = None


class RouterRtpCapabilitiesMessage(ServerMessage):
    """Server → Client: Router RTP capabilities."""

    action: Literal["routerRtpCapabilities"] = "routerRtpCapabilities"
    data: dict[str, Any]


class SendTransportCreatedMessage(ServerMessage):
    """Server → Client: Send transport connection parameters."""

    action: Literal["sendTransportCreated"] = "sendTransportCreated"
    data: TransportCreatedData


class RecvTransportCreatedMessage(ServerMessage):
    """Server → Client: Recv transport connection parameters."""

    action: Literal["recvTransportCreated"] = "recvTransportCreated"
    data: TransportCreatedData


class TransportConnectedMessage(ServerMessage):
    """Server → Client: Transport connect acknowledgment."""

    action: Literal["transportConnected"] = "transportConnected"
    transport_id: str


class ProducedMessage(ServerMessage):
    """Server → Client: Producer created for this client."""

    action: Literal["produced"] = "produced"
    data: ProducerRef


class ConsumedMessage(ServerMessage):
    """Server → Client: Consumer created for this client."""

    action: Literal["consumed"] = "consumed"
    data: ConsumedData


class ExistingProducersMessage(ServerMessage):
    """Server → Client: Producers owned by other clients, oldest first."""

    action: Literal["existingProducers"] = "existingProducers"
    data: list[str]


class ProducerClosedMessage(ServerMessage):
    """Server → Client: One of this client's producers was closed."""

    action: Literal["producerClosed"] = "producerClosed"
    data: ProducerRef


class NewProducerMessage(ServerMessage):
    """Server → Client (broadcast): Another client started producing."""

    action: Literal["newProducer"] = "newProducer"
    data: ProducerRef


class ClientLeftMessage(ServerMessage):
    """Server → Client (broadcast): A remote producer went away."""

    action: Literal["clientLeft"] = "clientLeft"
    data: ProducerRef


class ErrorMessage(ServerMessage):
    """Server → Client: Request failure (strict error mode only)."""

    action: Literal["error"] = "error"
    data: ErrorData
