"""Signaling error types.

Error hierarchy:
    SignalingError (base)
    ├── UnknownClient
    ├── TransportAlreadyExists
    ├── NoSendTransport
    ├── NoRecvTransport
    ├── NotFound
    ├── ProducerAlreadyExists
    ├── GateRejected
    └── MediaEngineError
        └── MediaEngineDied

Registry and gatekeeper errors describe stale or malformed requests and are
dropped by the session (or reported when strict errors are enabled). Media
engine errors fail a single request. MediaEngineDied is fatal to the process.
"""

from typing import Any


class SignalingError(Exception):
    """Base error for all signaling errors."""

    code = "SIGNALING_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UnknownClient(SignalingError):
    """Client id is not (or no longer) registered."""

    code = "UNKNOWN_CLIENT"

    def __init__(self, client_id: str) -> None:
        super().__init__(f"Unknown client: {client_id}", {"client_id": client_id})
        self.client_id = client_id


class TransportAlreadyExists(SignalingError):
    """Transport slot already holds an open transport."""

    code = "TRANSPORT_ALREADY_EXISTS"

    def __init__(self, client_id: str, direction: str, transport_id: str) -> None:
        super().__init__(
            f"Client {client_id} already has an open {direction} transport {transport_id}",
            {"client_id": client_id, "direction": direction, "transport_id": transport_id},
        )
        self.direction = direction
        self.transport_id = transport_id


class NoSendTransport(SignalingError):
    """Produce requested without a connected send transport."""

    code = "NO_SEND_TRANSPORT"

    def __init__(self, client_id: str) -> None:
        super().__init__(
            f"Client {client_id} has no connected send transport", {"client_id": client_id}
        )


class NoRecvTransport(SignalingError):
    """Consume requested without a connected recv transport."""

    code = "NO_RECV_TRANSPORT"

    def __init__(self, client_id: str) -> None:
        super().__init__(
            f"Client {client_id} has no connected recv transport", {"client_id": client_id}
        )


class NotFound(SignalingError):
    """Producer or transport lookup miss."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}", {kind: identifier})
        self.kind = kind
        self.identifier = identifier


class ProducerAlreadyExists(SignalingError):
    """Producer id is already live in the global index."""

    code = "PRODUCER_ALREADY_EXISTS"

    def __init__(self, producer_id: str) -> None:
        super().__init__(f"Producer already registered: {producer_id}", {"producer": producer_id})
        self.producer_id = producer_id


class GateRejected(SignalingError):
    """Consume disallowed by the consumption gatekeeper."""

    code = "GATE_REJECTED"

    def __init__(self, client_id: str, producer_id: str) -> None:
        super().__init__(
            f"Client {client_id} may not consume producer {producer_id}",
            {"client_id": client_id, "producer": producer_id},
        )


class MediaEngineError(SignalingError):
    """Media engine call failed for a single request."""

    code = "MEDIA_ENGINE_ERROR"


class MediaEngineDied(MediaEngineError):
    """Media engine became unusable; the service must terminate."""

    code = "MEDIA_ENGINE_DIED"
