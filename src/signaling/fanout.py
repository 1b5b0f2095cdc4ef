"""Broadcast fanout of producer lifecycle events.

Delivers ``newProducer`` and ``clientLeft`` events to every registered client
except the origin. Delivery is a non-blocking post onto each recipient's
outbound queue; the fanout subscribes to registry mutations and runs inside
the registry's critical section, so the events a given recipient sees are in
mutation order. A recipient whose connection is already closed is skipped
without affecting the others.
"""

import logging

from src.signaling.metrics import MetricsCollector, get_metrics_collector
from src.signaling.registry import ProducerRecord, SessionRegistry
from src.signaling.transport.websocket_protocol import (
    ClientLeftMessage,
    NewProducerMessage,
    ProducerRef,
    ServerMessage,
)

logger = logging.getLogger(__name__)


class BroadcastFanout:
    """Registry listener that fans producer events out to other clients."""

    def __init__(self, registry: SessionRegistry, metrics: MetricsCollector | None = None) -> None:
        """Initialize fanout and subscribe to the registry.

        Args:
            registry: Session registry supplying recipients and mutation events
            metrics: Metrics collector (defaults to the global collector)
        """
        self.registry = registry
        self.metrics = metrics or get_metrics_collector()
        registry.add_listener(self)

    def on_producer_added(self, producer: ProducerRecord) -> None:
        self.notify_new_producer(producer.owner_client_id, producer.producer_id)
        self.metrics.set_producers_active(self.registry.snapshot().producers)

    def on_producers_removed(self, owner_client_id: str, producer_ids: list[str]) -> None:
        for producer_id in producer_ids:
            self.notify_client_left(owner_client_id, producer_id)
        self.metrics.set_producers_active(self.registry.snapshot().producers)

    def notify_new_producer(self, exclude_client_id: str, producer_id: str) -> int:
        """Send ``newProducer`` to every client except the producer's owner.

        Returns:
            Number of recipients the event was posted to
        """
        message = NewProducerMessage(data=ProducerRef(producer_id=producer_id))
        return self._broadcast(exclude_client_id, message)

    def notify_client_left(self, exclude_client_id: str, producer_id: str) -> int:
        """Send ``clientLeft`` for one removed producer to every other client.

        Returns:
            Number of recipients the event was posted to
        """
        message = ClientLeftMessage(data=ProducerRef(producer_id=producer_id))
        return self._broadcast(exclude_client_id, message)

    def _broadcast(self, exclude_client_id: str, message: ServerMessage) -> int:
        delivered = 0
        for client_id, connection in self.registry.connections_excluding(exclude_client_id):
            try:
                connection.post(message)
                delivered += 1
            except ConnectionError as e:
                logger.debug(
                    "Skipping closed recipient",
                    extra={"client_id": client_id, "action": message.action, "error": str(e)},
                )

        self.metrics.record_broadcast(message.action, delivered)
        logger.debug(
            "Event broadcast",
            extra={
                "action": message.action,
                "origin": exclude_client_id,
                "recipients": delivered,
            },
        )
        return delivered
