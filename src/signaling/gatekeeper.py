"""Consumption gatekeeper.

Decides whether a client may consume a producer. Evaluated on every consume
request; nothing is cached per (client, producer) pair.
"""

import logging
from typing import Any

from src.signaling.media.base import MediaEngine
from src.signaling.registry import ProducerRecord

logger = logging.getLogger(__name__)


def can_consume(
    consumer_client_id: str,
    producer: ProducerRecord,
    rtp_capabilities: dict[str, Any],
    engine: MediaEngine,
) -> bool:
    """Check whether a client may consume a producer.

    Args:
        consumer_client_id: Client asking to consume
        producer: Target producer
        rtp_capabilities: Receive capabilities declared by the client
        engine: Media engine performing the codec compatibility check

    Returns:
        False for self-consumption or when the engine rejects the pairing,
        True otherwise
    """
    if producer.owner_client_id == consumer_client_id:
        logger.debug(
            "Consume rejected: self-consumption",
            extra={"client_id": consumer_client_id, "producer_id": producer.producer_id},
        )
        return False

    try:
        compatible = engine.can_consume(producer.producer_id, rtp_capabilities)
    except Exception as e:
        logger.warning(
            "Engine capability check failed",
            extra={"producer_id": producer.producer_id, "error": str(e)},
        )
        return False

    if not compatible:
        logger.debug(
            "Consume rejected: incompatible capabilities",
            extra={"client_id": consumer_client_id, "producer_id": producer.producer_id},
        )
    return bool(compatible)
