"""Media engine adapters.

Provides the abstract engine interface and adapter selection from
configuration.
"""

import importlib
import logging

from src.signaling.config import MediaEngineConfig
from src.signaling.media.base import (
    ConsumerParameters,
    MediaEngine,
    MediaKind,
    TransportDirection,
    TransportParameters,
)
from src.signaling.media.loopback import LoopbackMediaEngine

logger = logging.getLogger(__name__)


def create_media_engine(config: MediaEngineConfig) -> MediaEngine:
    """Instantiate the configured media engine adapter.

    Args:
        config: Media engine configuration. ``adapter`` is either ``loopback``
            or an import path ``module:Class``; the class is called with the
            config as its only argument.

    Returns:
        Unstarted media engine

    Raises:
        ValueError: If the adapter cannot be imported or is not a MediaEngine
    """
    if config.adapter == "loopback":
        logger.info("Creating LoopbackMediaEngine")
        return LoopbackMediaEngine(config)

    module_name, _, class_name = config.adapter.partition(":")
    try:
        module = importlib.import_module(module_name)
        engine_cls = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ValueError(f"Cannot load media engine adapter '{config.adapter}': {e}") from e

    engine = engine_cls(config)
    if not isinstance(engine, MediaEngine):
        raise ValueError(f"Media engine adapter '{config.adapter}' is not a MediaEngine")

    logger.info("Creating media engine", extra={"adapter": config.adapter})
    return engine


__all__ = [
    "ConsumerParameters",
    "LoopbackMediaEngine",
    "MediaEngine",
    "MediaKind",
    "TransportDirection",
    "TransportParameters",
    "create_media_engine",
]
