"""Event transports and the backend factory."""

from __future__ import annotations

import logging
import os
from typing import Callable, Dict, Optional

from ..config import StepflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

logger = logging.getLogger(__name__)


def _redis_transport(config: StepflowConfig) -> BaseTransport:
    from .redis import RedisTransport

    settings = config.transport.redis
    return RedisTransport(
        host=settings.host,
        port=settings.port,
        db=settings.db,
        password=settings.password,
        prefix=settings.prefix,
    )


_BACKENDS: Dict[str, Callable[[StepflowConfig], BaseTransport]] = {
    "inmemory": lambda config: InMemoryTransport(),
    "redis": _redis_transport,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[StepflowConfig] = None
) -> BaseTransport:
    """Build the event transport.

    The backend name comes from ``backend``, then ``STEPFLOW_TRANSPORT``,
    then the ``transport.backend`` config setting.
    """

    config = config or load_config()
    name = (backend or os.getenv("STEPFLOW_TRANSPORT") or config.transport.backend).lower()
    try:
        factory = _BACKENDS[name]
    except KeyError:
        raise ValueError(f"Unsupported transport backend: {name}") from None
    logger.debug(f"Using {name} event transport")
    return factory(config)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
