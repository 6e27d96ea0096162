"""Built-in step executors and the registry factory."""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx

from ..config import StepflowConfig, load_config
from ..resolver import ExpressionResolver
from ..retry import SleepFunc
from ..transports import BaseTransport, get_transport
from .agent import AgentExecutor, AgentGateway, PydanticAIGateway
from .base import StepExecutor, run_with_timeout
from .conditional import ConditionalExecutor
from .delay import DelayExecutor
from .http import HttpExecutor
from .notification import (
    NotificationDispatcher,
    NotificationExecutor,
    TransportNotificationDispatcher,
)
from .parallel import ParallelExecutor
from .registry import ExecutorRegistry
from .transform import TransformExecutor


def get_registry(
    config: Optional[StepflowConfig] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    agent_gateway: Optional[AgentGateway] = None,
    notifier: Optional[NotificationDispatcher] = None,
    transport: Optional[BaseTransport] = None,
    resolver: Optional[ExpressionResolver] = None,
    sleep: SleepFunc = asyncio.sleep,
) -> ExecutorRegistry:
    """Build a registry wired with every built-in executor.

    Collaborators that are not supplied fall back to defaults: a fresh
    pydantic-ai gateway with no agents, and notifications published on the
    configured event transport.
    """

    config = config or load_config()
    registry = ExecutorRegistry(default_timeout=config.engine.default_step_timeout)
    if notifier is None:
        notifier = TransportNotificationDispatcher(transport or get_transport(config=config))

    registry.register(
        HttpExecutor(
            client=http_client,
            timeout=config.http.timeout,
            follow_redirects=config.http.follow_redirects,
        )
    )
    registry.register(AgentExecutor(agent_gateway or PydanticAIGateway()))
    registry.register(TransformExecutor(resolver))
    registry.register(ConditionalExecutor(resolver))
    registry.register(
        ParallelExecutor(
            registry,
            resolver=resolver,
            retry_unknown_errors=config.engine.retry_unknown_errors,
        )
    )
    registry.register(DelayExecutor(sleep))
    registry.register(NotificationExecutor(notifier))
    registry.ensure_complete()
    return registry


__all__ = [
    "AgentExecutor",
    "AgentGateway",
    "ConditionalExecutor",
    "DelayExecutor",
    "ExecutorRegistry",
    "HttpExecutor",
    "NotificationDispatcher",
    "NotificationExecutor",
    "ParallelExecutor",
    "PydanticAIGateway",
    "StepExecutor",
    "TransformExecutor",
    "TransportNotificationDispatcher",
    "get_registry",
    "run_with_timeout",
]
