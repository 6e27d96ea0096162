"""Agent step executor and invocation gateways."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError, UserError

from ..contracts import Step, StepType
from ..errors import ConfigError, ProviderError, StepflowError
from .base import StepExecutor

logger = logging.getLogger(__name__)


class AgentGateway(Protocol):
    """Port to whatever actually runs an AI agent."""

    async def invoke(
        self, agent_id: str, input: Any, options: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Run ``agent_id`` on ``input`` and return the provider response."""


class PydanticAIGateway:
    """Runs locally registered pydantic-ai agents by id."""

    def __init__(self, agents: Optional[Dict[str, Agent]] = None) -> None:
        self._agents: Dict[str, Agent] = dict(agents or {})

    def register(self, agent_id: str, agent: Agent) -> None:
        self._agents[agent_id] = agent

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    async def invoke(
        self, agent_id: str, input: Any, options: Optional[Dict[str, Any]] = None
    ) -> Any:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise ConfigError(f"Agent {agent_id} is not registered")
        prompt = input if isinstance(input, str) else json.dumps(input, default=str)
        try:
            result = await agent.run(prompt, **(options or {}))
        except ModelHTTPError as exc:
            raise ProviderError(
                f"Agent {agent_id} provider error: {exc}", status_code=exc.status_code
            ) from exc
        except UserError as exc:
            raise ConfigError(f"Agent {agent_id} misconfigured: {exc}") from exc
        return getattr(result, "output", result)


class AgentExecutor(StepExecutor):
    """Delegate to an :class:`AgentGateway` and return its response verbatim."""

    step_type = StepType.AGENT

    def __init__(self, gateway: AgentGateway) -> None:
        self._gateway = gateway

    async def execute(self, step: Step, context: Mapping[str, Any]) -> Any:
        agent_id = str(step.config["agent_id"])
        options = step.config.get("options") or None
        logger.debug(f"Step {step.id}: invoking agent {agent_id}")
        try:
            return await self._gateway.invoke(agent_id, step.config["input"], options)
        except StepflowError:
            raise
        except Exception as exc:
            raise ProviderError(
                f"Agent {agent_id} failed: {type(exc).__name__}: {exc}"
            ) from exc
