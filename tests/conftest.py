"""Shared fixtures for stepflow tests."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

import stepflow.persistence as persistence
from stepflow.config import StepflowConfig
from stepflow.contracts import WorkflowDefinition
from stepflow.engine import ExecutionEngine
from stepflow.executors import get_registry
from stepflow.persistence import InMemoryExecutionRepository
from stepflow.store import InMemoryDefinitionStore
from stepflow.transports.inmemory import InMemoryTransport


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that only records requested delays."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeGateway:
    """Agent gateway returning canned responses per agent id."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None) -> None:
        self.responses = responses or {}
        self.calls: List[tuple] = []

    async def invoke(self, agent_id, input, options=None):
        self.calls.append((agent_id, input, options))
        response = self.responses.get(agent_id, {"text": f"{agent_id} done"})
        if isinstance(response, Exception):
            raise response
        return response


def http_step(step_id: str, url: str, method: str = "GET", **extra: Any) -> Dict[str, Any]:
    return {"id": step_id, "type": "http", "config": {"url": url, "method": method}, **extra}


def json_response(status_code: int, body: Any) -> httpx.Response:
    return httpx.Response(status_code, json=body)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def repository() -> InMemoryExecutionRepository:
    repo = InMemoryExecutionRepository()
    persistence._repository_instance = repo
    return repo


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_definition() -> Callable[..., WorkflowDefinition]:
    def _make(steps: List[Dict[str, Any]], publish: bool = True, **fields: Any):
        definition = WorkflowDefinition(name=fields.pop("name", "test workflow"), **fields)
        for step in steps:
            definition.add_step(step)
        if publish:
            definition.publish()
        return definition

    return _make


@pytest.fixture
def build_engine(transport, repository, sleep, gateway):
    """Factory wiring an engine around an ``httpx.MockTransport`` handler."""

    def _build(
        *definitions: WorkflowDefinition,
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
        config: Optional[StepflowConfig] = None,
        agent_gateway: Any = None,
    ):
        config = config or StepflowConfig()
        handler = handler or (lambda request: json_response(200, {"ok": True}))
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        registry = get_registry(
            config=config,
            http_client=client,
            agent_gateway=agent_gateway or gateway,
            transport=transport,
            sleep=sleep,
        )
        store = InMemoryDefinitionStore(definitions)
        engine = ExecutionEngine(
            store,
            registry,
            repository,
            transport=transport,
            sleep=sleep,
            max_delay_ms=config.engine.max_delay_ms,
            retry_unknown_errors=config.engine.retry_unknown_errors,
            default_step_timeout=config.engine.default_step_timeout,
        )
        return engine, store

    return _build
