import asyncio

import httpx
import pytest

from stepflow.config import StepflowConfig
from stepflow.engine import ExecutionEngine
from stepflow.execution import ExecutionStatus
from stepflow.executors import get_registry
from stepflow.persistence import SQLiteExecutionRepository
from stepflow.store import InMemoryDefinitionStore
from stepflow.transports.inmemory import InMemoryTransport

from conftest import FakeGateway, RecordingSleep, http_step


class GateGateway(FakeGateway):
    """Blocks agent calls while the gate is closed."""

    def __init__(self, open_gate: bool):
        super().__init__({"writer": {"text": "draft"}})
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()
        if open_gate:
            self.gate.set()

    async def invoke(self, agent_id, input, options=None):
        self.entered.set()
        await self.gate.wait()
        return await super().invoke(agent_id, input, options)


def _engine(definition, repository, gateway, paths):
    def handler(request):
        paths.append(request.url.path)
        return httpx.Response(200, json={"path": request.url.path})

    transport = InMemoryTransport()
    registry = get_registry(
        config=StepflowConfig(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        agent_gateway=gateway,
        transport=transport,
        sleep=RecordingSleep(),
    )
    return ExecutionEngine(
        InMemoryDefinitionStore([definition]), registry, repository, transport=transport
    )


@pytest.mark.asyncio
async def test_engine_snapshots_survive_restart_and_resume(tmp_path, make_definition):
    db_path = tmp_path / "executions.db"
    definition = make_definition(
        [
            http_step("step_fetch", "https://svc.local/fetch"),
            {"id": "step_write", "type": "agent", "config": {"agent_id": "writer", "input": "x"}},
            http_step("step_store", "https://svc.local/store"),
        ]
    )

    paths = []
    first_repo = SQLiteExecutionRepository(db_path)
    stalled = GateGateway(open_gate=False)
    first = _engine(definition, first_repo, stalled, paths)
    execution_id = await first.execute(definition.id, {"doc": 1})
    await asyncio.wait_for(stalled.entered.wait(), 1)
    await first.shutdown()
    first_repo.close()

    second_repo = SQLiteExecutionRepository(db_path)
    interrupted = await second_repo.load(execution_id)
    assert interrupted.status == ExecutionStatus.RUNNING
    assert list(interrupted.context["steps"]) == ["step_fetch"]

    second = _engine(definition, second_repo, GateGateway(open_gate=True), paths)
    await second.resume_execution(execution_id)
    finished = await second.wait_for(execution_id, timeout=1)

    assert finished.status == ExecutionStatus.COMPLETED
    assert paths == ["/fetch", "/store"]
    assert finished.output["step_write"] == {"text": "draft"}
    assert [r.step_id for r in finished.step_results] == ["step_fetch", "step_write", "step_store"]
    assert (await second_repo.load(execution_id)) == finished
    second_repo.close()
