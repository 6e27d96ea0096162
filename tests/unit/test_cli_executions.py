import asyncio

from typer.testing import CliRunner

import stepflow.persistence as persistence
import stepflow.cli as cli
from stepflow.cli import app
from stepflow.execution import Execution
from stepflow.persistence import InMemoryExecutionRepository
from stepflow.transports.inmemory import InMemoryTransport


def _setup_repo() -> InMemoryExecutionRepository:
    repo = InMemoryExecutionRepository()
    persistence._repository_instance = repo
    return repo


def test_execution_list_shows_executions():
    repo = _setup_repo()
    running, _ = Execution.create("wf_orders").start()
    done, _ = Execution.create("wf_invoices").start()
    done, _ = done.complete({})
    asyncio.run(repo.save(running))
    asyncio.run(repo.save(done))

    runner = CliRunner()
    result = runner.invoke(app, ["execution", "list"])
    assert result.exit_code == 0, result.output
    assert running.id in result.output
    assert done.id in result.output
    assert "completed" in result.output

    filtered = runner.invoke(app, ["execution", "list", "--status", "running"])
    assert filtered.exit_code == 0, filtered.output
    assert running.id in filtered.output
    assert done.id not in filtered.output


def test_execution_list_empty():
    _setup_repo()
    result = CliRunner().invoke(app, ["execution", "list"])
    assert result.exit_code == 0
    assert "No executions found" in result.output


def test_execution_show_details_and_missing():
    repo = _setup_repo()
    failed, _ = Execution.create("wf_orders").start()
    failed, _ = failed.fail("Step step_b failed: boom", "step_b")
    asyncio.run(repo.save(failed))

    runner = CliRunner()
    result = runner.invoke(app, ["execution", "show", failed.id])
    assert result.exit_code == 0, result.output
    assert f"Execution {failed.id}: failed" in result.output
    assert "Step step_b failed: boom" in result.output

    missing = runner.invoke(app, ["execution", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Execution not found" in missing.output


def test_execution_cancel_running_only():
    repo = _setup_repo()
    running, _ = Execution.create("wf_orders").start()
    asyncio.run(repo.save(running))

    runner = CliRunner()
    result = runner.invoke(app, ["execution", "cancel", running.id])
    assert result.exit_code == 0, result.output
    assert asyncio.run(repo.load(running.id)).status.value == "cancelled"

    again = runner.invoke(app, ["execution", "cancel", running.id])
    assert again.exit_code == 1


def test_execution_cancel_publishes_cancellation(monkeypatch):
    repo = _setup_repo()
    transport = InMemoryTransport()
    monkeypatch.setattr(cli, "get_transport", lambda config=None: transport)
    running, _ = Execution.create("wf_orders").start()
    asyncio.run(repo.save(running))

    result = CliRunner().invoke(app, ["execution", "cancel", running.id])
    assert result.exit_code == 0, result.output
    [event] = transport.pending("execution.cancelled")
    assert event.execution_id == running.id


def test_execution_cancel_missing():
    _setup_repo()
    result = CliRunner().invoke(app, ["execution", "cancel", "missing-id"])
    assert result.exit_code == 1
    assert "Execution not found" in result.output
