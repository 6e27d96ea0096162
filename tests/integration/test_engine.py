"""End-to-end tests driving workflows through the execution engine."""

import asyncio

import httpx
import pytest

from stepflow.errors import NotFoundError, StateError
from stepflow.execution import Execution, ExecutionStatus, StepResult

from conftest import http_step, json_response


class PathRecorder:
    """MockTransport handler answering ``(status, body)`` per path and recording calls."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.paths = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.paths.append(path)
        planned = self.responses.get(path)
        if isinstance(planned, list):
            planned = planned.pop(0) if len(planned) > 1 else planned[0]
        if planned is None:
            planned = (200, {"path": path})
        return json_response(*planned)


class BlockingGateway:
    """Agent gateway that holds every call until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def invoke(self, agent_id, input, options=None):
        self.started.set()
        await self.release.wait()
        return {"agent": agent_id}


def _three_http_steps():
    return [
        http_step("step_a", "https://svc.local/a"),
        http_step("step_b", "https://svc.local/b"),
        http_step("step_c", "https://svc.local/c"),
    ]


@pytest.mark.asyncio
async def test_sequential_http_steps_complete(build_engine, make_definition, transport):
    definition = make_definition(_three_http_steps())
    handler = PathRecorder()
    engine, _ = build_engine(definition, handler=handler)

    execution = await engine.run(definition.id, {"order_id": 1})

    assert execution.status == ExecutionStatus.COMPLETED
    assert list(execution.output) == ["step_a", "step_b", "step_c"]
    assert execution.output["step_b"]["body"] == {"path": "/b"}
    assert handler.paths == ["/a", "/b", "/c"]
    assert [r.step_id for r in execution.step_results] == ["step_a", "step_b", "step_c"]

    assert len(transport.pending("execution.started")) == 1
    assert len(transport.pending("execution.step_succeeded")) == 3
    completed = transport.pending("execution.completed")
    assert [e.execution_id for e in completed] == [execution.id]


@pytest.mark.asyncio
async def test_failing_step_stops_execution(build_engine, make_definition, transport):
    definition = make_definition(_three_http_steps())
    handler = PathRecorder({"/b": (500, {"error": "down"})})
    engine, _ = build_engine(definition, handler=handler)

    execution = await engine.run(definition.id)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.failed_step_id == "step_b"
    assert "step_b" in execution.error
    assert handler.paths == ["/a", "/b"]
    assert execution.attempts_for("step_c") == 0
    assert execution.attempts_for("step_b") == 1
    failed_events = transport.pending("execution.failed")
    assert failed_events[0].payload["step_id"] == "step_b"


@pytest.mark.asyncio
async def test_step_retries_with_fixed_backoff_then_succeeds(build_engine, make_definition, sleep):
    steps = _three_http_steps()
    steps[1]["retry"] = {"max_attempts": 3, "backoff": "fixed", "initial_delay_ms": 1000}
    definition = make_definition(steps, error_handling={"on_error": "retry"})
    handler = PathRecorder(
        {
            "/b": [
                (503, {"error": "busy"}),
                (503, {"error": "busy"}),
                (200, {"ok": True}),
            ]
        }
    )
    engine, _ = build_engine(definition, handler=handler)

    execution = await engine.run(definition.id)

    assert execution.status == ExecutionStatus.COMPLETED
    history = execution.results_for("step_b")
    assert [r.attempt for r in history] == [1, 2, 3]
    assert [r.success for r in history] == [False, False, True]
    assert all(r.retriable for r in history[:2])
    assert sleep.calls == [1.0, 1.0]
    assert execution.output["step_b"]["body"] == {"ok": True}


@pytest.mark.asyncio
async def test_retries_exhausted_fail_execution(build_engine, make_definition, sleep):
    definition = make_definition(
        [http_step("step_a", "https://svc.local/a")],
        error_handling={"on_error": "retry", "max_retries": 2, "retry_delay_ms": 100},
    )
    handler = PathRecorder({"/a": (502, {})})
    engine, _ = build_engine(definition, handler=handler)

    execution = await engine.run(definition.id)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.failed_step_id == "step_a"
    assert execution.error.startswith("max retries exceeded for step step_a after 3 attempts")
    assert execution.attempts_for("step_a") == 3
    assert sleep.calls == [0.1, 0.1]


@pytest.mark.asyncio
async def test_non_retriable_error_is_not_retried(build_engine, make_definition, sleep):
    definition = make_definition(
        [http_step("step_a", "https://svc.local/a")],
        error_handling={"on_error": "retry", "max_retries": 3},
    )
    handler = PathRecorder({"/a": (404, {"error": "missing"})})
    engine, _ = build_engine(definition, handler=handler)

    execution = await engine.run(definition.id)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.attempts_for("step_a") == 1
    assert execution.step_results[0].retriable is False
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_parallel_block_reports_partial_results(build_engine, make_definition):
    definition = make_definition(
        [
            {
                "id": "step_fan",
                "type": "parallel",
                "config": {
                    "wait_for_all": True,
                    "steps": [
                        http_step("step_one", "https://svc.local/one"),
                        http_step("step_two", "https://svc.local/two"),
                        http_step("step_three", "https://svc.local/three"),
                    ],
                },
            }
        ]
    )
    handler = PathRecorder({"/two": (500, {"error": "down"})})
    engine, _ = build_engine(definition, handler=handler)

    execution = await engine.run(definition.id)

    assert execution.status == ExecutionStatus.FAILED
    parent = execution.results_for("step_fan")[0]
    assert parent.success is False
    assert parent.error_type == "ParallelStepError"
    assert set(parent.output["results"]) == {"step_one", "step_three"}
    assert set(parent.output["errors"]) == {"step_two"}
    assert sorted(handler.paths) == ["/one", "/three", "/two"]


@pytest.mark.asyncio
async def test_continue_policy_records_error_and_completes(build_engine, make_definition, transport):
    steps = _three_http_steps()
    steps[1] = {"id": "step_b", "type": "transform", "config": {"expression": "input.missing.value"}}
    definition = make_definition(steps, error_handling={"on_error": "continue"})
    handler = PathRecorder()
    engine, _ = build_engine(definition, handler=handler)

    execution = await engine.run(definition.id, {"order_id": 1})

    assert execution.status == ExecutionStatus.COMPLETED
    assert "step_b" in execution.context["errors"]
    assert "step_b" not in execution.context["steps"]
    assert list(execution.output) == ["step_a", "step_c"]
    assert handler.paths == ["/a", "/c"]
    assert execution.results_for("step_b")[0].error_type == "ExpressionError"
    assert len(transport.pending("execution.step_failed")) == 1


@pytest.mark.asyncio
async def test_outputs_feed_later_steps(build_engine, make_definition, gateway):
    definition = make_definition(
        [
            http_step("step_user", "https://svc.local/users/{{ input.user_id }}"),
            {
                "id": "step_summary",
                "type": "agent",
                "config": {
                    "agent_id": "summariser",
                    "input": {"user": "${{ steps.step_user.body }}"},
                },
            },
            {
                "id": "step_check",
                "type": "conditional",
                "config": {
                    "condition": "steps.step_user.status_code == 200",
                    "branches": {"true": "step_notify", "false": "step_user"},
                },
            },
            {
                "id": "step_notify",
                "type": "notification",
                "config": {"channel": "slack", "message": "user {{ input.user_id }} done"},
            },
        ]
    )
    gateway.responses["summariser"] = {"summary": "fine"}
    engine, _ = build_engine(definition, handler=PathRecorder())

    execution = await engine.run(definition.id, {"user_id": 12})

    assert execution.status == ExecutionStatus.COMPLETED
    assert gateway.calls[0][1] == {"user": {"path": "/users/12"}}
    assert execution.output["step_summary"] == {"summary": "fine"}
    assert execution.output["step_check"]["target_step"] == "step_notify"
    assert execution.output["step_notify"]["status"] == "queued"


@pytest.mark.asyncio
async def test_conditional_is_advisory(build_engine, make_definition):
    definition = make_definition(
        [
            {
                "id": "step_check",
                "type": "conditional",
                "config": {
                    "condition": "input.amount > 100",
                    "branches": {"true": "step_big", "false": "step_small"},
                },
            },
            {"id": "step_big", "type": "transform", "config": {"expression": "'big'"}},
            {"id": "step_small", "type": "transform", "config": {"expression": "'small'"}},
        ]
    )
    engine, _ = build_engine(definition)

    execution = await engine.run(definition.id, {"amount": 5})

    assert execution.output["step_check"]["branch_taken"] == "false"
    assert [r.step_id for r in execution.step_results] == ["step_check", "step_big", "step_small"]


@pytest.mark.asyncio
async def test_step_timeout_fails_step(build_engine, make_definition):
    definition = make_definition(
        [
            {
                "id": "step_slow",
                "type": "agent",
                "timeout": 0.05,
                "config": {"agent_id": "slow", "input": "x"},
            }
        ]
    )
    engine, _ = build_engine(definition, agent_gateway=BlockingGateway())

    execution = await engine.run(definition.id)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.step_results[0].error_type == "StepTimeoutError"
    assert "timed out" in execution.error


@pytest.mark.asyncio
async def test_cancel_discards_in_flight_result(build_engine, make_definition, transport, repository):
    definition = make_definition(
        [
            {"id": "step_think", "type": "agent", "config": {"agent_id": "slow", "input": "x"}},
            http_step("step_after", "https://svc.local/after"),
        ]
    )
    blocking = BlockingGateway()
    handler = PathRecorder()
    engine, _ = build_engine(definition, handler=handler, agent_gateway=blocking)

    execution_id = await engine.execute(definition.id)
    await asyncio.wait_for(blocking.started.wait(), 1)
    assert await engine.cancel_execution(execution_id)
    blocking.release.set()
    execution = await engine.wait_for(execution_id, timeout=1)

    assert execution.status == ExecutionStatus.CANCELLED
    assert execution.step_results == ()
    assert execution.context["steps"] == {}
    assert handler.paths == []
    assert (await repository.load(execution_id)).status == ExecutionStatus.CANCELLED
    assert len(transport.pending("execution.cancelled")) == 1
    assert transport.pending("execution.completed") == []

    with pytest.raises(StateError):
        await engine.cancel_execution(execution_id)


@pytest.mark.asyncio
async def test_resume_skips_settled_steps(build_engine, make_definition, repository):
    definition = make_definition(_three_http_steps())
    handler = PathRecorder()
    engine, _ = build_engine(definition, handler=handler)

    interrupted = Execution.create(definition.id, {"order_id": 9}, definition.version)
    interrupted, _ = interrupted.start()
    interrupted, _ = interrupted.record_step_result(
        StepResult(step_id="step_a", success=True, output={"cached": True})
    )
    interrupted, _ = interrupted.commit_output("step_a", {"cached": True})
    await repository.save(interrupted)

    await engine.resume_execution(interrupted.id)
    execution = await engine.wait_for(interrupted.id, timeout=1)

    assert execution.status == ExecutionStatus.COMPLETED
    assert handler.paths == ["/b", "/c"]
    assert execution.output["step_a"] == {"cached": True}
    assert [r.step_id for r in execution.step_results] == ["step_a", "step_b", "step_c"]

    with pytest.raises(StateError):
        await engine.resume_execution(interrupted.id)


@pytest.mark.asyncio
async def test_unknown_or_unpublished_workflow_is_rejected(build_engine, make_definition):
    draft = make_definition(_three_http_steps(), publish=False)
    engine, _ = build_engine(draft)

    with pytest.raises(NotFoundError):
        await engine.execute("wf_missing")
    with pytest.raises(NotFoundError):
        await engine.execute(draft.id)
    with pytest.raises(NotFoundError):
        await engine.get_execution("missing")
    assert await engine.list_executions() == []


@pytest.mark.asyncio
async def test_new_version_does_not_affect_running_definition(build_engine, make_definition):
    v1 = make_definition([{"id": "step_a", "type": "transform", "config": {"expression": "1"}}])
    engine, store = build_engine(v1)
    v2 = v1.create_new_version()
    v2.update_step("step_a", config={"expression": "2"})
    v2.publish()
    await store.save(v2)

    execution = await engine.run(v1.id)

    assert execution.workflow_version == 2
    assert execution.output == {"step_a": {"result": 2}}
    assert v1.get_step("step_a").config == {"expression": "1"}


@pytest.mark.asyncio
async def test_concurrent_executions_are_isolated(build_engine, make_definition):
    definition = make_definition(
        [
            {"id": "step_double", "type": "transform", "config": {"expression": "input.n * 2"}},
            {"id": "step_wait", "type": "delay", "config": {"duration_ms": 10}},
        ]
    )
    engine, _ = build_engine(definition)

    first, second = await asyncio.gather(
        engine.run(definition.id, {"n": 1}), engine.run(definition.id, {"n": 5})
    )

    assert first.id != second.id
    assert first.output["step_double"] == {"result": 2}
    assert second.output["step_double"] == {"result": 10}
    listed = await engine.list_executions(ExecutionStatus.COMPLETED)
    assert {e.id for e in listed} == {first.id, second.id}


@pytest.mark.asyncio
async def test_parallel_first_failure_cancels_remaining_sub_steps(build_engine, make_definition):
    definition = make_definition(
        [
            {
                "id": "step_fan",
                "type": "parallel",
                "config": {
                    "wait_for_all": False,
                    "steps": [
                        {"id": "step_slow", "type": "agent", "config": {"agent_id": "slow", "input": "x"}},
                        http_step("step_two", "https://svc.local/two"),
                    ],
                },
            }
        ]
    )
    handler = PathRecorder({"/two": (500, {"error": "down"})})
    engine, _ = build_engine(definition, handler=handler, agent_gateway=BlockingGateway())

    execution = await asyncio.wait_for(engine.run(definition.id), 1)

    assert execution.status == ExecutionStatus.FAILED
    parent = execution.results_for("step_fan")[0]
    assert parent.output["results"] == {}
    assert parent.output["errors"]["step_slow"] == "cancelled after a sibling sub-step failed"
    assert "step_two" in parent.output["errors"]


@pytest.mark.asyncio
async def test_cancel_stored_elsewhere_is_not_overwritten(
    build_engine, make_definition, transport, repository
):
    definition = make_definition(
        [
            {"id": "step_think", "type": "agent", "config": {"agent_id": "slow", "input": "x"}},
            http_step("step_after", "https://svc.local/after"),
        ]
    )
    blocking = BlockingGateway()
    handler = PathRecorder()
    engine, _ = build_engine(definition, handler=handler, agent_gateway=blocking)

    execution_id = await engine.execute(definition.id)
    await asyncio.wait_for(blocking.started.wait(), 1)
    stored = await repository.load(execution_id)
    cancelled, _ = stored.cancel()
    await repository.save(cancelled)
    blocking.release.set()
    execution = await engine.wait_for(execution_id, timeout=1)

    assert execution.status == ExecutionStatus.CANCELLED
    assert (await repository.load(execution_id)).status == ExecutionStatus.CANCELLED
    assert execution.step_results == ()
    assert handler.paths == []
    assert transport.pending("execution.completed") == []
    assert transport.pending("execution.step_succeeded") == []


@pytest.mark.asyncio
async def test_finished_runs_are_released(build_engine, make_definition, repository):
    definition = make_definition([{"id": "step_a", "type": "transform", "config": {"expression": "1"}}])
    engine, _ = build_engine(definition)

    execution = await engine.run(definition.id)

    assert engine._runs == {}
    assert await engine.get_execution(execution.id) == await repository.load(execution.id)
    assert (await engine.wait_for(execution.id)).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_successful_step_is_stored_with_its_output(
    build_engine, make_definition, repository, monkeypatch
):
    saved = []
    save = repository.save

    async def recording_save(execution):
        saved.append(execution)
        await save(execution)

    monkeypatch.setattr(repository, "save", recording_save)
    definition = make_definition(
        [
            http_step("step_a", "https://svc.local/a"),
            {"id": "step_b", "type": "transform", "config": {"expression": "nope.x"}},
        ],
        error_handling={"on_error": "continue"},
    )
    engine, _ = build_engine(definition, handler=PathRecorder())

    execution = await engine.run(definition.id)

    assert execution.status == ExecutionStatus.COMPLETED
    for snapshot in saved:
        for result in snapshot.step_results:
            assert snapshot.has_settled(result.step_id), (snapshot.status, result.step_id)
