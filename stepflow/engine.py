"""Execution engine driving published workflows to a terminal state."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config import StepflowConfig, load_config
from .contracts import OnError, Step, WorkflowDefinition, WorkflowStatus
from .errors import MaxRetriesExceeded, NotFoundError, StateError, StepflowError
from .events import DomainEvent
from .execution import Execution, ExecutionStatus, StepResult, Transition
from .executors import ExecutorRegistry, get_registry
from .persistence import ExecutionRepository, get_repository
from .resolver import ExpressionResolver, get_resolver
from .retry import RetryPolicy, SleepFunc, schedule_retry
from .store import DefinitionStore
from .transports import BaseTransport, get_transport

logger = logging.getLogger(__name__)


class _RunStopped(Exception):
    """Raised inside the loop once the execution reached a terminal state elsewhere."""


@dataclass
class _Run:
    execution: Execution
    definition: WorkflowDefinition
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: Optional[asyncio.Task] = None


def _describe(error: BaseException) -> str:
    if isinstance(error, StepflowError):
        return error.message
    return f"{type(error).__name__}: {error}"


class ExecutionEngine:
    """Runs workflow executions, one asyncio task per execution.

    Every collaborator is injected: the definition store, the executor
    registry, the snapshot repository and, optionally, the event transport.
    Steps of one execution run strictly one after another; different
    executions run concurrently and share nothing but the frozen definition.
    """

    def __init__(
        self,
        definitions: DefinitionStore,
        registry: ExecutorRegistry,
        repository: ExecutionRepository,
        transport: Optional[BaseTransport] = None,
        resolver: Optional[ExpressionResolver] = None,
        sleep: SleepFunc = asyncio.sleep,
        max_delay_ms: Optional[float] = None,
        retry_unknown_errors: bool = True,
        default_step_timeout: Optional[float] = None,
    ) -> None:
        registry.ensure_complete()
        self._definitions = definitions
        self._registry = registry
        self._repository = repository
        self._transport = transport
        self._resolver = resolver or get_resolver()
        self._sleep = sleep
        self._max_delay_ms = max_delay_ms
        self._retry_unknown_errors = retry_unknown_errors
        self._default_step_timeout = default_step_timeout
        self._runs: Dict[str, _Run] = {}

    @classmethod
    def from_config(
        cls,
        definitions: DefinitionStore,
        config: Optional[StepflowConfig] = None,
        **overrides: Any,
    ) -> "ExecutionEngine":
        """Build an engine from configuration, with optional overrides."""
        config = config or load_config()
        transport = overrides.pop("transport", None)
        if transport is None:
            transport = get_transport(config=config)
        registry = overrides.pop("registry", None) or get_registry(
            config=config, transport=transport
        )
        repository = overrides.pop("repository", None) or get_repository(config=config)
        overrides.setdefault("max_delay_ms", config.engine.max_delay_ms)
        overrides.setdefault("retry_unknown_errors", config.engine.retry_unknown_errors)
        overrides.setdefault("default_step_timeout", config.engine.default_step_timeout)
        return cls(definitions, registry, repository, transport=transport, **overrides)

    # ------------------------------------------------------------------
    # Public API
    async def execute(self, workflow_id: str, input: Optional[Dict[str, Any]] = None) -> str:
        """Accept a new execution and start it in the background.

        Raises :class:`NotFoundError` right away when no published version
        of ``workflow_id`` exists.
        """
        definition = await self._definitions.load_published(workflow_id)
        execution = Execution.create(definition.id, input, definition.version)
        await self._persist(execution, [])
        logger.info(
            f"Accepted execution {execution.id} of workflow {definition.id} v{definition.version}"
        )
        self._launch(_Run(execution=execution, definition=definition))
        return execution.id

    async def run(self, workflow_id: str, input: Optional[Dict[str, Any]] = None) -> Execution:
        """Execute and wait for the terminal snapshot."""
        execution_id = await self.execute(workflow_id, input)
        return await self.wait_for(execution_id)

    async def wait_for(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        run = self._runs.get(execution_id)
        if run is not None and run.task is not None:
            await asyncio.wait_for(asyncio.shield(run.task), timeout)
        # Finished runs are dropped from memory, the repository has the final snapshot.
        return await self.get_execution(execution_id)

    async def get_execution(self, execution_id: str) -> Execution:
        """Latest snapshot: the live copy while running, else the stored one."""
        run = self._runs.get(execution_id)
        if run is not None:
            return run.execution
        execution = await self._repository.load(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    async def list_executions(
        self, status: Optional[ExecutionStatus] = None
    ) -> List[Execution]:
        return await self._repository.list_executions(status)

    async def cancel_execution(self, execution_id: str) -> bool:
        """Cancel a running execution.

        The in-flight step is not interrupted, but its result is discarded
        and no further step is dispatched.
        """
        run = self._runs.get(execution_id)
        if run is None:
            execution = await self.get_execution(execution_id)
            cancelled, events = execution.cancel()
            await self._persist(cancelled, events)
        else:
            async with run.lock:
                cancelled, events = run.execution.cancel()
                await self._persist(cancelled, events)
                run.execution = cancelled
        logger.info(f"Cancelled execution {execution_id}")
        return True

    async def resume_execution(self, execution_id: str) -> str:
        """Continue a persisted execution that never reached a terminal state.

        Steps whose output or error is already committed are skipped.
        """
        active = self._runs.get(execution_id)
        if active is not None and active.task is not None and not active.task.done():
            raise StateError(f"Execution {execution_id} is already running")
        execution = await self._repository.load(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        if execution.is_terminal:
            raise StateError(
                f"Execution {execution_id} already finished with status {execution.status.value}"
            )
        definition = await self._load_version(execution.workflow_id, execution.workflow_version)
        logger.info(
            f"Resuming execution {execution_id} ({len(execution.step_results)} results so far)"
        )
        self._launch(_Run(execution=execution, definition=definition))
        return execution_id

    async def shutdown(self) -> None:
        """Stop every active execution task, leaving snapshots resumable."""
        tasks = [run.task for run in self._runs.values() if run.task and not run.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._transport is not None:
            await self._transport.disconnect()

    # ------------------------------------------------------------------
    # Internals
    def _launch(self, run: _Run) -> None:
        self._runs[run.execution.id] = run
        run.task = asyncio.create_task(
            self._drive(run), name=f"stepflow-execution-{run.execution.id}"
        )

    async def _load_version(self, workflow_id: str, version: int) -> WorkflowDefinition:
        definition = await self._definitions.get(workflow_id, version)
        if definition.status == WorkflowStatus.DRAFT:
            raise StateError(f"Workflow {workflow_id} v{version} is not published")
        return definition

    async def _persist(self, execution: Execution, events: List[DomainEvent]) -> None:
        await self._repository.save(execution)
        for event in events:
            await self._publish(event)

    async def _publish(self, event: DomainEvent) -> None:
        if self._transport is None:
            logger.debug(f"Event {event.topic} for execution {event.execution_id}")
            return
        try:
            await self._transport.publish_event(event)
        except Exception as e:
            logger.error(
                f"Failed to publish {event.topic} for execution {event.execution_id}: {e}"
            )
            raise

    async def _sync_status(self, run: _Run) -> None:
        """Adopt a terminal snapshot stored by someone else and stop the run.

        Must be called with ``run.lock`` held.
        """
        if not run.execution.is_terminal:
            stored = await self._repository.load(run.execution.id)
            if stored is not None and stored.is_terminal:
                logger.info(
                    f"Execution {stored.id} was {stored.status.value} outside this engine"
                )
                run.execution = stored
        if run.execution.is_terminal:
            raise _RunStopped(run.execution.status)

    async def _check_stopped(self, run: _Run) -> None:
        async with run.lock:
            await self._sync_status(run)

    async def _transition(self, run: _Run, change: Callable[[Execution], Transition]) -> Execution:
        async with run.lock:
            await self._sync_status(run)
            execution, events = change(run.execution)
            try:
                await self._repository.save(execution)
            except StateError:
                await self._sync_status(run)
                raise
            run.execution = execution
            for event in events:
                await self._publish(event)
            return execution

    def _retry_policy(self, step: Step, definition: WorkflowDefinition) -> RetryPolicy:
        extra: Dict[str, Any] = {"retry_unknown_errors": self._retry_unknown_errors}
        if self._max_delay_ms is not None:
            extra["max_delay_ms"] = self._max_delay_ms
        return RetryPolicy.for_step(step, definition.error_handling, **extra)

    async def _drive(self, run: _Run) -> None:
        execution_id = run.execution.id
        try:
            await self._run_steps(run)
        except _RunStopped as stopped:
            logger.info(f"Execution {execution_id} stopped, status is {stopped.args[0].value}")
        except Exception as exc:
            logger.exception(f"Execution {execution_id} aborted by engine error")
            if not run.execution.is_terminal:
                try:
                    await self._transition(
                        run, lambda e: e.fail(f"Engine error: {_describe(exc)}")
                    )
                except _RunStopped as stopped:
                    logger.info(
                        f"Execution {execution_id} already {stopped.args[0].value}, not failing it"
                    )
                except Exception:
                    logger.exception(f"Could not report failure of execution {execution_id}")
        finally:
            self._runs.pop(execution_id, None)

    async def _run_steps(self, run: _Run) -> None:
        if run.execution.status == ExecutionStatus.PENDING:
            await self._transition(run, lambda e: e.start())
            logger.info(f"Execution {run.execution.id} started")

        for step in run.definition.steps:
            if run.execution.has_settled(step.id):
                continue
            if not await self._run_step(run, step):
                return

        steps = run.execution.context["steps"]
        output = {s.id: steps[s.id] for s in run.definition.steps if s.id in steps}
        await self._transition(run, lambda e: e.complete(output))
        logger.info(f"Execution {run.execution.id} completed ({len(output)} step outputs)")

    async def _run_step(self, run: _Run, step: Step) -> bool:
        """Drive one step through its attempts. Returns ``False`` to stop."""
        definition = run.definition
        policy = self._retry_policy(step, definition)
        on_error = definition.error_handling.on_error
        attempt = run.execution.attempts_for(step.id)

        while True:
            await self._check_stopped(run)
            attempt += 1
            snapshot = run.execution.snapshot_context()
            started = time.perf_counter()
            error: Optional[BaseException] = None
            output: Any = None
            try:
                config = self._resolver.resolve_step_config(step.type, step.config, snapshot)
                resolved = step.model_copy(update={"config": config})
                output = await self._registry.dispatch(
                    resolved, snapshot, timeout=self._default_step_timeout
                )
            except Exception as exc:
                error = exc
            duration_ms = (time.perf_counter() - started) * 1000

            if error is None:
                result = StepResult(
                    step_id=step.id,
                    attempt=attempt,
                    success=True,
                    output=output,
                    duration_ms=duration_ms,
                )
                await self._transition(run, lambda e: e.settle_success(result))
                logger.info(f"Step {step.id} succeeded on attempt {attempt} ({duration_ms:.0f}ms)")
                return True

            message = _describe(error)
            retriable = policy.is_retriable(error)
            result = StepResult(
                step_id=step.id,
                attempt=attempt,
                success=False,
                output=error.partial_output if isinstance(error, StepflowError) else None,
                error=message,
                error_type=type(error).__name__,
                retriable=retriable,
                duration_ms=duration_ms,
            )
            if on_error == OnError.CONTINUE:
                await self._transition(run, lambda e: e.settle_failure(result))
                logger.warning(f"Step {step.id} failed, continuing: {message}")
                return True

            await self._transition(run, lambda e: e.record_step_result(result))

            if on_error == OnError.RETRY and retriable:
                if attempt >= policy.max_attempts:
                    exhausted = MaxRetriesExceeded(step.id, attempt, message)
                    await self._fail(run, exhausted.message, step.id)
                    return False
                delay_ms = policy.delay_ms(attempt)
                logger.warning(
                    f"Step {step.id} failed on attempt {attempt}/{policy.max_attempts}, "
                    f"retrying in {delay_ms:.0f}ms: {message}"
                )
                await schedule_retry(delay_ms, self._sleep)
                continue

            await self._fail(run, f"Step {step.id} failed: {message}", step.id)
            return False

    async def _fail(self, run: _Run, message: str, step_id: Optional[str]) -> None:
        await self._transition(run, lambda e: e.fail(message, step_id))
        logger.error(f"Execution {run.execution.id} failed at step {step_id}: {message}")
