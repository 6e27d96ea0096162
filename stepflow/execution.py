"""Execution snapshots and their state machine.

An :class:`Execution` is immutable. Every transition returns a new snapshot
together with the domain events it produced, so the engine decides when to
persist and publish.
"""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import StateError
from .events import (
    DomainEvent,
    ExecutionCancelled,
    ExecutionCompleted,
    ExecutionFailed,
    ExecutionStarted,
    StepFailed,
    StepSucceeded,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class StepResult(BaseModel):
    """Outcome of a single attempt of a step."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    attempt: int = 1
    success: bool
    output: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    retriable: Optional[bool] = None
    duration_ms: float = 0.0
    recorded_at: datetime = Field(default_factory=_now)


def new_context(
    input_data: Optional[Dict[str, Any]] = None,
    execution: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "input": copy.deepcopy(input_data or {}),
        "steps": {},
        "errors": {},
        "execution": dict(execution or {}),
    }


Transition = Tuple["Execution", List[DomainEvent]]


class Execution(BaseModel):
    """One run of a published workflow definition."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    workflow_version: int = 1
    input: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=new_context)
    status: ExecutionStatus = ExecutionStatus.PENDING
    step_results: Tuple[StepResult, ...] = ()
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    failed_step_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        workflow_id: str,
        input_data: Optional[Dict[str, Any]] = None,
        workflow_version: int = 1,
    ) -> "Execution":
        execution_id = str(uuid.uuid4())
        meta = {
            "id": execution_id,
            "workflow_id": workflow_id,
            "workflow_version": workflow_version,
        }
        return cls(
            id=execution_id,
            workflow_id=workflow_id,
            workflow_version=workflow_version,
            input=copy.deepcopy(input_data or {}),
            context=new_context(input_data, meta),
        )

    # ------------------------------------------------------------------
    # Helpers
    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _evolve(self, **changes: Any) -> "Execution":
        return self.model_copy(update=changes)

    def _event(self, event_cls: type[DomainEvent], **payload: Any) -> DomainEvent:
        return event_cls(
            execution_id=self.id, workflow_id=self.workflow_id, payload=payload
        )

    def _require(self, operation: str, *allowed: ExecutionStatus) -> None:
        if self.status not in allowed:
            raise StateError(
                f"Cannot {operation} execution {self.id} in status {self.status.value}"
            )

    def results_for(self, step_id: str) -> List[StepResult]:
        return [result for result in self.step_results if result.step_id == step_id]

    def attempts_for(self, step_id: str) -> int:
        return len(self.results_for(step_id))

    def has_settled(self, step_id: str) -> bool:
        """``True`` once the step's output or error is committed to context."""
        return step_id in self.context["steps"] or step_id in self.context["errors"]

    def snapshot_context(self) -> Dict[str, Any]:
        """Deep copy of the context, safe to hand to executors."""
        return copy.deepcopy(self.context)

    # ------------------------------------------------------------------
    # Transitions
    def start(self) -> Transition:
        self._require("start", ExecutionStatus.PENDING)
        execution = self._evolve(status=ExecutionStatus.RUNNING, started_at=_now())
        return execution, [execution._event(ExecutionStarted, input=self.input)]

    def record_step_result(self, result: StepResult) -> Transition:
        self._require("record step result", ExecutionStatus.RUNNING)
        execution = self._evolve(step_results=self.step_results + (result,))
        if result.success:
            event = execution._event(
                StepSucceeded,
                step_id=result.step_id,
                attempt=result.attempt,
                duration_ms=result.duration_ms,
            )
        else:
            event = execution._event(
                StepFailed,
                step_id=result.step_id,
                attempt=result.attempt,
                error=result.error,
                retriable=result.retriable,
            )
        return execution, [event]

    def commit_output(self, step_id: str, output: Any) -> Transition:
        """Store a successful step output under ``steps.<id>``."""
        self._require("commit output", ExecutionStatus.RUNNING)
        if self.has_settled(step_id):
            raise StateError(f"Step {step_id} already committed in execution {self.id}")
        steps = {**self.context["steps"], step_id: copy.deepcopy(output)}
        return self._evolve(context={**self.context, "steps": steps}), []

    def commit_error(self, step_id: str, message: str) -> Transition:
        """Store a tolerated step failure under ``errors.<id>``."""
        self._require("commit error", ExecutionStatus.RUNNING)
        if self.has_settled(step_id):
            raise StateError(f"Step {step_id} already committed in execution {self.id}")
        errors = {**self.context["errors"], step_id: message}
        return self._evolve(context={**self.context, "errors": errors}), []

    def settle_success(self, result: StepResult) -> Transition:
        """Record a successful attempt and commit its output in one step."""
        if not result.success:
            raise StateError(f"Step {result.step_id} attempt {result.attempt} did not succeed")
        recorded, events = self.record_step_result(result)
        committed, _ = recorded.commit_output(result.step_id, result.output)
        return committed, events

    def settle_failure(self, result: StepResult) -> Transition:
        """Record a tolerated failure and commit its error in one step."""
        if result.success:
            raise StateError(f"Step {result.step_id} attempt {result.attempt} succeeded")
        recorded, events = self.record_step_result(result)
        committed, _ = recorded.commit_error(result.step_id, result.error or "")
        return committed, events

    def complete(self, output: Dict[str, Any]) -> Transition:
        self._require("complete", ExecutionStatus.RUNNING)
        execution = self._evolve(
            status=ExecutionStatus.COMPLETED,
            output=copy.deepcopy(output),
            completed_at=_now(),
        )
        return execution, [execution._event(ExecutionCompleted, output=execution.output)]

    def fail(self, message: str, step_id: Optional[str] = None) -> Transition:
        self._require("fail", ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
        execution = self._evolve(
            status=ExecutionStatus.FAILED,
            error=message,
            failed_step_id=step_id,
            completed_at=_now(),
        )
        return execution, [
            execution._event(ExecutionFailed, error=message, step_id=step_id)
        ]

    def cancel(self) -> Transition:
        self._require("cancel", ExecutionStatus.RUNNING)
        execution = self._evolve(status=ExecutionStatus.CANCELLED, completed_at=_now())
        return execution, [execution._event(ExecutionCancelled)]

    # ------------------------------------------------------------------
    # Serialization
    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "Execution":
        return cls.model_validate_json(data)
