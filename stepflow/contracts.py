"""Workflow definition contracts and publish-time validation."""

from __future__ import annotations

import copy
import logging
import re
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .constants import HTTP_METHODS, MAX_RETRY_ATTEMPTS, MAX_WORKFLOW_RETRIES
from .errors import NotFoundError, StateError, ValidationError

logger = logging.getLogger(__name__)

STEP_ID_PATTERN = re.compile(r"^step_[A-Za-z0-9_]+$")


class StepType(str, Enum):
    """Closed set of step kinds understood by the engine."""

    HTTP = "http"
    AGENT = "agent"
    TRANSFORM = "transform"
    CONDITIONAL = "conditional"
    PARALLEL = "parallel"
    DELAY = "delay"
    NOTIFICATION = "notification"


REQUIRED_CONFIG: Dict[StepType, Tuple[str, ...]] = {
    StepType.HTTP: ("url", "method"),
    StepType.AGENT: ("agent_id", "input"),
    StepType.TRANSFORM: ("expression",),
    StepType.CONDITIONAL: ("condition", "branches"),
    StepType.PARALLEL: ("steps",),
    StepType.DELAY: ("duration_ms",),
    StepType.NOTIFICATION: ("channel", "message"),
}


class OnError(str, Enum):
    FAIL = "fail"
    CONTINUE = "continue"
    RETRY = "retry"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


def _read_only(self: Any, *args: Any, **kwargs: Any) -> None:
    raise StateError("Configuration of a published workflow step is read-only")


class FrozenConfig(dict):
    """Read-only mapping used for the config of published steps.

    Copies (``copy.copy``/``copy.deepcopy``) are plain, mutable dicts.
    """

    __setitem__ = __delitem__ = __ior__ = _read_only
    clear = pop = popitem = setdefault = update = _read_only

    def __copy__(self) -> Dict[str, Any]:
        return dict(self)

    def __deepcopy__(self, memo: Dict[int, Any]) -> Dict[str, Any]:
        return {copy.deepcopy(k, memo): copy.deepcopy(v, memo) for k, v in self.items()}

    def __reduce__(self) -> Any:
        return (dict, (dict(self),))


class FrozenList(list):
    """Read-only list counterpart of :class:`FrozenConfig`."""

    __setitem__ = __delitem__ = __iadd__ = __imul__ = _read_only
    append = extend = insert = pop = remove = clear = sort = reverse = _read_only

    def __copy__(self) -> List[Any]:
        return list(self)

    def __deepcopy__(self, memo: Dict[int, Any]) -> List[Any]:
        return [copy.deepcopy(item, memo) for item in self]

    def __reduce__(self) -> Any:
        return (list, (list(self),))


def freeze(value: Any) -> Any:
    """Recursively wrap dicts and lists in their read-only counterparts."""
    if isinstance(value, dict):
        return FrozenConfig((key, freeze(item)) for key, item in value.items())
    if isinstance(value, list):
        return FrozenList(freeze(item) for item in value)
    if isinstance(value, tuple):
        return tuple(freeze(item) for item in value)
    if isinstance(value, Step):
        return value.frozen()
    return value


class RetrySpec(BaseModel):
    """Per-step retry settings."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=MAX_RETRY_ATTEMPTS)
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay_ms: int = Field(default=1000, ge=0)


class ErrorHandlingPolicy(BaseModel):
    """Workflow-wide reaction to a failed step."""

    model_config = ConfigDict(frozen=True)

    on_error: OnError = OnError.FAIL
    max_retries: int = Field(default=3, ge=0, le=MAX_WORKFLOW_RETRIES)
    retry_delay_ms: int = Field(default=1000, ge=0)


class Step(BaseModel):
    """One unit of work within a workflow definition."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    type: StepType
    config: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    timeout: Optional[float] = Field(default=None, gt=0, description="Seconds")
    retry: Optional[RetrySpec] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def references(self) -> List[str]:
        """Step ids this step points at."""
        refs = list(self.depends_on)
        if self.type == StepType.CONDITIONAL:
            branches = self.config.get("branches")
            if isinstance(branches, dict):
                refs.extend(
                    target for target in branches.values() if isinstance(target, str)
                )
        target = self.config.get("target")
        if isinstance(target, str):
            refs.append(target)
        return refs

    def frozen(self) -> "Step":
        """Copy whose config and dependencies reject in-place edits."""
        return self.model_copy(
            update={"config": freeze(self.config), "depends_on": freeze(self.depends_on)}
        )

    def sub_steps(self) -> List["Step"]:
        """Parse the inline sub-steps of a parallel block."""
        if self.type != StepType.PARALLEL:
            return []
        return [
            item if isinstance(item, Step) else Step.model_validate(item)
            for item in self.config.get("steps") or []
        ]


def _is_template(value: Any) -> bool:
    return isinstance(value, str) and "{{" in value


def _check_step_config(step: Step, prefix: str = "") -> List[str]:
    problems: List[str] = []
    where = f"{prefix}step {step.id}"
    if not STEP_ID_PATTERN.match(step.id):
        problems.append(f"{where}: id must match 'step_<alnum>'")

    missing = [key for key in REQUIRED_CONFIG[step.type] if key not in step.config]
    if missing:
        problems.append(
            f"{where}: missing required config for {step.type.value}: {', '.join(missing)}"
        )
        return problems

    if step.type == StepType.HTTP:
        method = step.config["method"]
        if not _is_template(method) and str(method).upper() not in HTTP_METHODS:
            problems.append(f"{where}: unsupported http method {method!r}")
    elif step.type == StepType.CONDITIONAL:
        branches = step.config["branches"]
        if not isinstance(branches, dict) or not {"true", "false"} <= set(
            str(key).lower() for key in branches
        ):
            problems.append(f"{where}: branches must define 'true' and 'false'")
    elif step.type == StepType.PARALLEL:
        raw = step.config["steps"]
        if not isinstance(raw, list) or not raw:
            problems.append(f"{where}: parallel block needs a non-empty steps list")
            return problems
        seen: set[str] = set()
        for index, item in enumerate(raw):
            try:
                sub = item if isinstance(item, Step) else Step.model_validate(item)
            except PydanticValidationError as exc:
                problems.append(f"{where}: sub-step #{index} is malformed: {exc}")
                continue
            if sub.id in seen:
                problems.append(f"{where}: duplicate sub-step id {sub.id}")
            seen.add(sub.id)
            problems.extend(_check_step_config(sub, prefix=f"{where} > "))
    return problems


class WorkflowDefinition(BaseModel):
    """Versioned, ordered description of a workflow.

    Definitions are editable only while in ``draft`` status. Publishing
    validates the structure and freezes it; any further change requires
    :meth:`create_new_version`.
    """

    id: str = Field(default_factory=lambda: f"wf_{uuid.uuid4().hex[:12]}")
    name: str
    description: Optional[str] = None
    version: int = Field(default=1, ge=1)
    status: WorkflowStatus = WorkflowStatus.DRAFT
    steps: Tuple[Step, ...] = ()
    error_handling: ErrorHandlingPolicy = Field(default_factory=ErrorHandlingPolicy)

    def __setattr__(self, name: str, value: Any) -> None:
        if self.status != WorkflowStatus.DRAFT:
            raise StateError(
                f"Workflow {self.id} v{self.version} is {self.status.value} and cannot be modified"
            )
        super().__setattr__(name, value)

    def model_post_init(self, __context: Any) -> None:
        if self.status != WorkflowStatus.DRAFT:
            self._freeze_steps()

    def _freeze_steps(self) -> None:
        super().__setattr__("steps", tuple(step.frozen() for step in self.steps))

    # ------------------------------------------------------------------
    # Draft editing
    def _require_draft(self, operation: str) -> None:
        if self.status != WorkflowStatus.DRAFT:
            raise StateError(
                f"Cannot {operation} on {self.status.value} workflow {self.id} v{self.version}"
            )

    def get_step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise NotFoundError(f"Step {step_id} not found in workflow {self.id}")

    @property
    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]

    def add_step(self, step: Step | Dict[str, Any], position: Optional[int] = None) -> Step:
        """Append ``step`` or insert it at ``position``."""
        self._require_draft("add step")
        new_step = Step.model_validate(step if isinstance(step, dict) else step.model_dump())
        steps = list(self.steps)
        if position is None:
            steps.append(new_step)
        else:
            steps.insert(position, new_step)
        self.steps = tuple(steps)
        return new_step

    def remove_step(self, step_id: str) -> Step:
        self._require_draft("remove step")
        removed = self.get_step(step_id)
        self.steps = tuple(step for step in self.steps if step.id != step_id)
        return removed

    def update_step(self, step_id: str, **changes: Any) -> Step:
        """Replace fields of an existing step, keeping its position."""
        self._require_draft("update step")
        current = self.get_step(step_id)
        updated = Step.model_validate({**current.model_dump(), **changes})
        self.steps = tuple(updated if step.id == step_id else step for step in self.steps)
        return updated

    # ------------------------------------------------------------------
    # Lifecycle
    def validate_structure(self) -> List[str]:
        """Return every structural problem that would block publishing."""
        problems: List[str] = []
        if not self.steps:
            problems.append("workflow must contain at least one step")

        ids = [step.id for step in self.steps]
        duplicates = sorted({step_id for step_id in ids if ids.count(step_id) > 1})
        for step_id in duplicates:
            problems.append(f"duplicate step id {step_id}")

        known = set(ids)
        for step in self.steps:
            problems.extend(_check_step_config(step))
            for ref in step.references():
                if ref not in known:
                    problems.append(f"step {step.id}: reference to unknown step {ref}")
        return problems

    def publish(self) -> "WorkflowDefinition":
        """Validate and freeze the definition."""
        self._require_draft("publish")
        problems = self.validate_structure()
        if problems:
            raise ValidationError(problems)
        self.status = WorkflowStatus.PUBLISHED
        self._freeze_steps()
        logger.info(f"Published workflow {self.id} v{self.version} ({len(self.steps)} steps)")
        return self

    def archive(self) -> "WorkflowDefinition":
        if self.status != WorkflowStatus.PUBLISHED:
            raise StateError(f"Only published workflows can be archived, got {self.status.value}")
        super().__setattr__("status", WorkflowStatus.ARCHIVED)
        logger.info(f"Archived workflow {self.id} v{self.version}")
        return self

    def create_new_version(self) -> "WorkflowDefinition":
        """Clone into a fresh draft at ``version + 1``."""
        if self.status == WorkflowStatus.DRAFT:
            raise StateError(f"Workflow {self.id} v{self.version} is still a draft")
        data = self.model_dump()
        data.update(version=self.version + 1, status=WorkflowStatus.DRAFT)
        return WorkflowDefinition.model_validate(data)

    @property
    def is_published(self) -> bool:
        return self.status == WorkflowStatus.PUBLISHED
