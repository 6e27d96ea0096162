"""Registry mapping step types to executors."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional

from ..contracts import Step, StepType
from ..errors import ConfigError
from .base import StepExecutor, run_with_timeout

logger = logging.getLogger(__name__)


class ExecutorRegistry:
    """Maps each :class:`StepType` to exactly one executor."""

    def __init__(self, default_timeout: Optional[float] = None) -> None:
        self._executors: Dict[StepType, StepExecutor] = {}
        self.default_timeout = default_timeout

    def register(self, executor: StepExecutor, replace: bool = False) -> StepExecutor:
        step_type = executor.step_type
        if step_type in self._executors and not replace:
            raise ConfigError(f"Executor for {step_type.value} already registered")
        self._executors[step_type] = executor
        logger.debug(f"Registered {type(executor).__name__} for {step_type.value} steps")
        return executor

    def get(self, step_type: StepType | str) -> StepExecutor:
        try:
            return self._executors[StepType(step_type)]
        except (KeyError, ValueError) as exc:
            raise ConfigError(f"No executor registered for step type {step_type!r}") from exc

    def __contains__(self, step_type: object) -> bool:
        return step_type in self._executors

    def __iter__(self) -> Iterator[StepType]:
        return iter(self._executors)

    def missing_types(self) -> List[StepType]:
        return [step_type for step_type in StepType if step_type not in self._executors]

    def ensure_complete(self) -> None:
        """Raise when a step type has no executor."""
        missing = self.missing_types()
        if missing:
            raise ConfigError(
                "No executor registered for: " + ", ".join(t.value for t in missing)
            )

    async def dispatch(
        self,
        step: Step,
        context: Mapping[str, Any],
        timeout: Optional[float] = None,
    ) -> Any:
        """Run ``step`` on its executor, enforcing the step timeout."""
        executor = self.get(step.type)
        effective = step.timeout or timeout or self.default_timeout
        logger.debug(
            f"Dispatching step {step.id} to {type(executor).__name__} (timeout={effective})"
        )
        return await run_with_timeout(executor, step, context, effective)
