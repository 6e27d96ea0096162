"""Step executor contract."""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any, ClassVar, Mapping, Optional

from ..contracts import REQUIRED_CONFIG, Step, StepType
from ..errors import ConfigError, StepTimeoutError

logger = logging.getLogger(__name__)


class StepExecutor(metaclass=abc.ABCMeta):
    """Stateless capability performing the work of one step type.

    Executors receive a step whose config is already resolved and a read
    only snapshot of the execution context. They return the step output or
    raise a :class:`~stepflow.errors.StepError`. They never write to the
    execution context themselves.
    """

    step_type: ClassVar[StepType]

    @abc.abstractmethod
    async def execute(self, step: Step, context: Mapping[str, Any]) -> Any:
        """Run ``step`` and return its output."""
        raise NotImplementedError

    def check_config(self, step: Step) -> None:
        """Raise :class:`ConfigError` when required keys are absent."""
        missing = [key for key in REQUIRED_CONFIG[step.type] if key not in step.config]
        if missing:
            raise ConfigError(
                f"Step {step.id} ({step.type.value}) is missing config: {', '.join(missing)}"
            )


async def run_with_timeout(
    executor: StepExecutor,
    step: Step,
    context: Mapping[str, Any],
    timeout: Optional[float],
) -> Any:
    """Race ``executor.execute`` against a timer."""
    executor.check_config(step)
    try:
        return await asyncio.wait_for(executor.execute(step, context), timeout)
    except asyncio.TimeoutError as exc:
        raise StepTimeoutError(f"Step {step.id} timed out after {timeout}s") from exc
