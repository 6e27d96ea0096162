"""Delay step executor."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Mapping

from ..contracts import Step, StepType
from ..errors import ConfigError
from ..retry import SleepFunc
from .base import StepExecutor


class DelayExecutor(StepExecutor):
    """Pause the execution for ``duration_ms``."""

    step_type = StepType.DELAY

    def __init__(self, sleep: SleepFunc = asyncio.sleep) -> None:
        self._sleep = sleep

    async def execute(self, step: Step, context: Mapping[str, Any]) -> Dict[str, Any]:
        try:
            duration_ms = float(step.config["duration_ms"])
        except (TypeError, ValueError) as exc:
            raise ConfigError(
                f"Step {step.id}: duration_ms must be a number, got {step.config['duration_ms']!r}"
            ) from exc
        if duration_ms < 0:
            raise ConfigError(f"Step {step.id}: duration_ms must not be negative")
        await self._sleep(duration_ms / 1000.0)
        return {"delayed_ms": duration_ms}
