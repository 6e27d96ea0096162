"""Transform step executor."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from ..constants import DEFAULT_OUTPUT_KEY
from ..contracts import Step, StepType
from ..resolver import ExpressionResolver, get_resolver
from .base import StepExecutor


class TransformExecutor(StepExecutor):
    """Evaluate ``expression`` and return ``{output_key: value}``."""

    step_type = StepType.TRANSFORM

    def __init__(self, resolver: Optional[ExpressionResolver] = None) -> None:
        self._resolver = resolver or get_resolver()

    async def execute(self, step: Step, context: Mapping[str, Any]) -> Dict[str, Any]:
        value = self._resolver.evaluate_field(step.config["expression"], context)
        output_key = step.config.get("output_key") or DEFAULT_OUTPUT_KEY
        return {output_key: value}
