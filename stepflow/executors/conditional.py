"""Conditional step executor."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from ..contracts import Step, StepType
from ..resolver import ExpressionResolver, get_resolver
from .base import StepExecutor


def _branch_target(branches: Mapping[Any, Any], taken: bool) -> Optional[str]:
    for key, target in branches.items():
        if str(key).lower() == str(taken).lower():
            return target
    return None


class ConditionalExecutor(StepExecutor):
    """Evaluate ``condition`` and report which branch it selects.

    The decision is advisory: the engine records it but keeps running the
    steps in definition order.
    """

    step_type = StepType.CONDITIONAL

    def __init__(self, resolver: Optional[ExpressionResolver] = None) -> None:
        self._resolver = resolver or get_resolver()

    async def execute(self, step: Step, context: Mapping[str, Any]) -> Dict[str, Any]:
        taken = bool(self._resolver.evaluate_field(step.config["condition"], context))
        return {
            "condition_result": taken,
            "branch_taken": "true" if taken else "false",
            "target_step": _branch_target(step.config["branches"], taken),
        }
