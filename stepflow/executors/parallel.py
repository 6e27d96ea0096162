"""Parallel fan-out step executor."""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from ..contracts import Step, StepType
from ..errors import ParallelStepError
from ..resolver import ExpressionResolver, get_resolver
from ..retry import is_retriable
from .base import StepExecutor

if TYPE_CHECKING:
    from .registry import ExecutorRegistry

logger = logging.getLogger(__name__)


class ParallelExecutor(StepExecutor):
    """Run the inline ``steps`` of a block concurrently.

    Every sub-step gets its own copy of the context snapshot, so sub-steps
    cannot observe each other. With ``wait_for_all`` (the default) all
    sub-steps run to completion; otherwise the first failure cancels the
    rest. Any failure raises :class:`ParallelStepError` carrying the partial
    ``results`` and ``errors``.
    """

    step_type = StepType.PARALLEL

    def __init__(
        self,
        registry: "ExecutorRegistry",
        resolver: Optional[ExpressionResolver] = None,
        retry_unknown_errors: bool = True,
    ) -> None:
        self._registry = registry
        self._resolver = resolver or get_resolver()
        self._retry_unknown_errors = retry_unknown_errors

    async def _run_sub_step(self, sub_step: Step, context: Mapping[str, Any]) -> Any:
        snapshot = copy.deepcopy(context)
        config = self._resolver.resolve_step_config(sub_step.type, sub_step.config, snapshot)
        resolved = sub_step.model_copy(update={"config": config})
        return await self._registry.dispatch(resolved, snapshot)

    async def execute(self, step: Step, context: Mapping[str, Any]) -> Dict[str, Any]:
        sub_steps = step.sub_steps()
        wait_for_all = bool(step.config.get("wait_for_all", True))
        tasks = {
            sub.id: asyncio.create_task(self._run_sub_step(sub, context), name=sub.id)
            for sub in sub_steps
        }
        if not tasks:
            return {"results": {}, "errors": {}}
        try:
            if wait_for_all:
                await asyncio.wait(tasks.values())
            else:
                await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
        finally:
            pending = [task for task in tasks.values() if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        results: Dict[str, Any] = {}
        errors: Dict[str, str] = {}
        retriable = False
        for sub_id, task in tasks.items():
            if task.cancelled():
                errors[sub_id] = "cancelled after a sibling sub-step failed"
                continue
            exc = task.exception()
            if exc is None:
                results[sub_id] = task.result()
            else:
                errors[sub_id] = f"{type(exc).__name__}: {exc}"
                retriable = retriable or is_retriable(exc, self._retry_unknown_errors)

        logger.debug(
            f"Parallel step {step.id}: {len(results)} succeeded, {len(errors)} failed"
        )
        if errors:
            raise ParallelStepError(results, errors, retriable=retriable)
        return {"results": results, "errors": {}}
