"""In-memory implementation of the execution repository."""

from __future__ import annotations

from typing import Dict, Optional

from ..execution import Execution, ExecutionStatus
from .repository import ExecutionRepository, ensure_overwritable


class InMemoryExecutionRepository(ExecutionRepository):
    """Store execution snapshots in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Snapshots are kept as JSON so a load
    never hands out the object the engine is holding.
    """

    def __init__(self) -> None:
        self._snapshots: Dict[str, str] = {}
        self._statuses: Dict[str, ExecutionStatus] = {}

    async def save(self, execution: Execution) -> None:
        ensure_overwritable(self._statuses.get(execution.id), execution)
        self._snapshots[execution.id] = execution.to_json()
        self._statuses[execution.id] = execution.status

    async def load(self, execution_id: str) -> Execution | None:
        data = self._snapshots.get(execution_id)
        return Execution.from_json(data) if data is not None else None

    async def list_executions(
        self, status: Optional[ExecutionStatus] = None
    ) -> list[Execution]:
        executions = [Execution.from_json(data) for data in self._snapshots.values()]
        if status is not None:
            executions = [e for e in executions if e.status == status]
        return sorted(executions, key=lambda e: e.created_at)
