"""Repository abstraction for execution snapshot persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..errors import StateError
from ..execution import TERMINAL_STATUSES, Execution, ExecutionStatus

# SQL list of terminal statuses, for backends that guard the overwrite in a query.
TERMINAL_SQL = ", ".join(f"'{status.value}'" for status in sorted(TERMINAL_STATUSES))


def ensure_overwritable(current: Optional[ExecutionStatus], execution: Execution) -> None:
    """Refuse to replace a terminal snapshot with one in a different status."""
    if current is not None and current in TERMINAL_STATUSES and current != execution.status:
        raise overwrite_refused(execution, current)


def overwrite_refused(execution: Execution, current: ExecutionStatus | str) -> StateError:
    status = current.value if isinstance(current, ExecutionStatus) else current
    return StateError(
        f"Execution {execution.id} is already {status}; "
        f"refusing to store it as {execution.status.value}"
    )


class ExecutionRepository(Protocol):
    """Protocol for execution snapshot backends.

    ``save`` raises :class:`~stepflow.errors.StateError` instead of moving a
    terminal execution to another status.
    """

    async def save(self, execution: Execution) -> None:
        """Insert or replace the snapshot for ``execution.id``."""

    async def load(self, execution_id: str) -> Execution | None:
        """Return the latest snapshot, or ``None`` when unknown."""

    async def list_executions(
        self, status: Optional[ExecutionStatus] = None
    ) -> list[Execution]:
        """Return all persisted executions, optionally filtered by status."""
