"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

from typing import Optional

import asyncpg

from ..execution import Execution, ExecutionStatus
from .repository import TERMINAL_SQL, ExecutionRepository, overwrite_refused


class PostgresExecutionRepository(ExecutionRepository):
    """Persist execution snapshots using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                snapshot JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON executions (status)"
        )

    # ------------------------------------------------------------------
    async def save(self, execution: Execution) -> None:
        updated_at = execution.completed_at or execution.started_at or execution.created_at
        conn = await self._connect()
        try:
            command_tag = await conn.execute(
                f"""
                INSERT INTO executions (execution_id, workflow_id, status, created_at, updated_at, snapshot)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                ON CONFLICT (execution_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    updated_at = EXCLUDED.updated_at,
                    snapshot = EXCLUDED.snapshot
                WHERE executions.status NOT IN ({TERMINAL_SQL})
                    OR executions.status = EXCLUDED.status
                """,
                execution.id,
                execution.workflow_id,
                execution.status.value,
                execution.created_at,
                updated_at,
                execution.to_json(),
            )
            if command_tag.endswith(" 0"):
                current = await conn.fetchval(
                    "SELECT status FROM executions WHERE execution_id = $1", execution.id
                )
                raise overwrite_refused(execution, current or "missing")
        finally:
            await conn.close()

    async def load(self, execution_id: str) -> Execution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT snapshot::text AS snapshot FROM executions WHERE execution_id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return Execution.from_json(row["snapshot"])

    async def list_executions(
        self, status: Optional[ExecutionStatus] = None
    ) -> list[Execution]:
        conn = await self._connect()
        try:
            if status is None:
                rows = await conn.fetch(
                    "SELECT snapshot::text AS snapshot FROM executions ORDER BY created_at"
                )
            else:
                rows = await conn.fetch(
                    "SELECT snapshot::text AS snapshot FROM executions WHERE status = $1 ORDER BY created_at",
                    status.value,
                )
        finally:
            await conn.close()
        return [Execution.from_json(r["snapshot"]) for r in rows]
