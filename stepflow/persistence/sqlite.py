"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any, Optional

from ..execution import Execution, ExecutionStatus
from .repository import TERMINAL_SQL, ExecutionRepository, overwrite_refused


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist execution snapshots using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                snapshot TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON executions (status)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Repository API
    async def save(self, execution: Execution) -> None:
        updated_at = execution.completed_at or execution.started_at or execution.created_at
        changed = await asyncio.to_thread(
            self._execute,
            f"""
            INSERT INTO executions (execution_id, workflow_id, status, created_at, updated_at, snapshot)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(execution_id) DO UPDATE SET
                status = excluded.status,
                updated_at = excluded.updated_at,
                snapshot = excluded.snapshot
            WHERE executions.status NOT IN ({TERMINAL_SQL})
                OR executions.status = excluded.status
            """,
            execution.id,
            execution.workflow_id,
            execution.status.value,
            execution.created_at.isoformat(),
            updated_at.isoformat(),
            execution.to_json(),
        )
        if not changed:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT status FROM executions WHERE execution_id = ?",
                execution.id,
            )
            raise overwrite_refused(execution, row["status"] if row else "missing")

    async def load(self, execution_id: str) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT snapshot FROM executions WHERE execution_id = ?",
            execution_id,
        )
        if not row:
            return None
        return Execution.from_json(row["snapshot"])

    async def list_executions(
        self, status: Optional[ExecutionStatus] = None
    ) -> list[Execution]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT snapshot FROM executions ORDER BY created_at",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT snapshot FROM executions WHERE status = ? ORDER BY created_at",
                status.value,
            )
        return [Execution.from_json(row["snapshot"]) for row in rows]
