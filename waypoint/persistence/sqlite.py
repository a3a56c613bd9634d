"""SQLite implementations of the run and escalation repositories."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from ..contracts import (
    ExecutionOptions,
    RunStatus,
    WorkflowDefinition,
    WorkflowRunState,
)
from ..errors import StoreWriteError
from .models import (
    CategoryKey,
    Checkpoint,
    Escalation,
    EscalationFilter,
    EscalationMetrics,
    EscalationStatus,
    RunRecord,
)
from .repository import EscalationStore, WorkflowRepository

T = TypeVar("T")

_CATEGORY_COLUMNS = {"workflow_name", "workflow_run_id", "step_id", "status"}


class _SQLiteStore:
    """Shared connection handling.

    Every write runs inside its own transaction so a failure leaves the prior
    durable state intact.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout=5000")
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._lock = threading.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Helper methods
    def _write(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        with self._lock:
            try:
                with self._conn:
                    return fn(self._conn)
            except sqlite3.Error as e:
                raise StoreWriteError(
                    f"Write to {self.db_path} failed: {e}",
                    context={"db_path": self.db_path},
                    cause=e,
                )

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class SQLiteWorkflowRepository(_SQLiteStore, WorkflowRepository):
    """Persist run records and checkpoints using SQLite."""

    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    workflow_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    state TEXT NOT NULL,
                    definition TEXT NOT NULL,
                    options TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_runs_status ON runs (status)"
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS checkpoints (
                    run_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    created_at_step_id TEXT,
                    reason TEXT,
                    created_at TEXT NOT NULL,
                    state TEXT NOT NULL,
                    PRIMARY KEY (run_id, sequence)
                )
                """
            )

    # ------------------------------------------------------------------
    # Repository API
    async def save_run(self, record: RunRecord) -> None:
        state = record.state

        def _upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO runs (run_id, workflow_name, status, updated_at, state, definition, options)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    status = excluded.status,
                    updated_at = excluded.updated_at,
                    state = excluded.state,
                    definition = excluded.definition,
                    options = excluded.options
                """,
                (
                    state.run_id,
                    state.workflow_name,
                    state.status.value,
                    state.updated_at.isoformat(),
                    state.model_dump_json(),
                    record.definition.model_dump_json(),
                    record.options.model_dump_json(),
                ),
            )

        await asyncio.to_thread(self._write, _upsert)

    async def get_run(self, run_id: str) -> RunRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT state, definition, options FROM runs WHERE run_id = ?",
            run_id,
        )
        return self._row_to_run(row) if row else None

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[RunRecord]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT state, definition, options FROM runs ORDER BY updated_at",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT state, definition, options FROM runs WHERE status = ? ORDER BY updated_at",
                status.value,
            )
        return [self._row_to_run(r) for r in rows]

    async def save_checkpoint(
        self,
        state: WorkflowRunState,
        created_at_step_id: Optional[str] = None,
        reason: str = "",
    ) -> Checkpoint:
        snapshot = state.model_copy(deep=True)

        def _append(conn: sqlite3.Connection) -> Checkpoint:
            row = conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) FROM checkpoints WHERE run_id = ?",
                (snapshot.run_id,),
            ).fetchone()
            checkpoint = Checkpoint(
                run_id=snapshot.run_id,
                sequence=row[0] + 1,
                created_at_step_id=created_at_step_id,
                reason=reason,
                state=snapshot,
            )
            conn.execute(
                """
                INSERT INTO checkpoints (run_id, sequence, created_at_step_id, reason, created_at, state)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    checkpoint.run_id,
                    checkpoint.sequence,
                    checkpoint.created_at_step_id,
                    checkpoint.reason,
                    checkpoint.created_at.isoformat(),
                    snapshot.model_dump_json(),
                ),
            )
            return checkpoint

        return await asyncio.to_thread(self._write, _append)

    async def latest_checkpoint(self, run_id: str) -> Checkpoint | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM checkpoints WHERE run_id = ? ORDER BY sequence DESC LIMIT 1",
            run_id,
        )
        return self._row_to_checkpoint(row) if row else None

    async def get_checkpoint(self, run_id: str, sequence: int) -> Checkpoint | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM checkpoints WHERE run_id = ? AND sequence = ?",
            run_id,
            sequence,
        )
        return self._row_to_checkpoint(row) if row else None

    async def list_checkpoints(self, run_id: str) -> list[Checkpoint]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM checkpoints WHERE run_id = ? ORDER BY sequence",
            run_id,
        )
        return [self._row_to_checkpoint(r) for r in rows]

    async def prune_checkpoints(self, run_id: str, keep: int) -> int:
        def _prune(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                """
                DELETE FROM checkpoints
                WHERE run_id = ? AND sequence NOT IN (
                    SELECT sequence FROM checkpoints WHERE run_id = ?
                    ORDER BY sequence DESC LIMIT ?
                )
                """,
                (run_id, run_id, keep),
            )
            return cur.rowcount

        return await asyncio.to_thread(self._write, _prune)

    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> RunRecord:
        return RunRecord.model_validate(
            {
                "state": WorkflowRunState.model_validate_json(row["state"]),
                "definition": WorkflowDefinition.model_validate_json(row["definition"]),
                "options": ExecutionOptions.model_validate_json(row["options"]),
            }
        )

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
        return Checkpoint(
            run_id=row["run_id"],
            sequence=row["sequence"],
            created_at_step_id=row["created_at_step_id"],
            reason=row["reason"] or "",
            created_at=row["created_at"],
            state=WorkflowRunState.model_validate_json(row["state"]),
        )


class SQLiteEscalationStore(_SQLiteStore, EscalationStore):
    """Persist escalations using SQLite, one row per escalation."""

    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS escalations (
                    id TEXT PRIMARY KEY,
                    workflow_run_id TEXT NOT NULL,
                    workflow_name TEXT NOT NULL,
                    step_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    resolution_time_ms INTEGER,
                    body TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_escalations_status ON escalations (status, created_at)"
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_escalations_run ON escalations (workflow_run_id, created_at)"
            )

    async def create(self, escalation: Escalation) -> None:
        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO escalations
                    (id, workflow_run_id, workflow_name, step_id, status, created_at, resolution_time_ms, body)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    escalation.id,
                    escalation.workflow_run_id,
                    escalation.workflow_name,
                    escalation.step_id,
                    escalation.status.value,
                    escalation.created_at.isoformat(),
                    escalation.resolution_time_ms,
                    escalation.model_dump_json(),
                ),
            )

        await asyncio.to_thread(self._write, _insert)

    async def get(self, escalation_id: str) -> Escalation | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM escalations WHERE id = ?", escalation_id
        )
        return Escalation.model_validate_json(row["body"]) if row else None

    async def replace_if_status(
        self, escalation: Escalation, expected: EscalationStatus
    ) -> bool:
        def _update(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                """
                UPDATE escalations
                SET status = ?, resolution_time_ms = ?, body = ?
                WHERE id = ? AND status = ?
                """,
                (
                    escalation.status.value,
                    escalation.resolution_time_ms,
                    escalation.model_dump_json(),
                    escalation.id,
                    expected.value,
                ),
            )
            return cur.rowcount == 1

        return await asyncio.to_thread(self._write, _update)

    async def list(self, filters: EscalationFilter | None = None) -> list[Escalation]:
        filters = filters or EscalationFilter()
        clauses: list[str] = []
        params: list[Any] = []
        if filters.status is not None:
            clauses.append("status = ?")
            params.append(filters.status.value)
        if filters.workflow_run_id is not None:
            clauses.append("workflow_run_id = ?")
            params.append(filters.workflow_run_id)

        query = "SELECT body FROM escalations"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at"
        if filters.limit is not None:
            query += " LIMIT ?"
            params.append(filters.limit)

        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Escalation.model_validate_json(r["body"]) for r in rows]

    async def metrics(self, category_key: CategoryKey = "workflow_name") -> EscalationMetrics:
        if category_key not in _CATEGORY_COLUMNS:
            raise ValueError(f"Unsupported category key: {category_key}")
        totals = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status = 'resolved' THEN 1 ELSE 0 END) AS resolved,
                AVG(CASE WHEN status = 'resolved' THEN COALESCE(resolution_time_ms, 0) END) AS avg_ms
            FROM escalations
            """,
        )
        groups = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {category_key} AS category, COUNT(*) AS n FROM escalations GROUP BY {category_key}",
        )
        return EscalationMetrics(
            total_escalations=totals["total"] or 0,
            resolved_count=totals["resolved"] or 0,
            average_resolution_time_ms=round(totals["avg_ms"]) if totals["avg_ms"] is not None else 0,
            category_breakdown={str(g["category"]): g["n"] for g in groups},
        )
