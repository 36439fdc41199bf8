"""SQLite state persistence with WAL mode."""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

import aiosqlite
import anyio

from .models import (
    ArtifactEntry,
    Fact,
    HandoffReport,
    HistoryEntry,
    HistoryKind,
    Task,
    TaskContext,
    TaskStatus,
    now_iso,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS workflows (
    id TEXT PRIMARY KEY,
    objective TEXT NOT NULL,
    category TEXT DEFAULT '',
    constraints TEXT DEFAULT '[]',
    state TEXT NOT NULL DEFAULT 'idle',
    current_mode TEXT DEFAULT '',
    reason TEXT DEFAULT '',
    error_kind TEXT DEFAULT '',
    version INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL REFERENCES workflows(id),
    target_mode TEXT NOT NULL,
    objective TEXT NOT NULL,
    instruction TEXT DEFAULT '',
    context TEXT DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending',
    attempt INTEGER DEFAULT 0,
    failure_reason TEXT DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS facts (
    workflow_id TEXT NOT NULL REFERENCES workflows(id),
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    task_id TEXT DEFAULT '',
    mode TEXT DEFAULT '',
    categories TEXT DEFAULT '[]',
    updated_at TEXT NOT NULL,
    PRIMARY KEY (workflow_id, key)
);

CREATE TABLE IF NOT EXISTS artifacts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workflow_id TEXT NOT NULL REFERENCES workflows(id),
    path TEXT NOT NULL,
    task_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (workflow_id, task_id, path)
);

CREATE TABLE IF NOT EXISTS history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workflow_id TEXT NOT NULL REFERENCES workflows(id),
    seq INTEGER NOT NULL,
    kind TEXT NOT NULL,
    task_id TEXT DEFAULT '',
    mode TEXT DEFAULT '',
    summary TEXT DEFAULT '',
    error_kind TEXT DEFAULT '',
    detail TEXT DEFAULT '{}',
    report TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (workflow_id, seq)
);

CREATE TABLE IF NOT EXISTS open_issues (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workflow_id TEXT NOT NULL REFERENCES workflows(id),
    question TEXT NOT NULL,
    raised_by TEXT DEFAULT '',
    created_at TEXT NOT NULL,
    UNIQUE (workflow_id, question)
);

CREATE TABLE IF NOT EXISTS run_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workflow_id TEXT NOT NULL,
    event TEXT NOT NULL,
    detail TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_workflow ON tasks(workflow_id);
CREATE INDEX IF NOT EXISTS idx_artifacts_workflow ON artifacts(workflow_id);
CREATE INDEX IF NOT EXISTS idx_history_workflow ON history(workflow_id);
CREATE INDEX IF NOT EXISTS idx_run_log_workflow ON run_log(workflow_id);
"""


class Database:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        # One connection, one transaction: concurrent writers must not interleave
        self._write_lock = anyio.Lock()

    async def init(self) -> None:
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def _write(self, sql: str, params: tuple = ()) -> None:
        async with self._write_lock:
            await self._conn.execute(sql, params)
            await self._conn.commit()

    # ---------------------------------------------------------------
    # Workflows
    # ---------------------------------------------------------------

    async def create_workflow(
        self,
        workflow_id: str,
        objective: str,
        category: str = "",
        constraints: list[str] | None = None,
    ) -> None:
        now = now_iso()
        await self._write(
            """INSERT INTO workflows
               (id, objective, category, constraints, state, created_at, updated_at)
               VALUES (?,?,?,?,?,?,?)""",
            (workflow_id, objective, category, json.dumps(constraints or []),
             "idle", now, now),
        )

    async def update_workflow(
        self,
        workflow_id: str,
        state: str,
        current_mode: str = "",
        reason: str = "",
        error_kind: str = "",
    ) -> None:
        await self._write(
            """UPDATE workflows
               SET state = ?, current_mode = ?, reason = ?, error_kind = ?, updated_at = ?
               WHERE id = ?""",
            (state, current_mode, reason, error_kind, now_iso(), workflow_id),
        )

    async def get_workflow(self, workflow_id: str) -> dict | None:
        cursor = await self._conn.execute(
            "SELECT * FROM workflows WHERE id = ?", (workflow_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_workflow(row) if row else None

    async def list_workflows(self) -> list[dict]:
        cursor = await self._conn.execute("SELECT * FROM workflows ORDER BY created_at, id")
        rows = await cursor.fetchall()
        return [self._row_to_workflow(r) for r in rows]

    # ---------------------------------------------------------------
    # Tasks
    # ---------------------------------------------------------------

    async def upsert_task(self, task: Task) -> None:
        task.updated_at = now_iso()
        ctx = task.context
        await self._write(
            """INSERT INTO tasks
               (id, workflow_id, target_mode, objective, instruction, context,
                status, attempt, failure_reason, created_at, updated_at)
               VALUES (?,?,?,?,?,?,?,?,?,?,?)
               ON CONFLICT(id) DO UPDATE SET
                 target_mode=excluded.target_mode,
                 instruction=excluded.instruction,
                 context=excluded.context,
                 status=excluded.status,
                 attempt=excluded.attempt,
                 failure_reason=excluded.failure_reason,
                 updated_at=excluded.updated_at
            """,
            (
                task.id, task.workflow_id, task.target_mode, task.objective,
                task.instruction,
                json.dumps({
                    "category": ctx.category,
                    "artifacts": ctx.artifacts,
                    "open_questions": ctx.open_questions,
                    "constraints": ctx.constraints,
                    "corrective_notes": ctx.corrective_notes,
                }),
                task.status.value, task.attempt, task.failure_reason,
                task.created_at, task.updated_at,
            ),
        )

    async def get_task(self, task_id: str) -> Task | None:
        cursor = await self._conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
        row = await cursor.fetchone()
        return self._row_to_task(row) if row else None

    async def get_tasks(self, workflow_id: str) -> list[Task]:
        cursor = await self._conn.execute(
            "SELECT * FROM tasks WHERE workflow_id = ? ORDER BY id",
            (workflow_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(r) for r in rows]

    # ---------------------------------------------------------------
    # Workflow state
    # ---------------------------------------------------------------

    async def apply_state_delta(
        self,
        workflow_id: str,
        version: int,
        facts: Sequence[Fact] = (),
        artifacts: Sequence[ArtifactEntry] = (),
        history: Sequence[HistoryEntry] = (),
        raised: Sequence[tuple[str, str]] = (),
        resolved: Sequence[str] = (),
    ) -> None:
        """Write one state change in a single transaction."""
        now = now_iso()
        async with self._write_lock:
            await self._apply_delta(workflow_id, version, now, facts, artifacts, history,
                                    raised, resolved)

    async def _apply_delta(self, workflow_id, version, now, facts, artifacts, history,
                           raised, resolved) -> None:
        try:
            for f in facts:
                await self._conn.execute(
                    """INSERT INTO facts
                       (workflow_id, key, value, task_id, mode, categories, updated_at)
                       VALUES (?,?,?,?,?,?,?)
                       ON CONFLICT(workflow_id, key) DO UPDATE SET
                         value=excluded.value,
                         task_id=excluded.task_id,
                         mode=excluded.mode,
                         categories=excluded.categories,
                         updated_at=excluded.updated_at
                    """,
                    (workflow_id, f.key, f.value, f.task_id, f.mode,
                     json.dumps(list(f.categories)), now),
                )
            for a in artifacts:
                await self._conn.execute(
                    """INSERT OR IGNORE INTO artifacts (workflow_id, path, task_id, created_at)
                       VALUES (?,?,?,?)""",
                    (workflow_id, a.path, a.task_id, now),
                )
            for h in history:
                await self._conn.execute(
                    """INSERT INTO history
                       (workflow_id, seq, kind, task_id, mode, summary, error_kind,
                        detail, report, created_at)
                       VALUES (?,?,?,?,?,?,?,?,?,?)""",
                    (
                        workflow_id, h.seq, h.kind.value, h.task_id, h.mode,
                        h.summary, h.error_kind, json.dumps(h.detail),
                        json.dumps(h.report.to_dict()) if h.report else None,
                        now,
                    ),
                )
            for question, raised_by in raised:
                await self._conn.execute(
                    """INSERT OR IGNORE INTO open_issues
                       (workflow_id, question, raised_by, created_at)
                       VALUES (?,?,?,?)""",
                    (workflow_id, question, raised_by, now),
                )
            for question in resolved:
                await self._conn.execute(
                    "DELETE FROM open_issues WHERE workflow_id = ? AND question = ?",
                    (workflow_id, question),
                )
            await self._conn.execute(
                "UPDATE workflows SET version = ?, updated_at = ? WHERE id = ?",
                (version, now, workflow_id),
            )
            await self._conn.commit()
        except BaseException:
            await self._conn.rollback()
            raise

    async def load_state(self, workflow_id: str) -> dict[str, Any]:
        """Rows needed to rebuild a WorkflowState snapshot."""
        wf = await self.get_workflow(workflow_id)

        cursor = await self._conn.execute(
            "SELECT * FROM facts WHERE workflow_id = ? ORDER BY key", (workflow_id,)
        )
        facts = [
            Fact(
                key=r["key"], value=r["value"], task_id=r["task_id"] or "",
                mode=r["mode"] or "",
                categories=tuple(json.loads(r["categories"]) if r["categories"] else []),
            )
            for r in await cursor.fetchall()
        ]

        cursor = await self._conn.execute(
            "SELECT * FROM artifacts WHERE workflow_id = ? ORDER BY id", (workflow_id,)
        )
        artifacts = [
            ArtifactEntry(path=r["path"], task_id=r["task_id"])
            for r in await cursor.fetchall()
        ]

        cursor = await self._conn.execute(
            "SELECT * FROM history WHERE workflow_id = ? ORDER BY seq", (workflow_id,)
        )
        history = [self._row_to_history(r) for r in await cursor.fetchall()]

        cursor = await self._conn.execute(
            "SELECT question FROM open_issues WHERE workflow_id = ? ORDER BY id",
            (workflow_id,),
        )
        open_issues = [r["question"] for r in await cursor.fetchall()]

        return {
            "version": wf["version"] if wf else 0,
            "facts": facts,
            "artifacts": artifacts,
            "history": history,
            "open_issues": open_issues,
        }

    # ---------------------------------------------------------------
    # Run Log
    # ---------------------------------------------------------------

    async def log_event(
        self, workflow_id: str, event: str, detail: dict | None = None
    ) -> None:
        await self._write(
            "INSERT INTO run_log (workflow_id, event, detail, created_at) VALUES (?,?,?,?)",
            (workflow_id, event, json.dumps(detail) if detail else None, now_iso()),
        )

    async def get_logs(self, workflow_id: str) -> list[dict]:
        cursor = await self._conn.execute(
            "SELECT * FROM run_log WHERE workflow_id = ? ORDER BY id",
            (workflow_id,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "event": r["event"],
                "detail": json.loads(r["detail"]) if r["detail"] else None,
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------

    @staticmethod
    def _row_to_workflow(row) -> dict:
        return {
            "id": row["id"],
            "objective": row["objective"],
            "category": row["category"] or "",
            "constraints": json.loads(row["constraints"]) if row["constraints"] else [],
            "state": row["state"],
            "current_mode": row["current_mode"] or "",
            "reason": row["reason"] or "",
            "error_kind": row["error_kind"] or "",
            "version": row["version"] or 0,
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _row_to_task(row) -> Task:
        ctx = json.loads(row["context"]) if row["context"] else {}
        return Task(
            id=row["id"],
            workflow_id=row["workflow_id"],
            target_mode=row["target_mode"],
            objective=row["objective"],
            instruction=row["instruction"] or "",
            context=TaskContext(
                category=ctx.get("category", ""),
                artifacts=ctx.get("artifacts", []),
                open_questions=ctx.get("open_questions", []),
                constraints=ctx.get("constraints", []),
                corrective_notes=ctx.get("corrective_notes", []),
            ),
            status=TaskStatus(row["status"]),
            attempt=row["attempt"],
            failure_reason=row["failure_reason"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_history(row) -> HistoryEntry:
        return HistoryEntry(
            seq=row["seq"],
            kind=HistoryKind(row["kind"]),
            task_id=row["task_id"] or "",
            mode=row["mode"] or "",
            summary=row["summary"] or "",
            error_kind=row["error_kind"] or "",
            detail=json.loads(row["detail"]) if row["detail"] else {},
            report=HandoffReport.from_dict(json.loads(row["report"])) if row["report"] else None,
        )
