"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, TypeVar

from ..errors import RunNotFoundError, StaleContextError
from .models import (
    ActiveWorkflow,
    NodeExecutionRecord,
    RunStatus,
    ScheduledResumption,
    ScheduledTrigger,
    WorkflowDefinition,
    WorkflowRun,
    WorkflowVersion,
    utcnow,
)
from .repository import WorkflowRepository

T = TypeVar("T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflow_definitions (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_versions (
        id TEXT PRIMARY KEY,
        definition_id TEXT NOT NULL,
        version_number INTEGER NOT NULL,
        is_published INTEGER NOT NULL DEFAULT 0,
        graph TEXT NOT NULL,
        trigger_types TEXT NOT NULL,
        trigger_config TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_runs (
        id TEXT PRIMARY KEY,
        definition_id TEXT NOT NULL,
        version_id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        status TEXT NOT NULL,
        context TEXT NOT NULL,
        context_version INTEGER NOT NULL DEFAULT 0,
        trigger_payload TEXT NOT NULL,
        event_type TEXT,
        cursor TEXT,
        dedup_key TEXT UNIQUE,
        error TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        updated_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS node_execution_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        node_kind TEXT NOT NULL,
        status TEXT NOT NULL,
        handle TEXT,
        input TEXT,
        output TEXT,
        error TEXT,
        started_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scheduled_resumptions (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL,
        resume_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        consumed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scheduled_triggers (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        definition_id TEXT NOT NULL,
        cron_expression TEXT NOT NULL,
        next_run_at TEXT NOT NULL,
        execution_count INTEGER NOT NULL DEFAULT 0,
        enabled INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_records_run ON node_execution_records (run_id)",
    "CREATE INDEX IF NOT EXISTS idx_resumptions_due ON scheduled_resumptions (consumed_at, resume_at)",
)

_CLAIMABLE = """
    (status = 'pending' OR (
        status = 'waiting' AND NOT EXISTS (
            SELECT 1 FROM scheduled_resumptions r
            WHERE r.run_id = workflow_runs.id AND r.consumed_at IS NULL
        )
    ))
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Serialize timestamps as fixed-width UTC strings so they sort lexically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _json(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    One connection is shared across worker threads; a lock serializes each
    operation so multi-statement updates are atomic.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in _SCHEMA:
            cur.execute(statement)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        def _locked() -> T:
            with self._lock:
                try:
                    result = fn(self._conn)
                except Exception:
                    self._conn.rollback()
                    raise
                self._conn.commit()
                return result

        return await asyncio.to_thread(_locked)

    @staticmethod
    def _run_from_row(row: sqlite3.Row) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            definition_id=row["definition_id"],
            version_id=row["version_id"],
            tenant_id=row["tenant_id"],
            status=RunStatus(row["status"]),
            context=_json(row["context"]) or {},
            context_version=row["context_version"],
            trigger_payload=_json(row["trigger_payload"]) or {},
            event_type=row["event_type"],
            cursor=row["cursor"],
            dedup_key=row["dedup_key"],
            error=row["error"],
            created_at=_dt(row["created_at"]),
            started_at=_dt(row["started_at"]),
            updated_at=_dt(row["updated_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    @staticmethod
    def _version_from_row(row: sqlite3.Row) -> WorkflowVersion:
        return WorkflowVersion(
            id=row["id"],
            definition_id=row["definition_id"],
            version_number=row["version_number"],
            is_published=bool(row["is_published"]),
            graph=_json(row["graph"]) or {},
            trigger_types=_json(row["trigger_types"]) or [],
            trigger_config=_json(row["trigger_config"]) or {},
            created_at=_dt(row["created_at"]),
        )

    @staticmethod
    def _resumption_from_row(row: sqlite3.Row) -> ScheduledResumption:
        return ScheduledResumption(
            id=row["id"],
            run_id=row["run_id"],
            resume_at=_dt(row["resume_at"]),
            created_at=_dt(row["created_at"]),
            consumed_at=_dt(row["consumed_at"]),
        )

    @staticmethod
    def _schedule_from_row(row: sqlite3.Row) -> ScheduledTrigger:
        return ScheduledTrigger(
            id=row["id"],
            tenant_id=row["tenant_id"],
            definition_id=row["definition_id"],
            cron_expression=row["cron_expression"],
            next_run_at=_dt(row["next_run_at"]),
            execution_count=row["execution_count"],
            enabled=bool(row["enabled"]),
        )

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await self._run(
            lambda conn: conn.execute(
                "INSERT OR REPLACE INTO workflow_definitions (id, tenant_id, name, status, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    definition.id,
                    definition.tenant_id,
                    definition.name,
                    definition.status,
                    _ts(definition.created_at),
                ),
            )
        )

    async def save_version(self, version: WorkflowVersion) -> None:
        def _save(conn: sqlite3.Connection) -> None:
            if version.is_published:
                conn.execute(
                    "UPDATE workflow_versions SET is_published = 0 WHERE definition_id = ?",
                    (version.definition_id,),
                )
            conn.execute(
                """
                INSERT OR REPLACE INTO workflow_versions
                    (id, definition_id, version_number, is_published, graph, trigger_types, trigger_config, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    version.id,
                    version.definition_id,
                    version.version_number,
                    int(version.is_published),
                    version.graph.model_dump_json(by_alias=True),
                    json.dumps(version.trigger_types),
                    json.dumps(version.trigger_config),
                    _ts(version.created_at),
                ),
            )

        await self._run(_save)

    async def get_version(self, version_id: str) -> WorkflowVersion | None:
        row = await self._run(
            lambda conn: conn.execute(
                "SELECT * FROM workflow_versions WHERE id = ?", (version_id,)
            ).fetchone()
        )
        return self._version_from_row(row) if row else None

    async def list_active_workflows(
        self,
        tenant_id: str,
        trigger_types: Sequence[str],
        definition_id: Optional[str] = None,
    ) -> list[ActiveWorkflow]:
        query = """
            SELECT d.id AS d_id, d.tenant_id AS d_tenant_id, d.name AS d_name,
                   d.status AS d_status, d.created_at AS d_created_at, v.*
            FROM workflow_definitions d
            JOIN workflow_versions v ON v.definition_id = d.id AND v.is_published = 1
            WHERE d.tenant_id = ? AND d.status = 'active'
        """
        params: list[Any] = [tenant_id]
        if definition_id:
            query += " AND d.id = ?"
            params.append(definition_id)
        query += " ORDER BY d.created_at"
        rows = await self._run(lambda conn: conn.execute(query, params).fetchall())

        wanted = set(trigger_types)
        matches: list[ActiveWorkflow] = []
        for row in rows:
            version = self._version_from_row(row)
            if not wanted.intersection(version.trigger_types):
                continue
            definition = WorkflowDefinition(
                id=row["d_id"],
                tenant_id=row["d_tenant_id"],
                name=row["d_name"],
                status=row["d_status"],
                created_at=_dt(row["d_created_at"]),
            )
            matches.append(ActiveWorkflow(definition=definition, version=version))
        return matches

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: WorkflowRun) -> bool:
        cur = await self._run(
            lambda conn: conn.execute(
                """
                INSERT INTO workflow_runs
                    (id, definition_id, version_id, tenant_id, status, context, context_version,
                     trigger_payload, event_type, cursor, dedup_key, error,
                     created_at, started_at, updated_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (dedup_key) DO NOTHING
                """,
                (
                    run.id,
                    run.definition_id,
                    run.version_id,
                    run.tenant_id,
                    run.status.value,
                    json.dumps(run.context),
                    run.context_version,
                    json.dumps(run.trigger_payload),
                    run.event_type,
                    run.cursor,
                    run.dedup_key,
                    run.error,
                    _ts(run.created_at),
                    _ts(run.started_at),
                    _ts(run.updated_at),
                    _ts(run.completed_at),
                ),
            )
        )
        return cur.rowcount == 1

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await self._run(
            lambda conn: conn.execute(
                "SELECT * FROM workflow_runs WHERE id = ?", (run_id,)
            ).fetchone()
        )
        return self._run_from_row(row) if row else None

    async def get_run_by_dedup_key(self, dedup_key: str) -> WorkflowRun | None:
        row = await self._run(
            lambda conn: conn.execute(
                "SELECT * FROM workflow_runs WHERE dedup_key = ?", (dedup_key,)
            ).fetchone()
        )
        return self._run_from_row(row) if row else None

    async def list_runs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> list[WorkflowRun]:
        query = "SELECT * FROM workflow_runs WHERE 1 = 1"
        params: list[Any] = []
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if status is not None:
            query += " AND status = ?"
            params.append(RunStatus(status).value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        rows = await self._run(lambda conn: conn.execute(query, params).fetchall())
        return [self._run_from_row(r) for r in rows]

    async def claim_run(self, run_id: str) -> WorkflowRun | None:
        def _claim(conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
            now = _ts(utcnow())
            cur = conn.execute(
                f"""
                UPDATE workflow_runs
                SET status = 'running', started_at = COALESCE(started_at, ?), updated_at = ?
                WHERE id = ? AND {_CLAIMABLE}
                """,
                (now, now, run_id),
            )
            if cur.rowcount != 1:
                return None
            return conn.execute("SELECT * FROM workflow_runs WHERE id = ?", (run_id,)).fetchone()

        row = await self._run(_claim)
        return self._run_from_row(row) if row else None

    async def save_progress(
        self,
        run_id: str,
        context: dict[str, Any],
        cursor: Optional[str],
        expected_version: int,
    ) -> int:
        def _save(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                """
                UPDATE workflow_runs
                SET context = ?, cursor = ?, context_version = context_version + 1, updated_at = ?
                WHERE id = ? AND context_version = ?
                """,
                (json.dumps(context), cursor, _ts(utcnow()), run_id, expected_version),
            )
            if cur.rowcount == 1:
                return expected_version + 1
            exists = conn.execute("SELECT 1 FROM workflow_runs WHERE id = ?", (run_id,)).fetchone()
            if exists is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            raise StaleContextError(run_id, expected_version)

        return await self._run(_save)

    async def suspend_run(
        self,
        run_id: str,
        context: dict[str, Any],
        cursor: Optional[str],
        expected_version: int,
        resume_at: datetime,
    ) -> ScheduledResumption:
        resumption = ScheduledResumption(run_id=run_id, resume_at=resume_at)

        def _suspend(conn: sqlite3.Connection) -> None:
            cur = conn.execute(
                """
                UPDATE workflow_runs
                SET context = ?, cursor = ?, context_version = context_version + 1,
                    status = 'waiting', updated_at = ?
                WHERE id = ? AND context_version = ?
                """,
                (json.dumps(context), cursor, _ts(utcnow()), run_id, expected_version),
            )
            if cur.rowcount != 1:
                exists = conn.execute("SELECT 1 FROM workflow_runs WHERE id = ?", (run_id,)).fetchone()
                if exists is None:
                    raise RunNotFoundError(f"Run {run_id} not found")
                raise StaleContextError(run_id, expected_version)
            conn.execute(
                "INSERT INTO scheduled_resumptions (id, run_id, resume_at, created_at) VALUES (?, ?, ?, ?)",
                (resumption.id, run_id, _ts(resume_at), _ts(resumption.created_at)),
            )

        await self._run(_suspend)
        return resumption

    async def finish_run(
        self, run_id: str, status: RunStatus, error: Optional[str] = None
    ) -> None:
        now = _ts(utcnow())
        await self._run(
            lambda conn: conn.execute(
                "UPDATE workflow_runs SET status = ?, error = ?, completed_at = ?, updated_at = ? WHERE id = ?",
                (RunStatus(status).value, error, now, now, run_id),
            )
        )

    async def requeue_stale_runs(self, cutoff: datetime) -> list[str]:
        def _requeue(conn: sqlite3.Connection) -> list[str]:
            stale = conn.execute(
                "SELECT id, status FROM workflow_runs WHERE status IN ('pending', 'running') AND updated_at < ?",
                (_ts(cutoff),),
            ).fetchall()
            running = [r["id"] for r in stale if r["status"] == "running"]
            if running:
                placeholders = ", ".join("?" for _ in running)
                conn.execute(
                    f"UPDATE workflow_runs SET status = 'pending', updated_at = ? WHERE status = 'running' AND id IN ({placeholders})",
                    (_ts(utcnow()), *running),
                )
            orphaned = conn.execute(
                """
                SELECT w.id FROM workflow_runs w
                WHERE w.status = 'waiting'
                  AND NOT EXISTS (
                      SELECT 1 FROM scheduled_resumptions r
                      WHERE r.run_id = w.id AND r.consumed_at IS NULL
                  )
                  AND COALESCE(
                      (SELECT MAX(r.consumed_at) FROM scheduled_resumptions r WHERE r.run_id = w.id),
                      w.updated_at
                  ) < ?
                """,
                (_ts(cutoff),),
            ).fetchall()
            return [r["id"] for r in stale] + [r["id"] for r in orphaned]

        return await self._run(_requeue)

    # ------------------------------------------------------------------
    # Node records
    async def append_node_record(self, record: NodeExecutionRecord) -> NodeExecutionRecord:
        cur = await self._run(
            lambda conn: conn.execute(
                """
                INSERT INTO node_execution_records
                    (run_id, node_id, node_kind, status, handle, input, output, error, started_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.run_id,
                    record.node_id,
                    record.node_kind,
                    record.status,
                    record.handle,
                    json.dumps(record.input, default=str),
                    json.dumps(record.output, default=str) if record.output is not None else None,
                    record.error,
                    _ts(record.started_at),
                    _ts(record.completed_at),
                ),
            )
        )
        return record.model_copy(update={"id": cur.lastrowid})

    async def list_node_records(self, run_id: str) -> list[NodeExecutionRecord]:
        rows = await self._run(
            lambda conn: conn.execute(
                "SELECT * FROM node_execution_records WHERE run_id = ? ORDER BY id", (run_id,)
            ).fetchall()
        )
        return [
            NodeExecutionRecord(
                id=r["id"],
                run_id=r["run_id"],
                node_id=r["node_id"],
                node_kind=r["node_kind"],
                status=r["status"],
                handle=r["handle"],
                input=_json(r["input"]) or {},
                output=_json(r["output"]),
                error=r["error"],
                started_at=_dt(r["started_at"]),
                completed_at=_dt(r["completed_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Scheduling
    async def claim_due_resumptions(
        self, now: datetime, limit: int = 100
    ) -> list[ScheduledResumption]:
        def _claim(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            rows = conn.execute(
                """
                SELECT r.* FROM scheduled_resumptions r
                JOIN workflow_runs w ON w.id = r.run_id
                WHERE r.consumed_at IS NULL AND r.resume_at <= ? AND w.status = 'waiting'
                ORDER BY r.resume_at
                LIMIT ?
                """,
                (_ts(now), limit),
            ).fetchall()
            if rows:
                placeholders = ", ".join("?" for _ in rows)
                conn.execute(
                    f"UPDATE scheduled_resumptions SET consumed_at = ? WHERE id IN ({placeholders})",
                    (_ts(now), *(r["id"] for r in rows)),
                )
            return rows

        rows = await self._run(_claim)
        return [
            self._resumption_from_row(r).model_copy(update={"consumed_at": now}) for r in rows
        ]

    async def save_scheduled_trigger(self, schedule: ScheduledTrigger) -> None:
        await self._run(
            lambda conn: conn.execute(
                """
                INSERT OR REPLACE INTO scheduled_triggers
                    (id, tenant_id, definition_id, cron_expression, next_run_at, execution_count, enabled)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    schedule.id,
                    schedule.tenant_id,
                    schedule.definition_id,
                    schedule.cron_expression,
                    _ts(schedule.next_run_at),
                    schedule.execution_count,
                    int(schedule.enabled),
                ),
            )
        )

    async def list_due_schedules(
        self, now: datetime, limit: int = 100
    ) -> list[ScheduledTrigger]:
        rows = await self._run(
            lambda conn: conn.execute(
                "SELECT * FROM scheduled_triggers WHERE enabled = 1 AND next_run_at <= ? ORDER BY next_run_at LIMIT ?",
                (_ts(now), limit),
            ).fetchall()
        )
        return [self._schedule_from_row(r) for r in rows]

    async def advance_schedule(
        self, schedule_id: str, expected_next_run_at: datetime, next_run_at: datetime
    ) -> bool:
        cur = await self._run(
            lambda conn: conn.execute(
                """
                UPDATE scheduled_triggers
                SET next_run_at = ?, execution_count = execution_count + 1
                WHERE id = ? AND next_run_at = ?
                """,
                (_ts(next_run_at), schedule_id, _ts(expected_next_run_at)),
            )
        )
        return cur.rowcount == 1

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)
