"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional, Sequence

import asyncpg

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

_SCHEMA = """
CREATE TABLE IF NOT EXISTS workflow_definitions (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS workflow_versions (
    id TEXT PRIMARY KEY,
    definition_id TEXT NOT NULL,
    version_number INTEGER NOT NULL,
    is_published BOOLEAN NOT NULL DEFAULT FALSE,
    graph JSONB NOT NULL,
    trigger_types JSONB NOT NULL,
    trigger_config JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS workflow_runs (
    id TEXT PRIMARY KEY,
    definition_id TEXT NOT NULL,
    version_id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    status TEXT NOT NULL,
    context JSONB NOT NULL,
    context_version INTEGER NOT NULL DEFAULT 0,
    trigger_payload JSONB NOT NULL,
    event_type TEXT,
    cursor TEXT,
    dedup_key TEXT UNIQUE,
    error TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    started_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ
);
CREATE TABLE IF NOT EXISTS node_execution_records (
    id BIGSERIAL PRIMARY KEY,
    run_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    node_kind TEXT NOT NULL,
    status TEXT NOT NULL,
    handle TEXT,
    input JSONB,
    output JSONB,
    error TEXT,
    started_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ
);
CREATE TABLE IF NOT EXISTS scheduled_resumptions (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    resume_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    consumed_at TIMESTAMPTZ
);
CREATE TABLE IF NOT EXISTS scheduled_triggers (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    definition_id TEXT NOT NULL,
    cron_expression TEXT NOT NULL,
    next_run_at TIMESTAMPTZ NOT NULL,
    execution_count INTEGER NOT NULL DEFAULT 0,
    enabled BOOLEAN NOT NULL DEFAULT TRUE
);
CREATE INDEX IF NOT EXISTS idx_records_run ON node_execution_records (run_id);
CREATE INDEX IF NOT EXISTS idx_resumptions_due ON scheduled_resumptions (resume_at)
    WHERE consumed_at IS NULL;
"""

_CLAIMABLE = """
    (status = 'pending' OR (
        status = 'waiting' AND NOT EXISTS (
            SELECT 1 FROM scheduled_resumptions r
            WHERE r.run_id = workflow_runs.id AND r.consumed_at IS NULL
        )
    ))
"""


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb",
        encoder=lambda value: json.dumps(value, default=str),
        decoder=json.loads,
        schema="pg_catalog",
    )


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=self._min_size,
                max_size=self._max_size,
                init=_init_connection,
            )
            async with self._pool.acquire() as conn:
                await conn.execute(_SCHEMA)
        return self._pool

    @staticmethod
    def _run_from_row(row: asyncpg.Record) -> WorkflowRun:
        return WorkflowRun(**{**dict(row), "status": RunStatus(row["status"])})

    @staticmethod
    def _version_from_row(row: asyncpg.Record) -> WorkflowVersion:
        return WorkflowVersion(
            id=row["id"],
            definition_id=row["definition_id"],
            version_number=row["version_number"],
            is_published=row["is_published"],
            graph=row["graph"],
            trigger_types=row["trigger_types"],
            trigger_config=row["trigger_config"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            INSERT INTO workflow_definitions (id, tenant_id, name, status, created_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (id) DO UPDATE
            SET tenant_id = EXCLUDED.tenant_id, name = EXCLUDED.name, status = EXCLUDED.status
            """,
            definition.id,
            definition.tenant_id,
            definition.name,
            definition.status,
            definition.created_at,
        )

    async def save_version(self, version: WorkflowVersion) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                if version.is_published:
                    await conn.execute(
                        "UPDATE workflow_versions SET is_published = FALSE WHERE definition_id = $1",
                        version.definition_id,
                    )
                await conn.execute(
                    """
                    INSERT INTO workflow_versions
                        (id, definition_id, version_number, is_published, graph,
                         trigger_types, trigger_config, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    ON CONFLICT (id) DO UPDATE SET is_published = EXCLUDED.is_published
                    """,
                    version.id,
                    version.definition_id,
                    version.version_number,
                    version.is_published,
                    version.graph.model_dump(by_alias=True),
                    version.trigger_types,
                    version.trigger_config,
                    version.created_at,
                )

    async def get_version(self, version_id: str) -> WorkflowVersion | None:
        pool = await self._get_pool()
        row = await pool.fetchrow("SELECT * FROM workflow_versions WHERE id = $1", version_id)
        return self._version_from_row(row) if row else None

    async def list_active_workflows(
        self,
        tenant_id: str,
        trigger_types: Sequence[str],
        definition_id: Optional[str] = None,
    ) -> list[ActiveWorkflow]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            SELECT d.id AS d_id, d.tenant_id AS d_tenant_id, d.name AS d_name,
                   d.status AS d_status, d.created_at AS d_created_at, v.*
            FROM workflow_definitions d
            JOIN workflow_versions v ON v.definition_id = d.id AND v.is_published
            WHERE d.tenant_id = $1
              AND d.status = 'active'
              AND v.trigger_types ?| $2::text[]
              AND ($3::text IS NULL OR d.id = $3)
            ORDER BY d.created_at
            """,
            tenant_id,
            list(trigger_types),
            definition_id,
        )
        return [
            ActiveWorkflow(
                definition=WorkflowDefinition(
                    id=r["d_id"],
                    tenant_id=r["d_tenant_id"],
                    name=r["d_name"],
                    status=r["d_status"],
                    created_at=r["d_created_at"],
                ),
                version=self._version_from_row(r),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: WorkflowRun) -> bool:
        pool = await self._get_pool()
        inserted = await pool.fetchval(
            """
            INSERT INTO workflow_runs
                (id, definition_id, version_id, tenant_id, status, context, context_version,
                 trigger_payload, event_type, cursor, dedup_key, error,
                 created_at, started_at, updated_at, completed_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
            ON CONFLICT (dedup_key) DO NOTHING
            RETURNING id
            """,
            run.id,
            run.definition_id,
            run.version_id,
            run.tenant_id,
            run.status.value,
            run.context,
            run.context_version,
            run.trigger_payload,
            run.event_type,
            run.cursor,
            run.dedup_key,
            run.error,
            run.created_at,
            run.started_at,
            run.updated_at,
            run.completed_at,
        )
        return inserted is not None

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        pool = await self._get_pool()
        row = await pool.fetchrow("SELECT * FROM workflow_runs WHERE id = $1", run_id)
        return self._run_from_row(row) if row else None

    async def get_run_by_dedup_key(self, dedup_key: str) -> WorkflowRun | None:
        pool = await self._get_pool()
        row = await pool.fetchrow("SELECT * FROM workflow_runs WHERE dedup_key = $1", dedup_key)
        return self._run_from_row(row) if row else None

    async def list_runs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> list[WorkflowRun]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            SELECT * FROM workflow_runs
            WHERE ($1::text IS NULL OR tenant_id = $1)
              AND ($2::text IS NULL OR status = $2)
            ORDER BY created_at DESC
            LIMIT $3
            """,
            tenant_id,
            RunStatus(status).value if status else None,
            limit,
        )
        return [self._run_from_row(r) for r in rows]

    async def claim_run(self, run_id: str) -> WorkflowRun | None:
        pool = await self._get_pool()
        now = utcnow()
        row = await pool.fetchrow(
            f"""
            UPDATE workflow_runs
            SET status = 'running', started_at = COALESCE(started_at, $2), updated_at = $2
            WHERE id = $1 AND {_CLAIMABLE}
            RETURNING *
            """,
            run_id,
            now,
        )
        return self._run_from_row(row) if row else None

    async def save_progress(
        self,
        run_id: str,
        context: dict[str, Any],
        cursor: Optional[str],
        expected_version: int,
    ) -> int:
        pool = await self._get_pool()
        version = await pool.fetchval(
            """
            UPDATE workflow_runs
            SET context = $2, cursor = $3, context_version = context_version + 1, updated_at = $4
            WHERE id = $1 AND context_version = $5
            RETURNING context_version
            """,
            run_id,
            context,
            cursor,
            utcnow(),
            expected_version,
        )
        if version is not None:
            return version
        exists = await pool.fetchval("SELECT 1 FROM workflow_runs WHERE id = $1", run_id)
        if exists is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        raise StaleContextError(run_id, expected_version)

    async def suspend_run(
        self,
        run_id: str,
        context: dict[str, Any],
        cursor: Optional[str],
        expected_version: int,
        resume_at: datetime,
    ) -> ScheduledResumption:
        resumption = ScheduledResumption(run_id=run_id, resume_at=resume_at)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                updated = await conn.fetchval(
                    """
                    UPDATE workflow_runs
                    SET context = $2, cursor = $3, context_version = context_version + 1,
                        status = 'waiting', updated_at = $4
                    WHERE id = $1 AND context_version = $5
                    RETURNING id
                    """,
                    run_id,
                    context,
                    cursor,
                    utcnow(),
                    expected_version,
                )
                if updated is None:
                    exists = await conn.fetchval("SELECT 1 FROM workflow_runs WHERE id = $1", run_id)
                    if exists is None:
                        raise RunNotFoundError(f"Run {run_id} not found")
                    raise StaleContextError(run_id, expected_version)
                await conn.execute(
                    "INSERT INTO scheduled_resumptions (id, run_id, resume_at, created_at) VALUES ($1, $2, $3, $4)",
                    resumption.id,
                    run_id,
                    resume_at,
                    resumption.created_at,
                )
        return resumption

    async def finish_run(
        self, run_id: str, status: RunStatus, error: Optional[str] = None
    ) -> None:
        pool = await self._get_pool()
        now = utcnow()
        await pool.execute(
            "UPDATE workflow_runs SET status = $2, error = $3, completed_at = $4, updated_at = $4 WHERE id = $1",
            run_id,
            RunStatus(status).value,
            error,
            now,
        )

    async def requeue_stale_runs(self, cutoff: datetime) -> list[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                pending = await conn.fetch(
                    "SELECT id FROM workflow_runs WHERE status = 'pending' AND updated_at < $1",
                    cutoff,
                )
                running = await conn.fetch(
                    """
                    UPDATE workflow_runs SET status = 'pending', updated_at = $2
                    WHERE status = 'running' AND updated_at < $1
                    RETURNING id
                    """,
                    cutoff,
                    utcnow(),
                )
                orphaned = await conn.fetch(
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
                      ) < $1
                    """,
                    cutoff,
                )
        return [r["id"] for r in (*pending, *running, *orphaned)]

    # ------------------------------------------------------------------
    # Node records
    async def append_node_record(self, record: NodeExecutionRecord) -> NodeExecutionRecord:
        pool = await self._get_pool()
        record_id = await pool.fetchval(
            """
            INSERT INTO node_execution_records
                (run_id, node_id, node_kind, status, handle, input, output, error, started_at, completed_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING id
            """,
            record.run_id,
            record.node_id,
            record.node_kind,
            record.status,
            record.handle,
            record.input,
            record.output,
            record.error,
            record.started_at,
            record.completed_at,
        )
        return record.model_copy(update={"id": record_id})

    async def list_node_records(self, run_id: str) -> list[NodeExecutionRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "SELECT * FROM node_execution_records WHERE run_id = $1 ORDER BY id", run_id
        )
        return [NodeExecutionRecord(**{**dict(r), "input": r["input"] or {}}) for r in rows]

    # ------------------------------------------------------------------
    # Scheduling
    async def claim_due_resumptions(
        self, now: datetime, limit: int = 100
    ) -> list[ScheduledResumption]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            UPDATE scheduled_resumptions SET consumed_at = $1
            WHERE id IN (
                SELECT r.id FROM scheduled_resumptions r
                JOIN workflow_runs w ON w.id = r.run_id
                WHERE r.consumed_at IS NULL AND r.resume_at <= $1 AND w.status = 'waiting'
                ORDER BY r.resume_at
                LIMIT $2
                FOR UPDATE OF r SKIP LOCKED
            )
            RETURNING *
            """,
            now,
            limit,
        )
        return [ScheduledResumption(**dict(r)) for r in rows]

    async def save_scheduled_trigger(self, schedule: ScheduledTrigger) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            INSERT INTO scheduled_triggers
                (id, tenant_id, definition_id, cron_expression, next_run_at, execution_count, enabled)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (id) DO UPDATE
            SET cron_expression = EXCLUDED.cron_expression,
                next_run_at = EXCLUDED.next_run_at,
                enabled = EXCLUDED.enabled
            """,
            schedule.id,
            schedule.tenant_id,
            schedule.definition_id,
            schedule.cron_expression,
            schedule.next_run_at,
            schedule.execution_count,
            schedule.enabled,
        )

    async def list_due_schedules(
        self, now: datetime, limit: int = 100
    ) -> list[ScheduledTrigger]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            SELECT * FROM scheduled_triggers
            WHERE enabled AND next_run_at <= $1
            ORDER BY next_run_at
            LIMIT $2
            """,
            now,
            limit,
        )
        return [ScheduledTrigger(**dict(r)) for r in rows]

    async def advance_schedule(
        self, schedule_id: str, expected_next_run_at: datetime, next_run_at: datetime
    ) -> bool:
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            UPDATE scheduled_triggers
            SET next_run_at = $3, execution_count = execution_count + 1
            WHERE id = $1 AND next_run_at = $2
            RETURNING id
            """,
            schedule_id,
            expected_next_run_at,
            next_run_at,
        )
        return updated is not None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
