"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Sequence

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


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Each method completes without
    awaiting, which makes its conditional updates atomic on one event loop.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._versions: Dict[str, WorkflowVersion] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._dedup: Dict[str, str] = {}
        self._records: Dict[str, list[NodeExecutionRecord]] = {}
        self._resumptions: Dict[str, ScheduledResumption] = {}
        self._schedules: Dict[str, ScheduledTrigger] = {}
        self._record_id = 0

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition.model_copy(deep=True)

    async def save_version(self, version: WorkflowVersion) -> None:
        if version.is_published:
            for other in self._versions.values():
                if other.definition_id == version.definition_id:
                    other.is_published = False
        self._versions[version.id] = version.model_copy(deep=True)

    async def get_version(self, version_id: str) -> WorkflowVersion | None:
        version = self._versions.get(version_id)
        return version.model_copy(deep=True) if version else None

    async def list_active_workflows(
        self,
        tenant_id: str,
        trigger_types: Sequence[str],
        definition_id: Optional[str] = None,
    ) -> list[ActiveWorkflow]:
        wanted = set(trigger_types)
        matches: list[ActiveWorkflow] = []
        for version in self._versions.values():
            definition = self._definitions.get(version.definition_id)
            if (
                definition is None
                or definition.tenant_id != tenant_id
                or definition.status != "active"
                or not version.is_published
                or not wanted.intersection(version.trigger_types)
            ):
                continue
            if definition_id and definition.id != definition_id:
                continue
            matches.append(
                ActiveWorkflow(
                    definition=definition.model_copy(deep=True),
                    version=version.model_copy(deep=True),
                )
            )
        return sorted(matches, key=lambda m: m.definition.created_at)

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> bool:
        if run.dedup_key and run.dedup_key in self._dedup:
            return False
        self._runs[run.id] = run.model_copy(deep=True)
        if run.dedup_key:
            self._dedup[run.dedup_key] = run.id
        return True

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def get_run_by_dedup_key(self, dedup_key: str) -> WorkflowRun | None:
        run_id = self._dedup.get(dedup_key)
        return await self.get_run(run_id) if run_id else None

    async def list_runs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> list[WorkflowRun]:
        runs = [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if (tenant_id is None or run.tenant_id == tenant_id)
            and (status is None or run.status == status)
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:limit]

    async def claim_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        if run is None:
            return None
        if run.status == RunStatus.WAITING:
            if any(
                r.run_id == run_id and r.consumed_at is None
                for r in self._resumptions.values()
            ):
                return None
        elif run.status != RunStatus.PENDING:
            return None
        now = utcnow()
        run.status = RunStatus.RUNNING
        run.started_at = run.started_at or now
        run.updated_at = now
        return run.model_copy(deep=True)

    async def save_progress(
        self,
        run_id: str,
        context: dict[str, Any],
        cursor: Optional[str],
        expected_version: int,
    ) -> int:
        run = self._require(run_id)
        if run.context_version != expected_version:
            raise StaleContextError(run_id, expected_version)
        run.context = dict(context)
        run.cursor = cursor
        run.context_version += 1
        run.updated_at = utcnow()
        return run.context_version

    async def suspend_run(
        self,
        run_id: str,
        context: dict[str, Any],
        cursor: Optional[str],
        expected_version: int,
        resume_at: datetime,
    ) -> ScheduledResumption:
        run = self._require(run_id)
        if run.context_version != expected_version:
            raise StaleContextError(run_id, expected_version)
        run.context = dict(context)
        run.cursor = cursor
        run.context_version += 1
        run.status = RunStatus.WAITING
        run.updated_at = utcnow()
        resumption = ScheduledResumption(run_id=run_id, resume_at=resume_at)
        self._resumptions[resumption.id] = resumption
        return resumption.model_copy()

    async def finish_run(
        self, run_id: str, status: RunStatus, error: Optional[str] = None
    ) -> None:
        run = self._require(run_id)
        now = utcnow()
        run.status = status
        run.error = error
        run.completed_at = now
        run.updated_at = now

    async def requeue_stale_runs(self, cutoff: datetime) -> list[str]:
        requeued: list[str] = []
        now = utcnow()
        for run in self._runs.values():
            if run.status == RunStatus.WAITING:
                if self._resumption_lost(run, cutoff):
                    requeued.append(run.id)
                continue
            if run.updated_at >= cutoff:
                continue
            if run.status == RunStatus.RUNNING:
                run.status = RunStatus.PENDING
                run.updated_at = now
                requeued.append(run.id)
            elif run.status == RunStatus.PENDING:
                requeued.append(run.id)
        return requeued

    # ------------------------------------------------------------------
    async def append_node_record(self, record: NodeExecutionRecord) -> NodeExecutionRecord:
        self._record_id += 1
        stored = record.model_copy(deep=True, update={"id": self._record_id})
        self._records.setdefault(record.run_id, []).append(stored)
        return stored.model_copy(deep=True)

    async def list_node_records(self, run_id: str) -> list[NodeExecutionRecord]:
        return [r.model_copy(deep=True) for r in self._records.get(run_id, [])]

    # ------------------------------------------------------------------
    async def claim_due_resumptions(
        self, now: datetime, limit: int = 100
    ) -> list[ScheduledResumption]:
        due = sorted(
            (
                r
                for r in self._resumptions.values()
                if r.consumed_at is None
                and r.resume_at <= now
                and r.run_id in self._runs
                and self._runs[r.run_id].status == RunStatus.WAITING
            ),
            key=lambda r: r.resume_at,
        )[:limit]
        for resumption in due:
            resumption.consumed_at = now
        return [r.model_copy() for r in due]

    async def save_scheduled_trigger(self, schedule: ScheduledTrigger) -> None:
        self._schedules[schedule.id] = schedule.model_copy()

    async def list_due_schedules(
        self, now: datetime, limit: int = 100
    ) -> list[ScheduledTrigger]:
        due = [
            s.model_copy()
            for s in self._schedules.values()
            if s.enabled and s.next_run_at <= now
        ]
        due.sort(key=lambda s: s.next_run_at)
        return due[:limit]

    async def advance_schedule(
        self, schedule_id: str, expected_next_run_at: datetime, next_run_at: datetime
    ) -> bool:
        schedule = self._schedules.get(schedule_id)
        if schedule is None or schedule.next_run_at != expected_next_run_at:
            return False
        schedule.next_run_at = next_run_at
        schedule.execution_count += 1
        return True

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    def _require(self, run_id: str) -> WorkflowRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run

    def _resumption_lost(self, run: WorkflowRun, cutoff: datetime) -> bool:
        resumptions = [r for r in self._resumptions.values() if r.run_id == run.id]
        if any(r.consumed_at is None for r in resumptions):
            return False
        consumed = [r.consumed_at for r in resumptions if r.consumed_at is not None]
        return (max(consumed) if consumed else run.updated_at) < cutoff
