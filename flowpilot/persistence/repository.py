"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from .models import (
    ActiveWorkflow,
    NodeExecutionRecord,
    RunStatus,
    ScheduledResumption,
    ScheduledTrigger,
    WorkflowDefinition,
    WorkflowRun,
    WorkflowVersion,
)


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Every conditional update (run claim, context write, schedule advance,
    resumption claim) must be atomic in the backing store; these are what
    keep concurrent workers and scheduler instances from double-processing.
    """

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a workflow definition."""

    async def save_version(self, version: WorkflowVersion) -> None:
        """Insert a version; publishing it unpublishes its siblings."""

    async def get_version(self, version_id: str) -> WorkflowVersion | None:
        """Retrieve a version by id."""

    async def list_active_workflows(
        self,
        tenant_id: str,
        trigger_types: Sequence[str],
        definition_id: Optional[str] = None,
    ) -> list[ActiveWorkflow]:
        """Active definitions whose published version lists any of ``trigger_types``."""

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: WorkflowRun) -> bool:
        """Insert ``run``; return ``False`` if its ``dedup_key`` already exists."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve the run by id."""

    async def get_run_by_dedup_key(self, dedup_key: str) -> WorkflowRun | None:
        """Retrieve the run created for ``dedup_key``."""

    async def list_runs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> list[WorkflowRun]:
        """Return runs, newest first."""

    async def claim_run(self, run_id: str) -> WorkflowRun | None:
        """Move ``pending`` (or resumable ``waiting``) to ``running``.

        A waiting run is only claimable once its resumption was consumed.
        Returns the claimed run, or ``None`` when another worker owns it.
        """

    async def save_progress(
        self,
        run_id: str,
        context: dict[str, Any],
        cursor: Optional[str],
        expected_version: int,
    ) -> int:
        """Persist context and cursor if ``context_version`` still matches.

        Returns the new version; raises ``StaleContextError`` otherwise.
        """

    async def suspend_run(
        self,
        run_id: str,
        context: dict[str, Any],
        cursor: Optional[str],
        expected_version: int,
        resume_at: datetime,
    ) -> ScheduledResumption:
        """Persist progress, set the run ``waiting`` and record its resumption.

        All three writes commit together; a version mismatch raises
        ``StaleContextError`` and changes nothing.
        """

    async def finish_run(
        self, run_id: str, status: RunStatus, error: Optional[str] = None
    ) -> None:
        """Move the run to a terminal status."""

    async def requeue_stale_runs(self, cutoff: datetime) -> list[str]:
        """Reset runs stuck since ``cutoff`` and return ids to resubmit.

        Stale ``running`` runs go back to ``pending``. Stale ``pending`` runs
        and ``waiting`` runs whose every resumption was consumed before
        ``cutoff`` (claimed but never executed) are returned unchanged.
        """

    # ------------------------------------------------------------------
    # Node records
    async def append_node_record(self, record: NodeExecutionRecord) -> NodeExecutionRecord:
        """Append a node execution record and return it with its id."""

    async def list_node_records(self, run_id: str) -> list[NodeExecutionRecord]:
        """Return a run's node records in insertion order."""

    # ------------------------------------------------------------------
    # Scheduling
    async def claim_due_resumptions(
        self, now: datetime, limit: int = 100
    ) -> list[ScheduledResumption]:
        """Mark due resumptions of waiting runs consumed and return them."""

    async def save_scheduled_trigger(self, schedule: ScheduledTrigger) -> None:
        """Insert or replace a cron schedule."""

    async def list_due_schedules(
        self, now: datetime, limit: int = 100
    ) -> list[ScheduledTrigger]:
        """Enabled schedules whose ``next_run_at`` has passed."""

    async def advance_schedule(
        self, schedule_id: str, expected_next_run_at: datetime, next_run_at: datetime
    ) -> bool:
        """Move a schedule forward if nobody else already did."""

    async def close(self) -> None:
        """Release connections."""
