"""Data models for persisted workflow state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ..contracts import WorkflowGraph


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.STOPPED)


CLAIMABLE_STATUSES = (RunStatus.PENDING, RunStatus.WAITING)


class WorkflowDefinition(BaseModel):
    """Tenant-owned workflow; only ``active`` definitions are matched."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str = ""
    status: str = "active"
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowVersion(BaseModel):
    """Immutable graph plus trigger metadata for one definition version."""

    id: str = Field(default_factory=new_id)
    definition_id: str
    version_number: int = 1
    is_published: bool = False
    graph: WorkflowGraph = Field(default_factory=WorkflowGraph)
    trigger_types: list[str] = Field(default_factory=list)
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class ActiveWorkflow(BaseModel):
    """An active definition joined with its published version."""

    definition: WorkflowDefinition
    version: WorkflowVersion


class WorkflowRun(BaseModel):
    """One execution of a workflow version."""

    id: str = Field(default_factory=new_id)
    definition_id: str
    version_id: str
    tenant_id: str
    status: RunStatus = RunStatus.PENDING
    context: dict[str, Any] = Field(default_factory=dict)
    context_version: int = 0
    trigger_payload: dict[str, Any] = Field(default_factory=dict)
    event_type: Optional[str] = None
    cursor: Optional[str] = None
    dedup_key: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class NodeExecutionRecord(BaseModel):
    """Record of an individual node attempt. Append-only."""

    id: Optional[int] = None
    run_id: str
    node_id: str
    node_kind: str
    status: str
    handle: Optional[str] = None
    input: dict[str, Any] = Field(default_factory=dict)
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class ScheduledResumption(BaseModel):
    id: str = Field(default_factory=new_id)
    run_id: str
    resume_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    consumed_at: Optional[datetime] = None


class ScheduledTrigger(BaseModel):
    """Cron schedule that fires a ``scheduled`` trigger event for a definition."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    definition_id: str
    cron_expression: str
    next_run_at: datetime
    execution_count: int = 0
    enabled: bool = True
