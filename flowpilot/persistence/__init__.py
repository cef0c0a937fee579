"""Persistence layer for flowpilot workflows and runs."""

from __future__ import annotations

from typing import Optional

from ..config import FlowpilotConfig, load_config
from .inmemory import InMemoryWorkflowRepository
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
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

_repository_instance: WorkflowRepository | None = None


def _open(database_url: Optional[str]) -> WorkflowRepository:
    if not database_url:
        return InMemoryWorkflowRepository()
    scheme, _, location = database_url.partition("://")
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(location)
    if scheme in ("postgres", "postgresql"):
        from .postgres import PostgresWorkflowRepository

        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[FlowpilotConfig] = None
) -> WorkflowRepository:
    """Return the process-wide workflow repository.

    ``database_url`` wins over ``config.database_url``; without either the
    loaded configuration (``FLOWPILOT_DATABASE_URL``/``DATABASE_URL`` included)
    decides, and no URL at all means an in-memory store. Calling with no
    arguments reuses the instance created last.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    _repository_instance = _open(database_url or (config or load_config()).database_url)
    return _repository_instance


__all__ = [
    "ActiveWorkflow",
    "InMemoryWorkflowRepository",
    "NodeExecutionRecord",
    "RunStatus",
    "SQLiteWorkflowRepository",
    "ScheduledResumption",
    "ScheduledTrigger",
    "WorkflowDefinition",
    "WorkflowRepository",
    "WorkflowRun",
    "WorkflowVersion",
    "get_repository",
]
