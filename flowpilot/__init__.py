"""flowpilot: event-driven workflow automation for CRM tenants."""

from .contracts import RunContext, TriggerEvent, WorkflowGraph
from .dispatch import TriggerEmitter
from .execute import RunExecutor
from .ingest import TriggerIngestor
from .nodes import build_registry
from .persistence import get_repository
from .pool import ExecutorPool
from .scheduler import Scheduler
from .transports import get_event_log

__version__ = "0.1.0"
__all__ = [
    "ExecutorPool",
    "RunContext",
    "RunExecutor",
    "Scheduler",
    "TriggerEmitter",
    "TriggerEvent",
    "TriggerIngestor",
    "WorkflowGraph",
    "build_registry",
    "get_event_log",
    "get_repository",
]
