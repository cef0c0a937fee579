"""Shared fixtures for flowpilot tests."""

from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from flowpilot.execute import RunExecutor
from flowpilot.llm.provider import Completion, CompletionProvider
from flowpilot.nodes import build_registry
from flowpilot.persistence import (
    InMemoryWorkflowRepository,
    WorkflowDefinition,
    WorkflowVersion,
)
from flowpilot.pool import ExecutorPool
from flowpilot.transports import InMemoryEventLog


class ScriptedProvider(CompletionProvider):
    """Completion provider that replays canned replies and records prompts."""

    def __init__(self, *replies: str, tokens_used: int = 7):
        self.replies = list(replies)
        self.tokens_used = tokens_used
        self.calls: list[dict[str, Any]] = []

    async def complete(self, prompt, *, system=None, temperature=None, max_tokens=None):
        self.calls.append(
            {
                "prompt": prompt,
                "system": system,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        text = self.replies.pop(0) if self.replies else ""
        return Completion(text=text, tokens_used=self.tokens_used)


class FixedClock:
    """Settable clock for wait and schedule tests."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def provider_factory():
    return ScriptedProvider


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def event_log():
    return InMemoryEventLog()


@pytest.fixture
def registry(clock):
    return build_registry(completion_provider=ScriptedProvider(), clock=clock)


@pytest.fixture
def executor(repository, registry, event_log):
    return RunExecutor(repository, registry, outbound=event_log)


@pytest.fixture
def pool(repository, executor):
    return ExecutorPool(repository, executor, max_concurrent_runs=4)


@pytest.fixture
def publish(repository):
    """Store a graph as an active definition with a published version."""

    async def _publish(
        graph: dict,
        tenant_id: str = "tenant-1",
        trigger_types: Optional[list[str]] = None,
        trigger_config: Optional[dict] = None,
        name: str = "test workflow",
    ) -> WorkflowVersion:
        definition = WorkflowDefinition(tenant_id=tenant_id, name=name)
        await repository.save_definition(definition)
        version = WorkflowVersion(
            definition_id=definition.id,
            is_published=True,
            graph=graph,
            trigger_types=trigger_types
            or [node["type"] for node in graph["nodes"] if node["type"] in registry_trigger_kinds()],
            trigger_config=trigger_config or {},
        )
        await repository.save_version(version)
        return version

    return _publish


def registry_trigger_kinds() -> frozenset[str]:
    return build_registry().trigger_kinds


def linear_graph(*nodes: dict, trigger: str = "manual") -> dict:
    """Chain ``nodes`` after a trigger node along the default handle."""
    all_nodes = [{"id": "trigger_1", "type": trigger, "config": {}}, *nodes]
    edges = [
        {"source": a["id"], "target": b["id"]} for a, b in zip(all_nodes, all_nodes[1:])
    ]
    return {"nodes": all_nodes, "edges": edges}


@pytest.fixture
def chain():
    return linear_graph
