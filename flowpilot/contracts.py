"""Core contracts for flowpilot: workflow graphs, trigger events and run context."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from .constants import (
    CHANNEL_MESSAGE_TRIGGER,
    CHANNEL_TRIGGER_TYPES,
    DEFAULT_HANDLE,
)
from .errors import GraphValidationError
from .expressions import sanitize_name


class GraphNode(BaseModel):
    """One node of a workflow graph."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    kind: str = Field(alias="type")
    config: Dict[str, Any] = Field(default_factory=dict)
    label: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _unwrap_react_flow(cls, data: Any) -> Any:
        # React Flow stores config under data.config and the label under data.label.
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = dict(data)
            inner = data.pop("data")
            data.setdefault("config", inner.get("config") or {})
            if inner.get("label"):
                data.setdefault("label", inner["label"])
        return data


class GraphEdge(BaseModel):
    """Directed edge ``(source, source_handle) -> target``."""

    model_config = ConfigDict(populate_by_name=True)

    source: str
    target: str
    source_handle: str = Field(default=DEFAULT_HANDLE, alias="sourceHandle")

    @model_validator(mode="before")
    @classmethod
    def _default_handle(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("sourceHandle", "") is None:
            data = {**data, "sourceHandle": DEFAULT_HANDLE}
        return data


class WorkflowGraph(BaseModel):
    """Immutable node/edge graph held by a workflow version."""

    nodes: List[GraphNode] = Field(default_factory=list)
    edges: List[GraphEdge] = Field(default_factory=list)

    _nodes_by_id: Dict[str, GraphNode] = PrivateAttr(default_factory=dict)
    _routes: Dict[tuple[str, str], str] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        errors: list[str] = []
        nodes: Dict[str, GraphNode] = {}
        for node in self.nodes:
            if node.id in nodes:
                errors.append(f"Duplicate node id: {node.id}")
            nodes[node.id] = node

        routes: Dict[tuple[str, str], str] = {}
        for edge in self.edges:
            if edge.source not in nodes:
                errors.append(f"Edge references non-existent source: {edge.source}")
            if edge.target not in nodes:
                errors.append(f"Edge references non-existent target: {edge.target}")
            key = (edge.source, edge.source_handle)
            if key in routes:
                errors.append(
                    f"Multiple edges leave {edge.source} on handle '{edge.source_handle}'"
                )
            routes[key] = edge.target

        if errors:
            raise GraphValidationError(errors)
        self._nodes_by_id = nodes
        self._routes = routes

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        return self._nodes_by_id.get(node_id)

    def next_node_id(self, node_id: str, handle: Optional[str]) -> Optional[str]:
        """Return the target of the edge leaving ``node_id`` on ``handle``."""
        if handle is None:
            return None
        return self._routes.get((node_id, handle))

    def entry_node(
        self, event_type: Optional[str], trigger_kinds: frozenset[str]
    ) -> Optional[GraphNode]:
        """Pick the trigger node a run starts from.

        The node whose kind equals ``event_type`` wins, then a generic
        channel-message trigger, then the first node of any trigger kind.
        """
        triggers = [node for node in self.nodes if node.kind in trigger_kinds]
        if event_type:
            for node in triggers:
                if node.kind == event_type:
                    return node
            if event_type.endswith("-message") or event_type in CHANNEL_TRIGGER_TYPES.values():
                for node in triggers:
                    if node.kind == CHANNEL_MESSAGE_TRIGGER:
                        return node
        return triggers[0] if triggers else None


class TriggerEvent(BaseModel):
    """A normalized inbound event ready for definition matching."""

    event_type: str
    tenant_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    source_event_id: str
    channel: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_channel_message(self) -> bool:
        return self.channel is not None

    def match_types(self) -> list[str]:
        """Trigger types a workflow version may list to receive this event."""
        types = [self.event_type]
        if self.is_channel_message and self.event_type != CHANNEL_MESSAGE_TRIGGER:
            types.append(CHANNEL_MESSAGE_TRIGGER)
        return types

    @property
    def target_definition_id(self) -> Optional[str]:
        value = self.payload.get("definition_id")
        return str(value) if value else None


def trigger_type_for_channel(channel: str) -> str:
    return CHANNEL_TRIGGER_TYPES.get(channel, f"{channel}-message")


@dataclass(frozen=True)
class RunContext:
    """Immutable snapshot of a run's context handed to one node invocation.

    ``data`` is a read-only view; nodes never mutate it. The executor
    produces the next snapshot with :meth:`merge` and persists it against
    ``version``.
    """

    run_id: str
    tenant_id: str
    data: Mapping[str, Any]
    version: int = 0
    node_id: Optional[str] = None
    event_type: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.data, MappingProxyType):
            object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    @property
    def trigger(self) -> Mapping[str, Any]:
        value = self.data.get("trigger")
        return value if isinstance(value, Mapping) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def for_node(self, node_id: str) -> "RunContext":
        return replace(self, node_id=node_id)

    def merge(self, alias: str, values: Mapping[str, Any]) -> "RunContext":
        data = dict(self.data)
        data.pop(alias, None)
        data[alias] = dict(values)
        return replace(self, data=MappingProxyType(data))

    def with_entries(self, **entries: Any) -> "RunContext":
        data = dict(self.data)
        data.update(entries)
        return replace(self, data=MappingProxyType(data))

    def without(self, *keys: str) -> "RunContext":
        data = {k: v for k, v in self.data.items() if k not in keys}
        return replace(self, data=MappingProxyType(data))

    def with_version(self, version: int) -> "RunContext":
        return replace(self, version=version)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.data)


def context_alias(node_id: str) -> str:
    """Key under which a node's output is stored in run context."""
    return sanitize_name(node_id)
