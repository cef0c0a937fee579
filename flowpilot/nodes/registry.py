"""Immutable lookup table of node kinds."""

from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Mapping

from ..contracts import WorkflowGraph
from ..errors import GraphValidationError, UnknownNodeKindError
from .base import BaseNode

TRIGGER_FAMILY = "trigger"


class NodeRegistry:
    """Read-only map of node kind -> node instance.

    Built once at process start; concurrent executor workers only read it.
    """

    def __init__(self, nodes: Iterable[BaseNode]) -> None:
        table: dict[str, BaseNode] = {}
        for node in nodes:
            if node.kind in table:
                raise ValueError(f"Node kind registered twice: {node.kind}")
            table[node.kind] = node
        self._nodes: Mapping[str, BaseNode] = MappingProxyType(table)
        self._trigger_kinds = frozenset(
            kind for kind, node in table.items() if node.family == TRIGGER_FAMILY
        )

    def get(self, kind: str) -> BaseNode:
        try:
            return self._nodes[kind]
        except KeyError:
            raise UnknownNodeKindError(kind) from None

    def __contains__(self, kind: object) -> bool:
        return kind in self._nodes

    def kinds(self) -> list[str]:
        return sorted(self._nodes)

    def by_family(self) -> dict[str, list[str]]:
        families: dict[str, list[str]] = {}
        for kind in self.kinds():
            families.setdefault(self._nodes[kind].family, []).append(kind)
        return families

    @property
    def trigger_kinds(self) -> frozenset[str]:
        return self._trigger_kinds

    def is_trigger(self, kind: str) -> bool:
        return kind in self._trigger_kinds

    def validate(self, graph: WorkflowGraph) -> None:
        """Reject graphs that reference unknown kinds or lack a trigger node."""
        errors = [
            f"Node {node.id} has unknown kind '{node.kind}'"
            for node in graph.nodes
            if node.kind not in self._nodes
        ]
        if not any(node.kind in self._trigger_kinds for node in graph.nodes):
            errors.append("Workflow must have a trigger node")
        if errors:
            raise GraphValidationError(errors)
