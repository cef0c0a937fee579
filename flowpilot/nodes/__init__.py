"""Node kinds and the registry that maps kind names to them."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

import httpx

from ..crm import CRMWriter
from ..llm.provider import CompletionProvider
from .ai import AI_NODES, AINode
from .base import BaseNode, Branch, NodeLogger, Outcome, Output, Stop, Wait
from .logic import LOGIC_NODES, WaitNode
from .output import OUTPUT_NODES, CRMNode
from .registry import TRIGGER_FAMILY, NodeRegistry
from .triggers import TRIGGER_NODES
from .utility import UTILITY_NODES, HTTPRequestNode


def build_registry(
    completion_provider: Optional[CompletionProvider] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Callable[[], datetime]] = None,
    crm_writer: Optional[CRMWriter] = None,
) -> NodeRegistry:
    """Instantiate every built-in node kind into an immutable registry."""
    nodes: list[BaseNode] = []
    for node_cls in (*TRIGGER_NODES, *LOGIC_NODES, *AI_NODES, *UTILITY_NODES, *OUTPUT_NODES):
        if issubclass(node_cls, AINode):
            nodes.append(node_cls(completion_provider))
        elif node_cls is WaitNode:
            nodes.append(WaitNode(clock=clock))
        elif issubclass(node_cls, CRMNode):
            nodes.append(node_cls(crm_writer))
        elif node_cls is HTTPRequestNode:
            nodes.append(HTTPRequestNode(transport=http_transport))
        else:
            nodes.append(node_cls())
    return NodeRegistry(nodes)


__all__ = [
    "BaseNode",
    "Branch",
    "NodeLogger",
    "NodeRegistry",
    "Outcome",
    "Output",
    "Stop",
    "TRIGGER_FAMILY",
    "Wait",
    "build_registry",
]
