"""Execution contract shared by every node kind."""

from __future__ import annotations

import abc
import logging
from datetime import datetime
from typing import Any, ClassVar, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field

from ..constants import DEFAULT_HANDLE
from ..contracts import RunContext
from ..errors import NodeConfigurationError


class Output(BaseModel):
    """Plain output merged into context; the run follows the default handle."""

    kind: Literal["output"] = "output"
    values: Dict[str, Any] = Field(default_factory=dict)

    @property
    def handle(self) -> Optional[str]:
        return DEFAULT_HANDLE


class Branch(BaseModel):
    """Output plus an explicit handle; ``handle=None`` is a dead end."""

    kind: Literal["branch"] = "branch"
    handle: Optional[str]
    values: Dict[str, Any] = Field(default_factory=dict)


class Wait(BaseModel):
    """Suspend the run until ``resume_at``."""

    kind: Literal["wait"] = "wait"
    resume_at: datetime
    values: Dict[str, Any] = Field(default_factory=dict)

    @property
    def handle(self) -> Optional[str]:
        return DEFAULT_HANDLE


class Stop(BaseModel):
    """Terminate the run as ``stopped``."""

    kind: Literal["stop"] = "stop"
    reason: Optional[str] = None
    values: Dict[str, Any] = Field(default_factory=dict)

    @property
    def handle(self) -> Optional[str]:
        return None


Outcome = Union[Output, Branch, Wait, Stop]


class NodeLogger(logging.LoggerAdapter):
    """Logger adapter that tags messages with the run and node they belong to."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = self.extra or {}
        kwargs.setdefault("extra", {}).update(extra)
        return f"[run={extra.get('run_id')} node={extra.get('node_id')}] {msg}", kwargs


class BaseNode(metaclass=abc.ABCMeta):
    """A node kind. Instances are shared across runs and must stay stateless."""

    kind: ClassVar[str]
    family: ClassVar[str]
    # Config keys evaluated as expressions instead of ``{{…}}`` templates.
    expression_fields: ClassVar[tuple[str, ...]] = ()

    @abc.abstractmethod
    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Outcome:
        """Run the node against an immutable context snapshot."""
        raise NotImplementedError

    @staticmethod
    def require(config: Dict[str, Any], key: str, message: str) -> Any:
        value = config.get(key)
        if value is None or value == "" or value == []:
            raise NodeConfigurationError(message)
        return value
