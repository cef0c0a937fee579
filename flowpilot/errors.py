"""Exception hierarchy for flowpilot."""

from __future__ import annotations

from typing import Iterable


class FlowpilotError(Exception):
    """Base class for all flowpilot errors."""


class GraphValidationError(FlowpilotError):
    """Raised when a workflow graph is structurally invalid."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid workflow graph")


class UnknownNodeKindError(FlowpilotError):
    """Raised when a node kind is not present in the registry."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"Unknown node kind: {kind}")


class ExpressionError(FlowpilotError):
    """Raised when an expression cannot be parsed or evaluated."""

    def __init__(self, message: str, expression: str = "") -> None:
        super().__init__(message)
        self.expression = expression


class NodeConfigurationError(FlowpilotError):
    """Raised by a node when its configuration is missing or malformed."""


class InvalidJSONError(FlowpilotError):
    """Raised by ``json-parse`` when the input is not valid JSON."""


class AssertionFailedError(FlowpilotError):
    """Raised by ``assert`` when its condition evaluates falsy."""


class RunNotFoundError(FlowpilotError):
    """Raised when a run id does not resolve to a persisted run."""


class StaleContextError(FlowpilotError):
    """Raised when a context write loses an optimistic concurrency check."""

    def __init__(self, run_id: str, expected_version: int) -> None:
        self.run_id = run_id
        self.expected_version = expected_version
        super().__init__(
            f"Run {run_id} context changed concurrently (expected version {expected_version})"
        )


class ExecutionLimitExceeded(FlowpilotError):
    """Raised when a run exceeds its step or wall-clock budget."""


class CRMError(FlowpilotError):
    """Raised when a CRM record cannot be found or written."""
