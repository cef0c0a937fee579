"""Logic nodes: branching, suspension, bounded iteration and termination."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from ..constants import LOOP_MAX_ITEMS, WAIT_UNITS
from ..contracts import RunContext, context_alias
from ..errors import ExpressionError, NodeConfigurationError
from ..expressions import evaluate, loose_equals
from .base import BaseNode, Branch, Stop, Wait

LOGIC_FAMILY = "logic"


class IfElseNode(BaseNode):
    """Evaluate ``condition`` and follow handle ``true`` or ``false``."""

    kind = "if-else"
    family = LOGIC_FAMILY
    expression_fields = ("condition",)

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Branch:
        condition = self.require(config, "condition", "If/Else node requires a condition")
        try:
            result = evaluate(condition, context.data)
        except ExpressionError as exc:
            logger.error(f"Condition evaluation failed: {exc}")
            raise
        branch = "true" if result else "false"
        logger.info(f"Condition evaluated to {branch}")
        return Branch(handle=branch, values={"branch": branch, "result": bool(result)})


class SwitchNode(BaseNode):
    """Route on the first case whose value loosely equals the evaluated variable."""

    kind = "switch"
    family = LOGIC_FAMILY
    expression_fields = ("variable", "value")

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Branch:
        expression = config.get("variable") or config.get("value")
        if not expression:
            raise NodeConfigurationError("Switch node requires a variable to match")
        include_default = config.get("include_default", config.get("includeDefault", True))

        try:
            value = evaluate(expression, context.data)
        except ExpressionError as exc:
            logger.error(f"Value evaluation failed: {exc}")
            raise

        for index, case in enumerate(config.get("cases") or []):
            if isinstance(case, dict):
                case_value = case.get("value")
                case_id = case.get("id") or f"case_{index}"
            else:
                case_value = case
                case_id = f"case_{index}"
            if loose_equals(case_value, value):
                logger.info(f"Switch matched case {case_id}")
                return Branch(
                    handle=case_id,
                    values={"matched_case": case_id, "matched_value": value},
                )

        if include_default:
            logger.info("Switch using default case")
            return Branch(
                handle="default", values={"matched_case": None, "matched_value": value}
            )

        logger.warning(f"Switch: no case matched {value!r} and no default")
        return Branch(handle=None, values={"matched_case": None, "matched_value": value})


class WaitNode(BaseNode):
    """Suspend the run for ``duration`` ``unit``s."""

    kind = "wait"
    family = LOGIC_FAMILY

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Wait:
        raw_duration = self.require(config, "duration", "Wait node requires duration and unit")
        unit = config.get("unit") or "minutes"
        try:
            duration = float(raw_duration)
        except (TypeError, ValueError):
            raise NodeConfigurationError(f"Invalid wait duration: {raw_duration!r}") from None
        if duration <= 0:
            raise NodeConfigurationError("Wait duration must be positive")

        seconds = duration * WAIT_UNITS.get(unit, WAIT_UNITS["minutes"])
        resume_at = self._clock() + timedelta(seconds=seconds)
        logger.info(f"Scheduling resume at {resume_at.isoformat()}")
        return Wait(
            resume_at=resume_at,
            values={
                "resume_at": resume_at.isoformat(),
                "duration": raw_duration,
                "unit": unit,
            },
        )


class LoopNode(BaseNode):
    """Iterate over an array one item per visit.

    Iteration state is kept in the node's own context entry, so it survives
    suspension. Handle ``item`` carries the current element; ``done`` fires
    after the last element and resets the state for the next entry.
    """

    kind = "loop"
    family = LOGIC_FAMILY
    expression_fields = ("array",)

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Branch:
        state = context.get(context_alias(context.node_id or ""))
        if isinstance(state, dict) and not state.get("done") and "index" in state:
            items = list(state.get("items") or [])
            index = int(state["index"]) + 1
            if index < len(items):
                return self._item(items, index)
            logger.info(f"Loop finished after {len(items)} item(s)")
            return Branch(
                handle="done",
                values={"items": [], "index": -1, "done": True, "count": len(items)},
            )

        items = self._evaluate_items(config, context, logger)
        if not items:
            return Branch(
                handle="done", values={"items": [], "index": -1, "done": True, "count": 0}
            )
        return self._item(items, 0)

    def _evaluate_items(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> list[Any]:
        source = config.get("array")
        if source is None or source == "":
            raise NodeConfigurationError("Loop node requires an array")
        items = evaluate(source, context.data) if isinstance(source, str) else source
        if not isinstance(items, (list, tuple)):
            raise NodeConfigurationError("Loop value must be an array")

        limit = min(int(config.get("max_iterations") or LOOP_MAX_ITEMS), LOOP_MAX_ITEMS)
        if len(items) > limit:
            logger.warning(f"Array truncated to {limit} items (was {len(items)})")
        return list(items[:limit])

    @staticmethod
    def _item(items: list[Any], index: int) -> Branch:
        return Branch(
            handle="item",
            values={
                "items": items,
                "index": index,
                "current_item": items[index],
                "is_last": index == len(items) - 1,
                "remaining": len(items) - index - 1,
                "done": False,
            },
        )


class StopNode(BaseNode):
    kind = "stop"
    family = LOGIC_FAMILY

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Stop:
        reason = config.get("reason") or None
        logger.info(f"Workflow stopped: {reason or 'No reason provided'}")
        return Stop(reason=reason, values={"reason": reason})


LOGIC_NODES = (IfElseNode, SwitchNode, WaitNode, LoopNode, StopNode)
