"""Tests for logic nodes."""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from flowpilot.contracts import RunContext
from flowpilot.errors import ExpressionError, NodeConfigurationError
from flowpilot.nodes.base import Branch, Stop, Wait
from flowpilot.nodes.logic import IfElseNode, LoopNode, StopNode, SwitchNode, WaitNode

logger = logging.LoggerAdapter(logging.getLogger("tests"), {})


def _context(data=None, node_id="node_1"):
    return RunContext(run_id="run-1", tenant_id="tenant-1", data=data or {}, node_id=node_id)


@pytest.mark.asyncio
async def test_if_else_routes_true_and_false():
    node = IfElseNode()
    context = _context({"trigger_1": {"sender_phone": "+1555"}})

    outcome = await node.execute({"condition": "sender_phone == '+1555'"}, context, logger)
    assert isinstance(outcome, Branch)
    assert outcome.handle == "true"
    assert outcome.values == {"branch": "true", "result": True}

    outcome = await node.execute({"condition": "sender_phone == '+1999'"}, context, logger)
    assert outcome.handle == "false"


@pytest.mark.asyncio
async def test_if_else_requires_condition_and_propagates_bad_expressions():
    node = IfElseNode()
    with pytest.raises(NodeConfigurationError):
        await node.execute({}, _context(), logger)
    with pytest.raises(ExpressionError):
        await node.execute({"condition": "nope =="}, _context(), logger)


@pytest.mark.asyncio
async def test_switch_matches_first_loosely_equal_case():
    node = SwitchNode()
    context = _context({"set_1": {"tier": 2}})
    config = {
        "variable": "tier",
        "cases": [{"id": "gold", "value": "1"}, {"id": "silver", "value": "2"}, {"value": 2}],
    }
    outcome = await node.execute(config, context, logger)
    assert outcome.handle == "silver"
    assert outcome.values["matched_value"] == 2


@pytest.mark.asyncio
async def test_switch_default_and_dead_end():
    node = SwitchNode()
    context = _context({"set_1": {"tier": 9}})
    config = {"variable": "tier", "cases": ["1", "2"]}

    outcome = await node.execute(config, context, logger)
    assert outcome.handle == "default"

    outcome = await node.execute({**config, "include_default": False}, context, logger)
    assert outcome.handle is None
    assert outcome.values["matched_case"] is None


@pytest.mark.asyncio
async def test_switch_positional_case_ids():
    node = SwitchNode()
    outcome = await node.execute(
        {"value": "'b'", "cases": ["a", "b"]}, _context(), logger
    )
    assert outcome.handle == "case_1"


@pytest.mark.asyncio
async def test_wait_computes_resume_time():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    node = WaitNode(clock=lambda: now)

    outcome = await node.execute({"duration": "2", "unit": "hours"}, _context(), logger)
    assert isinstance(outcome, Wait)
    assert outcome.resume_at == now + timedelta(hours=2)
    assert outcome.values["unit"] == "hours"

    outcome = await node.execute({"duration": 5}, _context(), logger)
    assert outcome.resume_at == now + timedelta(minutes=5)


@pytest.mark.asyncio
@pytest.mark.parametrize("duration", [None, "abc", 0, -1])
async def test_wait_rejects_bad_durations(duration):
    with pytest.raises(NodeConfigurationError):
        await WaitNode().execute({"duration": duration, "unit": "seconds"}, _context(), logger)


@pytest.mark.asyncio
async def test_loop_iterates_using_its_own_context_entry():
    node = LoopNode()
    data = {"trigger": {"items": ["a", "b"]}}
    config = {"array": "trigger.items"}

    first = await node.execute(config, _context(data, node_id="loop_1"), logger)
    assert first.handle == "item"
    assert first.values["current_item"] == "a"
    assert first.values["remaining"] == 1

    data["loop_1"] = first.values
    second = await node.execute(config, _context(data, node_id="loop_1"), logger)
    assert second.handle == "item"
    assert second.values["current_item"] == "b"
    assert second.values["is_last"] is True

    data["loop_1"] = second.values
    done = await node.execute(config, _context(data, node_id="loop_1"), logger)
    assert done.handle == "done"
    assert done.values["count"] == 2

    # A later entry into the loop starts over.
    data["loop_1"] = done.values
    again = await node.execute(config, _context(data, node_id="loop_1"), logger)
    assert again.values["current_item"] == "a"


@pytest.mark.asyncio
async def test_loop_caps_items_and_handles_empty_arrays():
    node = LoopNode()
    data = {"trigger": {"items": list(range(250)), "empty": []}}

    outcome = await node.execute({"array": "trigger.items"}, _context(data), logger)
    assert len(outcome.values["items"]) == 100

    outcome = await node.execute(
        {"array": "trigger.items", "max_iterations": 3}, _context(data), logger
    )
    assert outcome.values["items"] == [0, 1, 2]

    outcome = await node.execute({"array": "trigger.empty"}, _context(data), logger)
    assert outcome.handle == "done"


@pytest.mark.asyncio
async def test_loop_requires_an_array():
    node = LoopNode()
    with pytest.raises(NodeConfigurationError):
        await node.execute({"array": "'text'"}, _context(), logger)
    with pytest.raises(NodeConfigurationError):
        await node.execute({}, _context(), logger)


@pytest.mark.asyncio
async def test_stop_node():
    outcome = await StopNode().execute({"reason": "blocked"}, _context(), logger)
    assert isinstance(outcome, Stop)
    assert outcome.reason == "blocked"
    assert outcome.handle is None
