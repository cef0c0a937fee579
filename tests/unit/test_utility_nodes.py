"""Tests for utility nodes."""

import json
import logging

import httpx
import pytest

from flowpilot.constants import LAST_ERROR_KEY
from flowpilot.contracts import RunContext
from flowpilot.errors import AssertionFailedError, InvalidJSONError, NodeConfigurationError
from flowpilot.nodes.base import Output, Stop
from flowpilot.nodes.utility import (
    AssertNode,
    ErrorHandlerNode,
    HTTPRequestNode,
    JSONParseNode,
    SetVariableNode,
)

logger = logging.LoggerAdapter(logging.getLogger("tests"), {})


def _context(data=None):
    return RunContext(run_id="run-1", tenant_id="tenant-1", data=data or {})


@pytest.mark.asyncio
async def test_set_variable_sanitizes_names():
    outcome = await SetVariableNode().execute(
        {"variables": [{"name": "Lead Score", "value": 10}, {"name": "  ", "value": 1}]},
        _context(),
        logger,
    )
    assert outcome.values == {"lead_score": 10}


@pytest.mark.asyncio
async def test_set_variable_legacy_single_value_and_empty():
    outcome = await SetVariableNode().execute({"name": "foo", "value": 1}, _context(), logger)
    assert outcome.values == {"foo": 1}

    with pytest.raises(NodeConfigurationError):
        await SetVariableNode().execute({"variables": []}, _context(), logger)


@pytest.mark.asyncio
async def test_json_parse():
    node = JSONParseNode()
    outcome = await node.execute({"json_string": '{"a": [1, 2]}'}, _context(), logger)
    assert outcome.values == {"parsed": {"a": [1, 2]}}

    outcome = await node.execute({"json_string": {"already": True}}, _context(), logger)
    assert outcome.values == {"parsed": {"already": True}}

    with pytest.raises(InvalidJSONError):
        await node.execute({"json_string": "{not json"}, _context(), logger)


@pytest.mark.asyncio
async def test_http_request_sends_body_and_parses_json():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = request.content
        seen["auth"] = request.headers.get("authorization")
        seen["content_type"] = request.headers.get("content-type")
        return httpx.Response(201, json={"id": 7})

    node = HTTPRequestNode(transport=httpx.MockTransport(handler))
    outcome = await node.execute(
        {
            "url": "https://crm.example.com/leads",
            "method": "post",
            "headers": {"Authorization": "Bearer x"},
            "body": {"name": "Ada"},
        },
        _context(),
        logger,
    )

    assert outcome.values["status"] == 201
    assert outcome.values["body"] == {"id": 7}
    assert seen["method"] == "POST"
    assert json.loads(seen["body"]) == {"name": "Ada"}
    assert seen["auth"] == "Bearer x"
    assert seen["content_type"] == "application/json"


@pytest.mark.asyncio
async def test_http_request_get_ignores_body_and_returns_text():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.content == b""
        return httpx.Response(200, text="plain text")

    node = HTTPRequestNode(transport=httpx.MockTransport(handler))
    outcome = await node.execute(
        {"url": "https://example.com", "method": "GET", "body": {"ignored": True}},
        _context(),
        logger,
    )
    assert outcome.values["body"] == "plain text"


@pytest.mark.asyncio
async def test_http_request_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    node = HTTPRequestNode(transport=httpx.MockTransport(handler))
    with pytest.raises(httpx.HTTPError):
        await node.execute({"url": "https://example.com", "method": "GET"}, _context(), logger)
    with pytest.raises(NodeConfigurationError):
        await node.execute({"url": "https://example.com"}, _context(), logger)


@pytest.mark.asyncio
async def test_assert_node():
    node = AssertNode()
    context = _context({"set_1": {"score": 5}})
    outcome = await node.execute({"condition": "score > 1"}, context, logger)
    assert outcome.values == {"passed": True}

    with pytest.raises(AssertionFailedError, match="score too low"):
        await node.execute(
            {"condition": "score > 10", "error_message": "score too low"}, context, logger
        )


@pytest.mark.asyncio
async def test_error_handler_reads_last_error():
    node = ErrorHandlerNode()
    context = _context({LAST_ERROR_KEY: {"node_id": "http_1", "message": "boom"}})

    outcome = await node.execute({}, context, logger)
    assert isinstance(outcome, Output)
    assert outcome.values == {"had_error": True, "error_message": "boom"}

    outcome = await node.execute({"on_error": "stop"}, context, logger)
    assert isinstance(outcome, Stop)
    assert outcome.reason == "boom"

    outcome = await node.execute({"on_error": "stop"}, _context(), logger)
    assert outcome.values == {"had_error": False, "error_message": None}
