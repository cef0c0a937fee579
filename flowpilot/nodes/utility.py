"""Utility nodes: variables, JSON parsing, outbound HTTP, assertions and error handling."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx

from ..constants import LAST_ERROR_KEY
from ..contracts import RunContext
from ..errors import AssertionFailedError, InvalidJSONError, NodeConfigurationError
from ..expressions import evaluate, sanitize_name
from .base import BaseNode, Output, Stop

UTILITY_FAMILY = "utility"

_BODY_METHODS = {"POST", "PUT", "PATCH"}


class SetVariableNode(BaseNode):
    """Merge one or more named values into context under sanitized names."""

    kind = "set-variable"
    family = UTILITY_FAMILY

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        variables = config.get("variables")
        if isinstance(variables, list):
            pairs = [
                (str(item["name"]), item.get("value"))
                for item in variables
                if isinstance(item, dict) and str(item.get("name") or "").strip()
            ]
        elif config.get("name"):
            pairs = [(str(config["name"]), config.get("value"))]
        else:
            pairs = []

        if not pairs:
            raise NodeConfigurationError("Set Variable requires at least one variable")

        values: Dict[str, Any] = {}
        for name, value in pairs:
            safe_name = sanitize_name(name)
            logger.debug(f'Setting variable "{name}" (as {safe_name})')
            values[safe_name] = value
        logger.info(f"Set {len(values)} variable(s)")
        return Output(values=values)


class JSONParseNode(BaseNode):
    kind = "json-parse"
    family = UTILITY_FAMILY

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        raw = self.require(config, "json_string", "JSON Parser requires json_string")
        if not isinstance(raw, str):
            # Already structured after template resolution.
            return Output(values={"parsed": raw})
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error(f"JSON parse failed: {exc}")
            raise InvalidJSONError(f"Invalid JSON: {exc}") from exc
        return Output(values={"parsed": parsed})


class HTTPRequestNode(BaseNode):
    """Perform an outbound HTTP call and return ``{status, body, headers}``.

    A JSON response body is decoded; anything else is returned as text.
    Transport errors propagate and fail the node.
    """

    kind = "http-request"
    family = UTILITY_FAMILY

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        default_timeout: float = 30.0,
    ) -> None:
        self._transport = transport
        self._default_timeout = default_timeout

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        url = config.get("url")
        method = str(config.get("method") or "").upper()
        if not url or not method:
            raise NodeConfigurationError("HTTP Request requires url and method")

        headers = {"Content-Type": "application/json", **(config.get("headers") or {})}
        content: Optional[str] = None
        body = config.get("body")
        if body not in (None, "") and method in _BODY_METHODS:
            content = body if isinstance(body, str) else json.dumps(body)

        timeout = float(config.get("timeout") or self._default_timeout)
        logger.debug(f"Making {method} request to {url}")
        async with httpx.AsyncClient(transport=self._transport, timeout=timeout) as client:
            try:
                response = await client.request(method, url, headers=headers, content=content)
            except httpx.HTTPError as exc:
                logger.error(f"HTTP request failed: {exc}")
                raise

        try:
            parsed: Any = response.json()
        except ValueError:
            parsed = response.text
        logger.info(f"HTTP {method} {url} - {response.status_code}")
        return Output(
            values={
                "status": response.status_code,
                "body": parsed,
                "headers": dict(response.headers),
            }
        )


class AssertNode(BaseNode):
    kind = "assert"
    family = UTILITY_FAMILY
    expression_fields = ("condition",)

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        condition = self.require(config, "condition", "Assert requires a condition")
        result = evaluate(condition, context.data)
        if not result:
            message = config.get("error_message") or "Assertion failed"
            logger.error(f"{message} (condition: {condition})")
            raise AssertionFailedError(message)
        logger.debug("Assertion passed")
        return Output(values={"passed": True})


class ErrorHandlerNode(BaseNode):
    """Inspect the last error sentinel and either continue or stop.

    Reached through a failing node's ``error`` edge. The executor clears the
    sentinel after this node runs.
    """

    kind = "error-handler"
    family = UTILITY_FAMILY

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output | Stop:
        last_error = context.get(LAST_ERROR_KEY)
        had_error = last_error is not None
        message = None
        if isinstance(last_error, dict):
            message = last_error.get("message")
        elif had_error:
            message = str(last_error)

        values = {"had_error": had_error, "error_message": message}
        if had_error:
            on_error = config.get("on_error") or "continue"
            logger.info(f"Caught error: {message} (on_error={on_error})")
            if on_error == "stop":
                return Stop(reason=message, values=values)
        return Output(values=values)


UTILITY_NODES = (SetVariableNode, JSONParseNode, HTTPRequestNode, AssertNode, ErrorHandlerNode)
