"""Tests for AI nodes with a scripted completion provider."""

import logging

import pytest

from flowpilot.contracts import RunContext
from flowpilot.errors import NodeConfigurationError
from flowpilot.nodes.ai import (
    EntityExtractionNode,
    GeneralAgentNode,
    IntentDetectionNode,
    SentimentDetectionNode,
    parse_json_object,
)

logger = logging.LoggerAdapter(logging.getLogger("tests"), {})
CONTEXT = RunContext(run_id="run-1", tenant_id="tenant-1", data={})


def test_parse_json_object():
    assert parse_json_object('{"a": 1}') == {"a": 1}
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_object("[1, 2]") is None
    assert parse_json_object("sure! {\"a\": 1}") is None


@pytest.mark.asyncio
async def test_intent_detection_parses_reply(provider_factory):
    provider = provider_factory('{"intent": "billing", "confidence": 0.92}')
    node = IntentDetectionNode(provider)

    outcome = await node.execute(
        {"text": "Where is my invoice?", "intents": "support, billing"}, CONTEXT, logger
    )

    assert outcome.values == {"intent": "billing", "confidence": 0.92}
    call = provider.calls[0]
    assert "support, billing" in call["prompt"]
    assert call["temperature"] == 0.1
    assert call["max_tokens"] == 100


@pytest.mark.asyncio
async def test_intent_detection_fallbacks(provider_factory):
    node = IntentDetectionNode(provider_factory("I think this is about Billing."))
    outcome = await node.execute(
        {"text": "invoice", "intents": ["support", "billing"]}, CONTEXT, logger
    )
    assert outcome.values == {"intent": "billing", "confidence": 0.5}

    node = IntentDetectionNode(provider_factory("no idea"))
    outcome = await node.execute(
        {"text": "invoice", "intents": ["support", "billing"]}, CONTEXT, logger
    )
    assert outcome.values == {"intent": "support", "confidence": 0.1}


@pytest.mark.asyncio
async def test_intent_detection_requires_inputs(provider_factory):
    node = IntentDetectionNode(provider_factory())
    with pytest.raises(NodeConfigurationError):
        await node.execute({"intents": "a"}, CONTEXT, logger)
    with pytest.raises(NodeConfigurationError):
        await node.execute({"text": "hi", "intents": " , "}, CONTEXT, logger)


@pytest.mark.asyncio
async def test_ai_node_without_provider_fails():
    with pytest.raises(NodeConfigurationError):
        await IntentDetectionNode().execute({"text": "hi", "intents": "a"}, CONTEXT, logger)


@pytest.mark.asyncio
async def test_sentiment_detection(provider_factory):
    node = SentimentDetectionNode(provider_factory('{"sentiment": "Frustrated", "score": 0.8}'))
    outcome = await node.execute({"text": "still broken!!"}, CONTEXT, logger)
    assert outcome.values == {"sentiment": "frustrated", "score": 0.8}

    node = SentimentDetectionNode(provider_factory('{"sentiment": "ecstatic"}'))
    outcome = await node.execute({"text": "wow"}, CONTEXT, logger)
    assert outcome.values == {"sentiment": "neutral", "score": 0.5}


@pytest.mark.asyncio
async def test_entity_extraction(provider_factory):
    provider = provider_factory('{"email": "a@b.co", "budget": null}')
    node = EntityExtractionNode(provider)
    outcome = await node.execute(
        {
            "text": "mail me at a@b.co",
            "entities": [{"name": "email", "type": "email"}, {"name": "budget"}],
        },
        CONTEXT,
        logger,
    )
    assert outcome.values == {"entities": {"email": "a@b.co", "budget": None}}
    assert "email (email), budget (string)" in provider.calls[0]["prompt"]

    node = EntityExtractionNode(provider_factory("garbage"))
    outcome = await node.execute({"text": "x", "entities": []}, CONTEXT, logger)
    assert outcome.values == {"entities": {}}


@pytest.mark.asyncio
async def test_general_agent(provider_factory):
    provider = provider_factory('{"reply": "hello"}', "not json")
    node = GeneralAgentNode(provider)

    outcome = await node.execute(
        {"message": "Say hi", "prompt": "Be brief", "max_tokens": 9000, "json_mode": True},
        CONTEXT,
        logger,
    )
    assert outcome.values["data"] == {"reply": "hello"}
    assert outcome.values["tokens_used"] == 7
    assert provider.calls[0]["system"] == "Be brief"
    assert provider.calls[0]["max_tokens"] == 2000
    assert provider.calls[0]["temperature"] == 0.7

    outcome = await node.execute({"message": "again", "json_mode": True}, CONTEXT, logger)
    assert outcome.values["response"] == "not json"
    assert outcome.values["data"] == {}

    with pytest.raises(NodeConfigurationError):
        await node.execute({}, CONTEXT, logger)
