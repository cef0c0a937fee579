"""AI nodes backed by a :class:`~flowpilot.llm.CompletionProvider`.

Each node asks the provider for a single JSON object and parses it strictly.
Malformed model output never fails the node; a deterministic fallback is
returned instead. Provider errors (network, auth) still propagate.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from ..contracts import RunContext
from ..errors import NodeConfigurationError
from ..llm.provider import CompletionProvider
from .base import BaseNode, Output

AI_FAMILY = "ai"

SENTIMENTS = ("positive", "neutral", "negative", "frustrated")

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Parse ``text`` as exactly one JSON object, or return ``None``."""
    stripped = text.strip()
    fenced = _FENCE_RE.match(stripped)
    if fenced:
        stripped = fenced.group(1)
    try:
        value = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _coerce_confidence(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number <= 0:
        return default
    return min(number, 1.0)


class AINode(BaseNode):
    family = AI_FAMILY

    def __init__(self, provider: Optional[CompletionProvider] = None) -> None:
        self._provider = provider

    @property
    def provider(self) -> CompletionProvider:
        if self._provider is None:
            raise NodeConfigurationError(f"No completion provider configured for {self.kind}")
        return self._provider

    @staticmethod
    def text_input(config: Dict[str, Any], message: str) -> str:
        text = config.get("text")
        if text is None or text == "":
            raise NodeConfigurationError(message)
        return text if isinstance(text, str) else json.dumps(text)


class IntentDetectionNode(AINode):
    kind = "intent-detection"

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        text = self.text_input(config, "Intent detection requires text input")
        intents = self._intents(config.get("intents"))
        if not intents:
            raise NodeConfigurationError("Intent detection requires a list of intents")

        prompt = (
            "Analyze the following text and classify it into one of these intents: "
            f"{', '.join(intents)}.\n\n"
            f'Text: "{text}"\n\n'
            "Respond with ONLY a JSON object in this exact format:\n"
            '{"intent": "<one of the intents>", "confidence": <0.0 to 1.0>}'
        )
        logger.debug(f"Calling provider for intent detection: {text[:100]}")
        completion = await self.provider.complete(
            prompt,
            system="You are a text classifier. Respond only with valid JSON.",
            temperature=0.1,
            max_tokens=100,
        )

        result = parse_json_object(completion.text)
        if result is not None and result.get("intent"):
            logger.info(f"Detected intent: {result['intent']}")
            return Output(
                values={
                    "intent": result["intent"],
                    "confidence": _coerce_confidence(result.get("confidence"), 0.5),
                }
            )

        logger.warning("Malformed intent response, using fallback")
        lowered = completion.text.lower()
        for intent in intents:
            if intent.lower() in lowered:
                return Output(values={"intent": intent, "confidence": 0.5})
        return Output(values={"intent": intents[0], "confidence": 0.1})

    @staticmethod
    def _intents(raw: Any) -> List[str]:
        if isinstance(raw, str):
            return [part.strip() for part in raw.split(",") if part.strip()]
        if isinstance(raw, list):
            return [str(item).strip() for item in raw if str(item).strip()]
        return []


class SentimentDetectionNode(AINode):
    kind = "sentiment-detection"

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        text = self.text_input(config, "Sentiment detection requires text input")
        prompt = (
            "Analyze the sentiment of this text and respond with ONLY a JSON object:\n\n"
            f'Text: "{text}"\n\n'
            'Format: {"sentiment": "positive|neutral|negative|frustrated", "score": <0.0 to 1.0>}'
        )
        completion = await self.provider.complete(
            prompt,
            system="You are a sentiment analyzer. Respond only with valid JSON.",
            temperature=0.1,
            max_tokens=100,
        )

        result = parse_json_object(completion.text)
        sentiment = str((result or {}).get("sentiment") or "").lower()
        if sentiment not in SENTIMENTS:
            logger.warning("Malformed sentiment response, defaulting to neutral")
            return Output(values={"sentiment": "neutral", "score": 0.5})
        logger.info(f"Detected sentiment: {sentiment}")
        return Output(
            values={"sentiment": sentiment, "score": _coerce_confidence(result.get("score"), 0.5)}
        )


class EntityExtractionNode(AINode):
    kind = "entity-extraction"

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        text = self.text_input(config, "Entity extraction requires text input")
        entity_list = ", ".join(
            f"{entity.get('name')} ({entity.get('type', 'string')})"
            for entity in config.get("entities") or []
            if isinstance(entity, dict) and entity.get("name")
        )
        prompt = (
            f"Extract these entities from the text: {entity_list}\n\n"
            f'Text: "{text}"\n\n'
            "Respond with ONLY a JSON object where keys are entity names and values "
            "are the extracted values (or null if not found)."
        )
        completion = await self.provider.complete(
            prompt,
            system="You are an entity extractor. Respond only with valid JSON.",
            temperature=0.1,
            max_tokens=500,
        )

        result = parse_json_object(completion.text)
        if result is None:
            logger.warning("Malformed entity response, returning no entities")
            return Output(values={"entities": {}})
        logger.info(f"Extracted {len(result)} entities")
        return Output(values={"entities": result})


class GeneralAgentNode(AINode):
    """Free-form completion; with ``json_mode`` the reply is parsed as an object."""

    kind = "general-agent"

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        message = config.get("message")
        if not message:
            raise NodeConfigurationError("LLM Agent requires a message")
        max_tokens = min(int(config.get("max_tokens") or 500), 2000)
        json_mode = bool(config.get("json_mode"))

        completion = await self.provider.complete(
            message if isinstance(message, str) else json.dumps(message),
            system=config.get("prompt") or "You are a helpful assistant.",
            temperature=float(config.get("temperature", 0.7)),
            max_tokens=max_tokens,
        )
        logger.info(f"LLM generated response ({completion.tokens_used} tokens)")

        values: Dict[str, Any] = {
            "response": completion.text,
            "tokens_used": completion.tokens_used,
        }
        if json_mode:
            data = parse_json_object(completion.text)
            if data is None:
                logger.warning("Malformed JSON response from agent")
            values["data"] = data or {}
        return Output(values=values)


AI_NODES = (IntentDetectionNode, SentimentDetectionNode, EntityExtractionNode, GeneralAgentNode)
