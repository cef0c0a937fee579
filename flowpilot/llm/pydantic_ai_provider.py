"""Completion provider backed by a pydantic-ai ``Agent``."""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic_ai import Agent

from .provider import Completion, CompletionProvider

logger = logging.getLogger(__name__)


class PydanticAICompletionProvider(CompletionProvider):
    """Run single-turn text completions through pydantic-ai.

    ``model`` is anything pydantic-ai accepts: a ``"provider:model"`` string
    such as ``"openai:gpt-4o-mini"`` or a ``Model`` instance.
    """

    def __init__(self, model: Any = "openai:gpt-4o-mini", temperature: float = 0.1) -> None:
        self.model = model
        self.temperature = temperature
        logger.info(f"Completion provider initialized with model: {model}")

    async def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        agent = Agent(self.model, system_prompt=system or ())
        settings: dict[str, Any] = {
            "temperature": self.temperature if temperature is None else temperature
        }
        if max_tokens:
            settings["max_tokens"] = max_tokens

        logger.debug(f"Requesting completion for prompt: {prompt[:100]}...")
        result = await agent.run(prompt, model_settings=settings)
        usage = result.usage()
        return Completion(
            text=str(result.output),
            tokens_used=getattr(usage, "total_tokens", None) or 0,
        )
