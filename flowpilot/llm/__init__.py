"""Completion providers for AI nodes."""

from __future__ import annotations

from typing import Optional

from ..config import FlowpilotConfig, load_config
from .provider import Completion, CompletionProvider


def get_completion_provider(config: Optional[FlowpilotConfig] = None) -> CompletionProvider:
    """Build the configured completion provider."""
    from .pydantic_ai_provider import PydanticAICompletionProvider

    config = config or load_config()
    return PydanticAICompletionProvider(
        model=config.ai.model, temperature=config.ai.temperature
    )


__all__ = ["Completion", "CompletionProvider", "get_completion_provider"]
