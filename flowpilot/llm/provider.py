"""Abstract completion provider used by AI nodes."""

from __future__ import annotations

import abc
from typing import Optional

from pydantic import BaseModel


class Completion(BaseModel):
    """Text returned by a provider plus token accounting."""

    text: str
    tokens_used: int = 0


class CompletionProvider(metaclass=abc.ABCMeta):
    """Pluggable text-completion backend.

    Implementations return the raw completion text; callers are responsible
    for parsing it.
    """

    @abc.abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        """Generate a completion for ``prompt``.

        Args:
            prompt: The user message.
            system: Optional system prompt.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate.

        Returns:
            The completion text and tokens used.
        """
        raise NotImplementedError
