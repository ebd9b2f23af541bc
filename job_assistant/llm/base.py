"""LLM provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from job_assistant.models import LLMResponse, TextDelta


class LLMProvider(ABC):
    """Abstract model provider used by the agent loop.

    ``stream`` yields zero or more ``TextDelta`` items followed by exactly one
    ``LLMResponse`` carrying the tool calls, stop reason and usage of the call.
    """

    @abstractmethod
    def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[TextDelta | LLMResponse]:
        """Stream one model round-trip."""
