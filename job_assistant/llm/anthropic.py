"""Anthropic Messages API implementation of LLMProvider."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

import httpx

from job_assistant.config import Settings
from job_assistant.errors import UpstreamUnavailableError
from job_assistant.llm.base import LLMProvider
from job_assistant.models import LLMResponse, LLMToolCall, TextDelta, TokenUsage

_LOGGER = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_RETRY_BACKOFF_SECONDS = [2, 5, 15]


class AnthropicProvider(LLMProvider):
    """LLM provider streaming from Anthropic's ``/v1/messages`` endpoint."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[TextDelta | LLMResponse]:
        payload: dict[str, Any] = {
            "model": self._settings.anthropic_model,
            "max_tokens": max_tokens or self._settings.max_tokens_per_call,
            "messages": messages,
            "stream": True,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = tools

        headers = {
            "x-api-key": self._settings.anthropic_api_key,
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        retries = self._settings.llm_rate_limit_retries
        timeout = httpx.Timeout(self._settings.model_timeout_seconds)
        try:
            async with httpx.AsyncClient(
                base_url=self._settings.anthropic_base_url,
                timeout=timeout,
                transport=self._transport,
            ) as client:
                for attempt in range(retries + 1):
                    async with client.stream("POST", "/v1/messages", headers=headers, json=payload) as response:
                        if response.status_code != 429 or attempt >= retries:
                            await _raise_for_status(response)
                            async for item in _parse_message_stream(response.aiter_lines()):
                                yield item
                            return
                    wait = _RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)]
                    _LOGGER.warning(
                        "Anthropic rate limited (429), retrying in %ds (attempt %d/%d)",
                        wait,
                        attempt + 1,
                        retries,
                    )
                    await asyncio.sleep(wait)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(f"Completion API request failed: {exc}") from exc


async def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    body = (await response.aread()).decode("utf-8", errors="replace")
    raise UpstreamUnavailableError(f"Completion API returned HTTP {response.status_code}: {body[:300]}")


async def _parse_message_stream(lines: AsyncIterator[str]) -> AsyncIterator[TextDelta | LLMResponse]:
    """Turn the API's server-sent events into text deltas and one final response."""

    text_parts: list[str] = []
    tool_calls: list[LLMToolCall] = []
    tool_inputs: dict[int, list[str]] = {}
    tool_blocks: dict[int, LLMToolCall] = {}
    stop_reason: str | None = None
    input_tokens = 0
    output_tokens = 0

    async for line in lines:
        if not line.startswith("data:"):
            continue
        try:
            data = json.loads(line[5:].strip())
        except json.JSONDecodeError:
            _LOGGER.warning("Skipping malformed stream line: %r", line[:200])
            continue

        event_type = data.get("type")
        if event_type == "message_start":
            usage = data.get("message", {}).get("usage", {})
            input_tokens = int(usage.get("input_tokens") or 0)
            output_tokens = int(usage.get("output_tokens") or 0)
        elif event_type == "content_block_start":
            block = data.get("content_block", {})
            if block.get("type") == "tool_use":
                index = data.get("index", 0)
                tool_blocks[index] = LLMToolCall(name=block.get("name", ""), arguments={}, call_id=block.get("id"))
                tool_inputs[index] = []
        elif event_type == "content_block_delta":
            delta = data.get("delta", {})
            if delta.get("type") == "text_delta" and delta.get("text"):
                text_parts.append(delta["text"])
                yield TextDelta(delta["text"])
            elif delta.get("type") == "input_json_delta":
                tool_inputs.setdefault(data.get("index", 0), []).append(delta.get("partial_json", ""))
        elif event_type == "content_block_stop":
            index = data.get("index", 0)
            tool_call = tool_blocks.pop(index, None)
            if tool_call is not None:
                tool_call.arguments = _safe_json_loads("".join(tool_inputs.pop(index, [])) or "{}")
                tool_calls.append(tool_call)
        elif event_type == "message_delta":
            stop_reason = data.get("delta", {}).get("stop_reason") or stop_reason
            usage = data.get("usage") or {}
            if "output_tokens" in usage:
                output_tokens = int(usage["output_tokens"] or 0)
        elif event_type == "error":
            error = data.get("error", {})
            raise UpstreamUnavailableError(
                f"Completion API stream error: {error.get('type', 'unknown')}: {error.get('message', '')}"
            )
        elif event_type == "message_stop":
            break

    content = "".join(text_parts)
    _LOGGER.info(
        "LLM response: stop_reason=%r content=%r tool_calls=%r usage=(in=%d, out=%d)",
        stop_reason,
        content[:200],
        [tc.name for tc in tool_calls],
        input_tokens,
        output_tokens,
    )
    yield LLMResponse(
        content=content,
        tool_calls=tool_calls,
        stop_reason=stop_reason,
        usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def _safe_json_loads(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
