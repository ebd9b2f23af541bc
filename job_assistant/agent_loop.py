"""Tool-calling agent loop for one streamed conversation turn."""

from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable

from job_assistant.channel import EventChannel
from job_assistant.errors import AgentError, ModelTimeoutError, StreamCancelledError, UpstreamUnavailableError
from job_assistant.llm.base import LLMProvider
from job_assistant.models import (
    EventType,
    LLMResponse,
    LLMToolCall,
    LoopOutcome,
    TextDelta,
    TokenBudget,
    ToolError,
    ToolOutcome,
    utc_now,
)
from job_assistant.redaction import redact
from job_assistant.summary import build_job_summary
from job_assistant.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

CONTINUE_PROMPT = "Continue exactly where you left off, without repeating anything."


class AgentState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    TOOL_REQUESTED = "tool_requested"
    TEXT_RECEIVED = "text_received"
    COMPLETE = "complete"
    FAILED = "failed"


class StopReason:
    END_TURN = "end_turn"
    CONTEXT_LIMIT = "context_limit"
    ITERATION_LIMIT = "iteration_limit"


_TRANSITIONS: dict[AgentState, frozenset[AgentState]] = {
    AgentState.IDLE: frozenset({AgentState.AWAITING_MODEL, AgentState.FAILED}),
    AgentState.AWAITING_MODEL: frozenset(
        {AgentState.TOOL_REQUESTED, AgentState.TEXT_RECEIVED, AgentState.COMPLETE, AgentState.FAILED}
    ),
    AgentState.TOOL_REQUESTED: frozenset({AgentState.AWAITING_MODEL, AgentState.COMPLETE, AgentState.FAILED}),
    AgentState.TEXT_RECEIVED: frozenset({AgentState.AWAITING_MODEL, AgentState.COMPLETE, AgentState.FAILED}),
    AgentState.COMPLETE: frozenset(),
    AgentState.FAILED: frozenset(),
}


class AgentLoop:
    """Drives model round-trips and tool calls until the turn is complete.

    One instance serves exactly one stream: it owns the transcript and the
    token budget, publishes non-terminal events on ``channel`` and returns a
    ``LoopOutcome`` (or raises ``AgentError``) once it reaches a terminal
    state. Emitting the terminal event is left to the caller, which has to
    persist the response first.
    """

    def __init__(
        self,
        llm: LLMProvider,
        tool_registry: ToolRegistry,
        channel: EventChannel,
        budget: TokenBudget,
        *,
        user_id: str,
        system_prompt: str | None = None,
        max_iterations: int = 25,
        model_timeout_seconds: float = 60.0,
        max_tokens_per_call: int = 4096,
        stream_id: str | None = None,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        self._llm = llm
        self._tools = tool_registry
        self._channel = channel
        self._budget = budget
        self._user_id = user_id
        self._system_prompt = system_prompt
        self._max_iterations = max_iterations
        self._model_timeout_seconds = model_timeout_seconds
        self._max_tokens_per_call = max_tokens_per_call
        self._stream_id = stream_id or uuid.uuid4().hex
        self._is_disconnected = is_disconnected

        self.state = AgentState.IDLE
        self.iterations = 0
        self.continuations = 0
        self._output: list[str] = []
        self._text_before_tools: int | None = None
        self._tool_outcomes: list[ToolOutcome] = []

    @property
    def budget(self) -> TokenBudget:
        return self._budget

    @property
    def text(self) -> str:
        return "".join(self._output)

    async def run(self, transcript: list[dict[str, Any]]) -> LoopOutcome:
        transcript = list(transcript)
        self._transition(AgentState.AWAITING_MODEL)
        try:
            while True:
                await self._ensure_connected()
                if self.iterations >= self._max_iterations:
                    LOGGER.warning("Stream %s hit the %d-round limit, completing", self._stream_id, self._max_iterations)
                    self._status(f"Reached the limit of {self._max_iterations} model rounds. Completing response...")
                    return self._complete(StopReason.ITERATION_LIMIT)

                self.iterations += 1
                response = await self._call_model(transcript)
                self._budget.record(response.usage)
                self._publish_usage()

                if self._budget.exhausted:
                    LOGGER.info(
                        "Stream %s context limit reached (%d/%d), completing",
                        self._stream_id,
                        self._budget.total_tokens,
                        self._budget.threshold_tokens,
                    )
                    self._status(
                        f"Reached context limit ({self._budget.percentage:.0f}% used). Completing response..."
                    )
                    return self._complete(StopReason.CONTEXT_LIMIT)

                if response.tool_calls:
                    self._transition(AgentState.TOOL_REQUESTED)
                    if self._text_before_tools is None:
                        self._text_before_tools = len(self.text)
                    calls = _with_call_ids(response.tool_calls)
                    transcript.append(_assistant_message(response.content, calls))
                    outcomes = await self._execute_tools(calls)
                    transcript.append(_tool_results_message(calls, outcomes))
                    self._transition(AgentState.AWAITING_MODEL)
                    continue

                self._transition(AgentState.TEXT_RECEIVED)
                if response.stop_reason == "max_tokens":
                    self.continuations += 1
                    LOGGER.info("Stream %s hit max_tokens, continuation %d", self._stream_id, self.continuations)
                    self._status("Response reached the output limit. Continuing...")
                    if response.content:
                        transcript.append({"role": "assistant", "content": response.content})
                    transcript.append({"role": "user", "content": CONTINUE_PROMPT})
                    self._transition(AgentState.AWAITING_MODEL)
                    continue

                return self._complete(StopReason.END_TURN)
        except asyncio.CancelledError:
            self._fail()
            raise
        except AgentError:
            self._fail()
            raise
        except Exception as exc:
            self._fail()
            raise AgentError(f"Agent loop failed: {exc}") from exc

    async def _call_model(self, transcript: list[dict[str, Any]]) -> LLMResponse:
        try:
            return await asyncio.wait_for(self._consume_model_stream(transcript), timeout=self._model_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ModelTimeoutError(f"Model call exceeded {self._model_timeout_seconds:g}s") from exc

    async def _consume_model_stream(self, transcript: list[dict[str, Any]]) -> LLMResponse:
        stream = self._llm.stream(
            transcript,
            tools=self._tools.list_tool_specs(),
            system=self._system_prompt,
            max_tokens=self._max_tokens_per_call,
        )
        response: LLMResponse | None = None
        try:
            async for item in stream:
                if isinstance(item, TextDelta):
                    self._output.append(item.text)
                    self._channel.publish(EventType.CHUNK, {"content": item.text})
                elif isinstance(item, LLMResponse):
                    response = item
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        if response is None:
            raise UpstreamUnavailableError("Completion API stream ended without a response")
        return response

    async def _execute_tools(self, calls: list[LLMToolCall]) -> list[ToolOutcome]:
        total = len(calls)
        batch_id = f"batch_{uuid.uuid4().hex[:12]}" if total > 1 else None
        if batch_id:
            self._status(f"Starting batch execution of {total} tools...", batchId=batch_id, batchTotal=total)

        outcomes: list[ToolOutcome] = []
        for index, call in enumerate(calls):
            await self._ensure_connected()
            batch = {"batchId": batch_id, "batchTotal": total, "batchCompleted": index} if batch_id else {}
            started_at = utc_now().isoformat()
            safe_params, _ = redact(call.arguments)
            self._channel.publish(
                EventType.TOOL_START,
                {
                    "activityId": call.call_id,
                    "toolName": call.name,
                    "params": safe_params,
                    "startedAt": started_at,
                    **batch,
                },
            )

            outcome = await self._run_tool(call)
            outcomes.append(outcome)
            self._tool_outcomes.append(outcome)

            if batch_id:
                batch["batchCompleted"] = index + 1
            payload: dict[str, Any] = {
                "activityId": call.call_id,
                "toolName": call.name,
                "params": outcome.params,
                "result": outcome.content,
                "success": not outcome.is_error,
                "redacted": outcome.redacted,
                "startedAt": started_at,
                "completedAt": utc_now().isoformat(),
                **batch,
            }
            if isinstance(outcome, ToolError):
                payload["error"] = {"kind": outcome.kind.value, "message": outcome.message}
            self._channel.publish(EventType.TOOL_RESULT, payload)

        if batch_id:
            failures = sum(1 for outcome in outcomes if outcome.is_error)
            if failures:
                summary = f"Completed {total} tools with {failures} error{'s' if failures > 1 else ''}"
            else:
                summary = f"Completed {total} tools successfully"
            self._status(summary, batchId=batch_id, batchTotal=total, batchCompleted=total)
        return outcomes

    async def _run_tool(self, call: LLMToolCall) -> ToolOutcome:
        # Tool side effects may not be interruptible: on cancellation the
        # execution runs to completion in the background and its result is dropped.
        task = asyncio.ensure_future(self._tools.execute(self._user_id, call.name, call.arguments))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            tool = self._tools.get(call.name)
            task.add_done_callback(_discard_tool_result(call.name, tool is not None and tool.side_effecting))
            raise

    def _complete(self, stop_reason: str) -> LoopOutcome:
        self._append_fallback_summary()
        self._transition(AgentState.COMPLETE)
        LOGGER.info(
            "Stream %s complete: reason=%s iterations=%d continuations=%d tokens=%d",
            self._stream_id,
            stop_reason,
            self.iterations,
            self.continuations,
            self._budget.total_tokens,
        )
        return LoopOutcome(
            text=self.text,
            stop_reason=stop_reason,
            iterations=self.iterations,
            budget=self._budget,
            tool_outcomes=list(self._tool_outcomes),
        )

    def _append_fallback_summary(self) -> None:
        if not self._tool_outcomes or self._text_before_tools is None:
            return
        if self.text[self._text_before_tools:].strip():
            return
        summary = build_job_summary(self._tool_outcomes)
        if not summary:
            return
        LOGGER.info("No assistant summary generated, adding fallback overview")
        text = ("\n\n" if self.text.strip() else "") + summary
        self._output.append(text)
        self._channel.publish(EventType.CHUNK, {"content": text})

    def _publish_usage(self) -> None:
        budget = self._budget
        self._channel.publish(
            EventType.CONTEXT_USAGE,
            {
                "activityId": f"context-usage-{self._stream_id}",
                **budget.to_payload(),
                "iteration": self.iterations,
                "content": (
                    f"Context: {budget.percentage:.1f}% ({budget.total_tokens:,}/{budget.limit:,} tokens)"
                ),
            },
        )

    def _status(self, content: str, **extra: Any) -> None:
        self._channel.publish(
            EventType.STATUS,
            {"activityId": f"status-{uuid.uuid4().hex}", "content": content, "startedAt": utc_now().isoformat(), **extra},
        )

    async def _ensure_connected(self) -> None:
        if self._channel.closed:
            raise StreamCancelledError("Client disconnected")
        if self._is_disconnected is not None and await self._is_disconnected():
            self._channel.close()
            raise StreamCancelledError("Client disconnected")

    def _transition(self, new_state: AgentState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid agent state transition {self.state.value} -> {new_state.value}")
        LOGGER.debug("Stream %s: %s -> %s", self._stream_id, self.state.value, new_state.value)
        self.state = new_state

    def _fail(self) -> None:
        if self.state not in (AgentState.COMPLETE, AgentState.FAILED):
            self.state = AgentState.FAILED


def _with_call_ids(calls: list[LLMToolCall]) -> list[LLMToolCall]:
    for call in calls:
        if not call.call_id:
            call.call_id = f"toolu_{uuid.uuid4().hex[:24]}"
    return calls


def _assistant_message(content: str, calls: list[LLMToolCall]) -> dict[str, Any]:
    blocks: list[dict[str, Any]] = []
    if content:
        blocks.append({"type": "text", "text": content})
    blocks.extend(
        {"type": "tool_use", "id": call.call_id, "name": call.name, "input": call.arguments} for call in calls
    )
    return {"role": "assistant", "content": blocks}


def _tool_results_message(calls: list[LLMToolCall], outcomes: list[ToolOutcome]) -> dict[str, Any]:
    return {
        "role": "user",
        "content": [
            {
                "type": "tool_result",
                "tool_use_id": call.call_id,
                "content": outcome.to_model_content(),
                "is_error": outcome.is_error,
            }
            for call, outcome in zip(calls, outcomes)
        ],
    }


def _discard_tool_result(tool_name: str, side_effecting: bool) -> Callable[[asyncio.Future[Any]], None]:
    def _callback(task: asyncio.Future[Any]) -> None:
        if task.cancelled():
            return
        if task.exception() is not None:
            LOGGER.warning("Tool %s failed after client disconnect: %s", tool_name, task.exception())
        elif side_effecting:
            LOGGER.warning(
                "Side-effecting tool %s completed after client disconnect; its result was not delivered",
                tool_name,
            )
        else:
            LOGGER.info("Discarding result of tool %s after client disconnect", tool_name)

    return _callback
