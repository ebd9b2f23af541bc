"""Turns one agent run into an ordered stream of events for the browser."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable

from job_assistant.agent_loop import AgentLoop
from job_assistant.channel import EventChannel
from job_assistant.config import Settings
from job_assistant.db import Database
from job_assistant.errors import AgentError, ChannelClosedError, ErrorKind, PersistenceError, StreamCancelledError
from job_assistant.llm.base import LLMProvider
from job_assistant.models import (
    Activity,
    ActivityType,
    ChatRequest,
    EventType,
    Message,
    StreamEvent,
    TokenBudget,
    utc_now,
)
from job_assistant.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

EMPTY_RESPONSE_TEXT = "I wasn't able to put together a response for that. Please try again or rephrase the request."
_CONVERSATION_NAME_CHARS = 60


@dataclass(slots=True)
class _StreamContext:
    stream_id: str
    request: ChatRequest
    conversation_id: str | None = None


class StreamMultiplexer:
    """Runs the agent loop for one turn and exposes it as ``StreamEvent``s.

    Guarantees: a ``status`` event is the first thing a client receives;
    every stream ends with exactly one ``complete`` or ``error``; the final
    assistant text is persisted as one message before ``complete`` is sent.
    If the consumer stops reading, the loop is cancelled and nothing is
    persisted for the turn.
    """

    def __init__(
        self,
        db: Database,
        llm: LLMProvider,
        tool_registry: ToolRegistry,
        settings: Settings,
        system_prompt: str | None = None,
    ) -> None:
        self._db = db
        self._llm = llm
        self._tool_registry = tool_registry
        self._settings = settings
        self._system_prompt = system_prompt

    async def stream(
        self,
        request: ChatRequest,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        ctx = _StreamContext(stream_id=uuid.uuid4().hex, request=request)
        channel = EventChannel(idle_timeout=self._settings.stream_idle_timeout_seconds)
        channel.publish(
            EventType.STATUS,
            {
                "activityId": f"status-{ctx.stream_id}",
                "content": "Connecting to the assistant...",
                "streamId": ctx.stream_id,
                "startedAt": utc_now().isoformat(),
            },
        )
        LOGGER.info("Stream %s started for user %s agent %s", ctx.stream_id, request.user_id, request.agent_id)

        task = asyncio.create_task(self._drive(channel, ctx, is_disconnected), name=f"agent-stream-{ctx.stream_id}")
        try:
            async for event in channel:
                self._observe(ctx, event)
                yield event
        finally:
            if not task.done():
                LOGGER.warning("Stream %s: client stopped reading, aborting agent loop", ctx.stream_id)
                channel.close()
                task.cancel()

    async def _drive(
        self,
        channel: EventChannel,
        ctx: _StreamContext,
        is_disconnected: Callable[[], Awaitable[bool]] | None,
    ) -> None:
        request = ctx.request
        try:
            conversation_id = self._open_conversation(ctx)
            stored = self._db.find_message(conversation_id, _correlation_key(ctx, "assistant"))
            if stored is not None:
                self._replay(channel, ctx, stored)
                return
            self._persist(ctx, "user", request.message)
            transcript = self._build_transcript(conversation_id, request.message)

            loop = AgentLoop(
                self._llm,
                self._tool_registry,
                channel,
                self._new_budget(),
                user_id=request.user_id,
                system_prompt=self._system_prompt,
                max_iterations=self._settings.agent_max_iterations,
                model_timeout_seconds=self._settings.model_timeout_seconds,
                max_tokens_per_call=self._settings.max_tokens_per_call,
                stream_id=ctx.stream_id,
                is_disconnected=is_disconnected,
            )
            outcome = await loop.run(transcript)

            text = outcome.text
            if not text.strip():
                text = EMPTY_RESPONSE_TEXT
                channel.publish(EventType.CHUNK, {"content": text})
            message_id = self._persist(ctx, "assistant", text)

            channel.publish(
                EventType.COMPLETE,
                {
                    "conversationId": conversation_id,
                    "messageId": message_id,
                    "persisted": message_id is not None,
                    "stopReason": outcome.stop_reason,
                    "iterations": outcome.iterations,
                    "usage": outcome.budget.to_payload(),
                },
            )
            LOGGER.info("Stream %s completed (%s)", ctx.stream_id, outcome.stop_reason)
        except StreamCancelledError as exc:
            LOGGER.warning("Stream %s aborted, transport closed: %s", ctx.stream_id, exc)
        except asyncio.CancelledError:
            LOGGER.warning("Stream %s cancelled", ctx.stream_id)
            raise
        except AgentError as exc:
            LOGGER.error("Stream %s failed: %s: %s", ctx.stream_id, exc.kind.value, exc)
            _terminate(channel, exc.kind, exc.message)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Stream %s failed unexpectedly", ctx.stream_id)
            _terminate(channel, ErrorKind.INTERNAL, "Something went wrong while generating the response.")
        finally:
            _terminate(channel, ErrorKind.INTERNAL, "The response ended unexpectedly.")

    def _open_conversation(self, ctx: _StreamContext) -> str:
        request = ctx.request
        if request.conversation_id:
            existing = self._db.get_conversation(request.conversation_id)
            if existing is not None and existing.user_id != request.user_id:
                raise AgentError("Conversation not found", ErrorKind.INVALID_INPUT)
        name = request.message.strip().splitlines()[0][:_CONVERSATION_NAME_CHARS] if request.message.strip() else "New chat"
        try:
            conversation = self._db.ensure_conversation(request.conversation_id, request.user_id, request.agent_id, name)
        except Exception as exc:
            raise PersistenceError(f"Could not open conversation: {exc}") from exc
        ctx.conversation_id = conversation.id
        return conversation.id

    def _new_budget(self) -> TokenBudget:
        return TokenBudget(limit=self._settings.context_limit, threshold_fraction=self._settings.context_threshold)

    def _replay(self, channel: EventChannel, ctx: _StreamContext, stored: Message) -> None:
        """Answer a retried turn with the reply already saved for it."""
        LOGGER.info("Stream %s: turn already answered as message %s, replaying", ctx.stream_id, stored.id)
        channel.publish(EventType.CHUNK, {"content": stored.content})
        channel.publish(
            EventType.COMPLETE,
            {
                "conversationId": stored.conversation_id,
                "messageId": stored.id,
                "persisted": True,
                "stopReason": "replayed",
                "iterations": 0,
                "usage": self._new_budget().to_payload(),
            },
        )

    def _persist(self, ctx: _StreamContext, role: str, content: str) -> str | None:
        """Append one message; failures are logged and reported as None."""
        try:
            message = self._db.append_message(
                ctx.conversation_id or "",
                ctx.request.agent_id,
                role,
                content,
                correlation_id=_correlation_key(ctx, role),
            )
        except PersistenceError:
            LOGGER.exception(
                "PERSISTENCE FAILURE: %s message for conversation %s was not saved (stream %s)",
                role,
                ctx.conversation_id,
                ctx.stream_id,
            )
            return None
        return message.id

    def _build_transcript(self, conversation_id: str, message: str) -> list[dict[str, Any]]:
        history = self._db.get_recent_messages(conversation_id, self._settings.memory_window_messages)
        # The model must be answering this turn's message, saved or not.
        if not history or history[-1] != {"role": "user", "content": message}:
            history.append({"role": "user", "content": message})
        return _normalize_history(history)

    def _observe(self, ctx: _StreamContext, event: StreamEvent) -> None:
        if event.type is not EventType.TOOL_RESULT or ctx.conversation_id is None:
            return
        payload = event.payload
        activity = Activity(
            id=str(payload["activityId"]),
            type=ActivityType.TOOL_CALL,
            agent_id=ctx.request.agent_id,
            started_at=datetime.fromisoformat(payload["startedAt"]),
            tool_name=payload.get("toolName"),
            params=payload.get("params"),
            result=payload.get("result"),
            success=payload.get("success"),
            completed_at=datetime.fromisoformat(payload["completedAt"]),
            batch_id=payload.get("batchId"),
            is_redacted=bool(payload.get("redacted")),
        )
        try:
            self._db.save_activity(ctx.conversation_id, activity)
        except PersistenceError:
            LOGGER.exception("PERSISTENCE FAILURE: activity %s was not saved", activity.id)


def _correlation_key(ctx: _StreamContext, role: str) -> str:
    return f"{ctx.request.correlation_id or ctx.stream_id}:{role}"


def _terminate(channel: EventChannel, kind: ErrorKind, message: str) -> None:
    if channel.terminated or channel.closed:
        return
    try:
        channel.publish(EventType.ERROR, {"kind": kind.value, "message": message})
    except ChannelClosedError:
        pass


def _normalize_history(history: list[dict[str, str]]) -> list[dict[str, Any]]:
    """Start with a user turn and merge consecutive turns from the same role."""
    normalized: list[dict[str, Any]] = []
    for item in history:
        if not normalized and item["role"] != "user":
            continue
        if normalized and normalized[-1]["role"] == item["role"]:
            normalized[-1]["content"] = f"{normalized[-1]['content']}\n\n{item['content']}"
            continue
        normalized.append({"role": item["role"], "content": item["content"]})
    return normalized


def format_sse(event: StreamEvent) -> str:
    return f"data: {event.to_json()}\n\n"


async def sse_frames(events: AsyncIterable[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield format_sse(event)


async def parse_sse_lines(lines: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
    """Decode ``data: <json>`` frames back into events, stopping after the terminal one."""
    data_lines: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
            continue
        if line or not data_lines:
            continue
        event = _decode_frame("\n".join(data_lines))
        data_lines = []
        if event is None:
            continue
        yield event
        if event.is_terminal:
            return
    if data_lines:
        event = _decode_frame("\n".join(data_lines))
        if event is not None:
            yield event


def _decode_frame(data: str) -> StreamEvent | None:
    try:
        return StreamEvent.from_dict(json.loads(data))
    except (ValueError, KeyError, TypeError):
        LOGGER.warning("Ignoring undecodable stream frame: %r", data[:200])
        return None
