"""Core domain models used across layers."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Conversation:
    """One logical conversation thread, bound to a single agent."""

    id: str
    user_id: str
    agent_id: str
    name: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "name": self.name,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class Message:
    """Persisted chat message. Immutable once written."""

    id: str
    conversation_id: str
    agent_id: str
    role: str
    content: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "agentId": self.agent_id,
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            id=str(data["id"]),
            conversation_id=str(data.get("conversationId", "")),
            agent_id=str(data.get("agentId", "")),
            role=str(data["role"]),
            content=str(data.get("content", "")),
            created_at=datetime.fromisoformat(data["createdAt"]),
        )


class ActivityType(str, Enum):
    TOOL_CALL = "tool_call"
    STATUS = "status"
    CONTEXT_USAGE = "context_usage"
    ERROR = "error"


@dataclass(slots=True)
class Activity:
    """Live record of one side effect of the agent's reasoning.

    The id is stable across every event describing the same activity, so
    consumers can merge updates instead of appending duplicates.
    """

    id: str
    type: ActivityType
    agent_id: str
    started_at: datetime
    tool_name: str | None = None
    params: Any = None
    result: Any = None
    success: bool | None = None
    content: str | None = None
    completed_at: datetime | None = None
    batch_id: str | None = None
    is_redacted: bool = False

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "agentId": self.agent_id,
            "toolName": self.tool_name,
            "params": self.params,
            "result": self.result,
            "success": self.success,
            "content": self.content,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "batchId": self.batch_id,
            "isRedacted": self.is_redacted,
        }


class EventType(str, Enum):
    STATUS = "status"
    CHUNK = "chunk"
    TOOL_START = "tool_start"
    TOOL_RESULT = "tool_result"
    CONTEXT_USAGE = "context_usage"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_EVENT_TYPES = frozenset({EventType.COMPLETE, EventType.ERROR})


@dataclass(slots=True)
class StreamEvent:
    """One unit of the server-to-client push protocol."""

    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    seq: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "id": self.seq, "payload": self.payload}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StreamEvent:
        payload = data.get("payload")
        return cls(
            type=EventType(data["type"]),
            payload=payload if isinstance(payload, dict) else {},
            seq=int(data.get("id") or 0),
        )


@dataclass(slots=True, frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class TokenBudget:
    """Running context consumption for one stream.

    Only the agent loop that owns the stream calls ``record``; the totals
    never decrease.
    """

    limit: int
    threshold_fraction: float
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def threshold_tokens(self) -> int:
        return math.floor(self.limit * self.threshold_fraction)

    @property
    def exhausted(self) -> bool:
        return self.total_tokens >= self.threshold_tokens

    @property
    def percentage(self) -> float:
        if self.limit <= 0:
            return 100.0
        return round(self.total_tokens / self.limit * 100, 1)

    def record(self, usage: TokenUsage) -> None:
        if usage.input_tokens < 0 or usage.output_tokens < 0:
            raise ValueError(f"Token usage cannot be negative: {usage}")
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens

    def to_payload(self) -> dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
            "limit": self.limit,
            "percentage": self.percentage,
        }


@dataclass(slots=True)
class LLMToolCall:
    """Tool invocation returned by an LLM provider."""

    name: str
    arguments: dict[str, Any]
    call_id: str | None = None


@dataclass(slots=True, frozen=True)
class TextDelta:
    """Incremental text streamed by a provider during one model call."""

    text: str


@dataclass(slots=True)
class LLMResponse:
    """Result from one model round-trip."""

    content: str
    tool_calls: list[LLMToolCall] = field(default_factory=list)
    stop_reason: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw: dict[str, Any] | None = None


class ToolErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    TIMEOUT = "timeout"
    UNKNOWN_TOOL = "unknown_tool"
    EXECUTION_FAILED = "execution_failed"


@dataclass(slots=True)
class ToolResult:
    """Successful tool execution, already redacted and size-bounded."""

    tool_name: str
    params: Any
    content: Any
    truncated: bool = False
    redacted: bool = False

    @property
    def is_error(self) -> bool:
        return False

    def to_model_content(self) -> str:
        return json.dumps({"success": True, "data": self.content}, default=str)


@dataclass(slots=True)
class ToolError:
    """Tool-local failure; fed back to the model, never fatal to the stream."""

    tool_name: str
    kind: ToolErrorKind
    message: str
    params: Any = None
    redacted: bool = False

    @property
    def is_error(self) -> bool:
        return True

    @property
    def content(self) -> dict[str, Any]:
        return {"success": False, "error": self.message, "kind": self.kind.value}

    def to_model_content(self) -> str:
        return json.dumps(self.content)


ToolOutcome = ToolResult | ToolError


@dataclass(slots=True)
class ChatRequest:
    """One user turn submitted to the stream endpoint."""

    user_id: str
    agent_id: str
    message: str
    conversation_id: str | None = None
    correlation_id: str | None = None


@dataclass(slots=True)
class LoopOutcome:
    """What the agent loop hands back once it reaches ``Complete``."""

    text: str
    stop_reason: str
    iterations: int
    budget: TokenBudget
    tool_outcomes: list[ToolOutcome] = field(default_factory=list)
