"""Client-side reconciliation of streamed events with the persisted conversation.

While a turn streams, the user sees the persisted history followed by live
state: the partial response text and one entry per activity. When the turn
completes, live state is discarded *before* the persisted history is
refetched, so the final response is rendered from storage exactly once.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterable, AsyncIterator, Protocol

from job_assistant.errors import AgentError
from job_assistant.models import Activity, ActivityType, EventType, Message, StreamEvent, utc_now

LOGGER = logging.getLogger(__name__)

STREAMING_ENTRY_ID = "streaming-response"
PENDING_USER_ENTRY_ID = "pending-user-message"


class MessageSource(Protocol):
    async def list_messages(self, conversation_id: str) -> list[Message]: ...


class TurnSender(Protocol):
    def send(
        self,
        message: str,
        *,
        agent_id: str,
        conversation_id: str | None = None,
        correlation_id: str | None = None,
    ) -> AsyncIterator[StreamEvent]: ...


@dataclass(slots=True)
class ConversationSession:
    """Everything the UI holds for the conversation currently on screen."""

    agent_id: str
    conversation_id: str | None = None
    messages: list[Message] = field(default_factory=list)
    streaming_text: str = ""
    stream_started_at: datetime | None = None
    pending_user_text: str | None = None
    pending_user_at: datetime | None = None
    activities: dict[str, Activity] = field(default_factory=dict)
    context_usage: dict[str, Any] | None = None
    error: str | None = None
    is_streaming: bool = False


@dataclass(slots=True, frozen=True)
class TimelineEntry:
    kind: str  # message | pending_user | streaming | activity | error
    id: str
    timestamp: datetime
    role: str | None = None
    content: str | None = None
    activity: Activity | None = None


class TimelineReconciler:
    def __init__(self, source: MessageSource, agent_id: str, conversation_id: str | None = None) -> None:
        self._source = source
        self.session = ConversationSession(agent_id=agent_id, conversation_id=conversation_id)
        self._generation = 0
        self._terminal_seen = False

    async def load(self) -> None:
        """Fetch the persisted history for the current conversation."""
        if self.session.conversation_id is None:
            self.session.messages = []
            return
        self.session.messages = await self._source.list_messages(self.session.conversation_id)

    async def switch_conversation(self, agent_id: str, conversation_id: str | None = None) -> None:
        """Reset every facet of the session; events from an older stream are ignored afterwards."""
        self._generation += 1
        self.session = ConversationSession(agent_id=agent_id, conversation_id=conversation_id)
        LOGGER.debug("Switched to agent %s conversation %s", agent_id, conversation_id)
        await self.load()

    def begin_turn(self, text: str) -> None:
        session = self.session
        session.error = None
        session.streaming_text = ""
        session.stream_started_at = None
        session.activities.clear()
        session.pending_user_text = text
        session.pending_user_at = utc_now()
        session.is_streaming = True
        self._terminal_seen = False

    async def apply(self, event: StreamEvent) -> None:
        session = self.session
        payload = event.payload
        if event.type is EventType.CHUNK:
            if session.stream_started_at is None:
                session.stream_started_at = utc_now()
            session.streaming_text += str(payload.get("content", ""))
        elif event.type is EventType.STATUS:
            self._upsert(_activity_from_payload(ActivityType.STATUS, session.agent_id, payload, event.seq))
        elif event.type is EventType.CONTEXT_USAGE:
            session.context_usage = payload
            self._upsert(_activity_from_payload(ActivityType.CONTEXT_USAGE, session.agent_id, payload, event.seq))
        elif event.type in (EventType.TOOL_START, EventType.TOOL_RESULT):
            self._upsert(_activity_from_payload(ActivityType.TOOL_CALL, session.agent_id, payload, event.seq))
        elif event.type is EventType.COMPLETE:
            self._terminal_seen = True
            await self.handle_complete(payload)
        elif event.type is EventType.ERROR:
            self._terminal_seen = True
            self.handle_error(str(payload.get("message") or "Something went wrong."))

    async def handle_complete(self, payload: dict[str, Any]) -> None:
        session = self.session
        generation = self._generation
        unsaved_text = session.streaming_text if not payload.get("persisted", True) else ""

        # Live state goes first so the refetched response is never shown twice.
        session.streaming_text = ""
        session.stream_started_at = None
        session.activities.clear()
        session.pending_user_text = None
        session.pending_user_at = None
        session.is_streaming = False

        conversation_id = payload.get("conversationId") or session.conversation_id
        if not conversation_id:
            return
        session.conversation_id = conversation_id
        try:
            messages = await self._source.list_messages(conversation_id)
        except AgentError as exc:
            LOGGER.warning("Could not refresh conversation %s: %s", conversation_id, exc)
            session.error = "The response finished but the conversation could not be reloaded."
            return
        if generation != self._generation:
            return
        session.messages = messages
        if unsaved_text:
            session.messages.append(
                Message(
                    id=f"unsaved-{utc_now().timestamp():.0f}",
                    conversation_id=conversation_id,
                    agent_id=session.agent_id,
                    role="assistant",
                    content=unsaved_text,
                    created_at=utc_now(),
                )
            )

    def handle_error(self, message: str) -> None:
        session = self.session
        session.streaming_text = ""
        session.stream_started_at = None
        session.activities.clear()
        session.is_streaming = False
        session.error = message

    async def consume(self, events: AsyncIterable[StreamEvent]) -> None:
        generation = self._generation
        async for event in events:
            if generation != self._generation:
                LOGGER.debug("Dropping %s event from a stream for a previous conversation", event.type.value)
                break
            await self.apply(event)
            if self._terminal_seen:
                break
        if generation == self._generation and not self._terminal_seen and self.session.is_streaming:
            self.handle_error("The connection closed before the response finished.")

    async def run_turn(self, client: TurnSender, text: str, correlation_id: str | None = None) -> None:
        """Send one user message and reconcile its stream into the session."""
        self.begin_turn(text)
        events = client.send(
            text,
            agent_id=self.session.agent_id,
            conversation_id=self.session.conversation_id,
            correlation_id=correlation_id,
        )
        try:
            await self.consume(events)
        except AgentError as exc:
            LOGGER.warning("Turn failed: %s", exc)
            self.handle_error(exc.message)
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    def timeline(self) -> list[TimelineEntry]:
        session = self.session
        entries = [
            TimelineEntry(kind="message", id=m.id, timestamp=m.created_at, role=m.role, content=m.content)
            for m in sorted(session.messages, key=lambda m: m.created_at)
        ]

        live: list[TimelineEntry] = []
        if session.pending_user_text is not None and session.pending_user_at is not None:
            live.append(
                TimelineEntry(
                    kind="pending_user",
                    id=PENDING_USER_ENTRY_ID,
                    timestamp=session.pending_user_at,
                    role="user",
                    content=session.pending_user_text,
                )
            )
        for activity in session.activities.values():
            live.append(TimelineEntry(kind="activity", id=activity.id, timestamp=activity.started_at, activity=activity))
        if session.streaming_text and session.stream_started_at is not None:
            live.append(
                TimelineEntry(
                    kind="streaming",
                    id=STREAMING_ENTRY_ID,
                    timestamp=session.stream_started_at,
                    role="assistant",
                    content=session.streaming_text,
                )
            )
        entries.extend(sorted(live, key=lambda entry: entry.timestamp))

        if session.error:
            entries.append(TimelineEntry(kind="error", id="stream-error", timestamp=utc_now(), content=session.error))
        return entries

    def tool_activities(self) -> list[Activity]:
        return sorted(
            (a for a in self.session.activities.values() if a.type is ActivityType.TOOL_CALL),
            key=lambda a: a.started_at,
        )

    def _upsert(self, incoming: Activity) -> None:
        activities = self.session.activities
        existing = activities.get(incoming.id)
        if existing is None:
            activities[incoming.id] = incoming
            return
        updates = {
            f.name: getattr(incoming, f.name)
            for f in dataclasses.fields(Activity)
            if f.name not in ("id", "started_at") and getattr(incoming, f.name) is not None
        }
        activities[incoming.id] = dataclasses.replace(existing, **updates)


def _activity_from_payload(activity_type: ActivityType, agent_id: str, payload: dict[str, Any], seq: int) -> Activity:
    started_at = _parse_time(payload.get("startedAt")) or utc_now()
    return Activity(
        id=str(payload.get("activityId") or f"{activity_type.value}-{seq}"),
        type=activity_type,
        agent_id=agent_id,
        started_at=started_at,
        tool_name=payload.get("toolName"),
        params=payload.get("params"),
        result=payload.get("result"),
        success=payload.get("success"),
        content=payload.get("content"),
        completed_at=_parse_time(payload.get("completedAt")),
        batch_id=payload.get("batchId"),
        is_redacted=bool(payload.get("redacted", False)),
    )


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
