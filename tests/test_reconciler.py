import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from job_assistant.errors import AgentError, ErrorKind
from job_assistant.models import EventType, Message, StreamEvent
from job_assistant.reconciler import TimelineReconciler

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _message(message_id, role, content, offset):
    return Message(
        id=message_id,
        conversation_id="c1",
        agent_id="job-agent",
        role=role,
        content=content,
        created_at=T0 + timedelta(seconds=offset),
    )


class FakeSource:
    def __init__(self, messages=None):
        self.messages = list(messages or [])
        self.calls = []

    async def list_messages(self, conversation_id):
        self.calls.append(conversation_id)
        return list(self.messages)


class FakeClient:
    def __init__(self, events, fail_with=None):
        self.events = events
        self.fail_with = fail_with
        self.sent = []

    async def send(self, message, *, agent_id, conversation_id=None, correlation_id=None):
        self.sent.append((message, agent_id, conversation_id))
        for event in self.events:
            yield event
        if self.fail_with:
            raise self.fail_with


def _event(seq, event_type, **payload):
    return StreamEvent(type=event_type, payload=payload, seq=seq)


def _tool_events():
    started = (T0 + timedelta(seconds=10)).isoformat()
    return [
        _event(1, EventType.STATUS, activityId="status-1", content="Connecting to the assistant...", startedAt=started),
        _event(
            2,
            EventType.TOOL_START,
            activityId="toolu_1",
            toolName="job_search",
            params={"keywords": "software engineer"},
            startedAt=started,
        ),
        _event(
            3,
            EventType.TOOL_RESULT,
            activityId="toolu_1",
            toolName="job_search",
            params={"keywords": "software engineer"},
            result={"total": 5},
            success=True,
            startedAt=started,
            completedAt=(T0 + timedelta(seconds=11)).isoformat(),
        ),
        _event(4, EventType.CONTEXT_USAGE, activityId="context-usage-s1", totalTokens=1_200, percentage=0.6),
        _event(5, EventType.CONTEXT_USAGE, activityId="context-usage-s1", totalTokens=2_400, percentage=1.2),
        _event(6, EventType.CHUNK, content="Here are "),
        _event(7, EventType.CHUNK, content="5 roles."),
    ]


@pytest.mark.asyncio
async def test_tool_updates_merge_into_one_activity():
    reconciler = TimelineReconciler(FakeSource(), "job-agent", "c1")
    reconciler.begin_turn("find jobs")

    for event in _tool_events():
        await reconciler.apply(event)

    tools = reconciler.tool_activities()
    assert len(tools) == 1
    assert tools[0].result == {"total": 5}
    assert tools[0].success is True
    assert tools[0].params == {"keywords": "software engineer"}

    entries = reconciler.timeline()
    assert [e.id for e in entries].count("toolu_1") == 1
    assert [e.id for e in entries].count("context-usage-s1") == 1
    assert reconciler.session.context_usage["totalTokens"] == 2_400
    assert entries[-1].kind == "streaming"
    assert entries[-1].content == "Here are 5 roles."


@pytest.mark.asyncio
async def test_complete_clears_live_state_and_renders_persisted_only():
    persisted = [
        _message("m1", "user", "find jobs", 0),
        _message("m2", "assistant", "Here are 5 roles.", 20),
    ]
    source = FakeSource(persisted)
    reconciler = TimelineReconciler(source, "job-agent")
    events = _tool_events() + [
        _event(8, EventType.COMPLETE, conversationId="c1", messageId="m2", persisted=True, stopReason="end_turn")
    ]

    await reconciler.run_turn(FakeClient(events), "find jobs")

    session = reconciler.session
    assert session.streaming_text == ""
    assert session.activities == {}
    assert session.is_streaming is False
    assert session.conversation_id == "c1"
    assert source.calls == ["c1"]
    entries = reconciler.timeline()
    assert [e.id for e in entries] == ["m1", "m2"]
    assert [e.content for e in entries].count("Here are 5 roles.") == 1


@pytest.mark.asyncio
async def test_unsaved_response_is_kept_locally():
    source = FakeSource([_message("m1", "user", "hi", 0)])
    reconciler = TimelineReconciler(source, "job-agent", "c1")
    events = [
        _event(1, EventType.CHUNK, content="Answer"),
        _event(2, EventType.COMPLETE, conversationId="c1", messageId=None, persisted=False),
    ]

    await reconciler.run_turn(FakeClient(events), "hi")

    entries = reconciler.timeline()
    assert [(e.role, e.content) for e in entries] == [("user", "hi"), ("assistant", "Answer")]


@pytest.mark.asyncio
async def test_error_replaces_missing_response():
    reconciler = TimelineReconciler(FakeSource(), "job-agent", "c1")
    events = [
        _event(1, EventType.CHUNK, content="partial"),
        _event(2, EventType.ERROR, kind="upstream_unavailable", message="The model is unavailable."),
    ]

    await reconciler.run_turn(FakeClient(events), "hi")

    entries = reconciler.timeline()
    assert [e.kind for e in entries] == ["pending_user", "error"]
    assert entries[-1].content == "The model is unavailable."
    assert reconciler.session.streaming_text == ""


@pytest.mark.asyncio
async def test_stream_ending_without_terminal_event_shows_error():
    reconciler = TimelineReconciler(FakeSource(), "job-agent", "c1")

    await reconciler.run_turn(FakeClient([_event(1, EventType.CHUNK, content="cut")]), "hi")

    assert reconciler.session.error == "The connection closed before the response finished."
    assert reconciler.session.is_streaming is False


@pytest.mark.asyncio
async def test_transport_failure_shows_error():
    failure = AgentError("Connection to the assistant failed", ErrorKind.TRANSPORT_ERROR)
    reconciler = TimelineReconciler(FakeSource(), "job-agent", "c1")

    await reconciler.run_turn(FakeClient([], fail_with=failure), "hi")

    assert reconciler.session.error == "Connection to the assistant failed"


@pytest.mark.asyncio
async def test_switching_conversation_resets_everything():
    source = FakeSource()
    source.list_messages = AsyncMock(return_value=[_message("other-1", "user", "other chat", 0)])
    reconciler = TimelineReconciler(source, "job-agent", "c1")
    reconciler.begin_turn("find jobs")
    for event in _tool_events():
        await reconciler.apply(event)

    await reconciler.switch_conversation("recruiter-agent", "c2")

    session = reconciler.session
    assert session.agent_id == "recruiter-agent"
    assert session.activities == {}
    assert session.streaming_text == ""
    assert session.context_usage is None
    assert session.pending_user_text is None
    assert [e.id for e in reconciler.timeline()] == ["other-1"]
    source.list_messages.assert_awaited_once_with("c2")


class GatedClient:
    """Sends the first events at once and holds the rest until released."""

    def __init__(self, first, rest):
        self.first = first
        self.rest = rest
        self.first_sent = asyncio.Event()
        self.release = asyncio.Event()
        self.closed = False

    async def send(self, message, *, agent_id, conversation_id=None, correlation_id=None):
        try:
            for event in self.first:
                yield event
            self.first_sent.set()
            await self.release.wait()
            for event in self.rest:
                yield event
        finally:
            self.closed = True


@pytest.mark.asyncio
async def test_events_from_old_stream_are_dropped_after_switch():
    source = FakeSource()
    source.list_messages = AsyncMock(return_value=[_message("other-1", "user", "other chat", 0)])
    reconciler = TimelineReconciler(source, "job-agent", "c1")
    started = (T0 + timedelta(seconds=10)).isoformat()
    client = GatedClient(
        first=[_event(1, EventType.CHUNK, content="Here are ")],
        rest=[
            _event(2, EventType.CHUNK, content="5 roles."),
            _event(3, EventType.TOOL_START, activityId="toolu_1", toolName="job_search", startedAt=started),
            _event(4, EventType.COMPLETE, conversationId="c1", messageId="m1", persisted=True),
        ],
    )

    turn = asyncio.create_task(reconciler.run_turn(client, "find jobs"))
    await asyncio.wait_for(client.first_sent.wait(), timeout=1)
    await reconciler.switch_conversation("job-agent", "c2")
    client.release.set()
    await asyncio.wait_for(turn, timeout=1)

    session = reconciler.session
    assert session.conversation_id == "c2"
    assert session.streaming_text == ""
    assert session.activities == {}
    assert session.error is None
    assert session.is_streaming is False
    assert [e.id for e in reconciler.timeline()] == ["other-1"]
    source.list_messages.assert_awaited_once_with("c2")
    assert client.closed is True
