import asyncio

import pytest

from job_assistant.channel import EventChannel
from job_assistant.errors import ChannelClosedError
from job_assistant.models import EventType


@pytest.mark.asyncio
async def test_events_are_delivered_in_order_until_terminal():
    channel = EventChannel()
    channel.publish(EventType.STATUS, {"content": "connecting"})
    channel.publish(EventType.CHUNK, {"content": "a"})
    channel.publish(EventType.CHUNK, {"content": "b"})
    channel.publish(EventType.COMPLETE, {"messageId": "m1"})

    events = [event async for event in channel]

    assert [e.type for e in events] == [EventType.STATUS, EventType.CHUNK, EventType.CHUNK, EventType.COMPLETE]
    assert [e.seq for e in events] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_nothing_is_accepted_after_the_terminal_event():
    channel = EventChannel()
    channel.publish(EventType.ERROR, {"kind": "internal", "message": "boom"})

    with pytest.raises(ChannelClosedError):
        channel.publish(EventType.COMPLETE, {})
    with pytest.raises(ChannelClosedError):
        channel.publish(EventType.CHUNK, {"content": "late"})

    events = [event async for event in channel]
    assert [e.type for e in events] == [EventType.ERROR]


@pytest.mark.asyncio
async def test_idle_producer_ends_stream_with_timeout_error():
    channel = EventChannel(idle_timeout=0.05)
    channel.publish(EventType.STATUS, {"content": "connecting"})

    events = [event async for event in channel]

    assert [e.type for e in events] == [EventType.STATUS, EventType.ERROR]
    assert events[-1].payload["kind"] == "timeout"
    assert channel.terminated


@pytest.mark.asyncio
async def test_close_wakes_a_waiting_consumer():
    channel = EventChannel()

    async def consume():
        return [event async for event in channel]

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.01)
    channel.close()

    assert await asyncio.wait_for(task, timeout=1) == []
    with pytest.raises(ChannelClosedError):
        channel.publish(EventType.CHUNK, {"content": "x"})
