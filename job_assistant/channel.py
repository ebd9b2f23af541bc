"""In-process channel carrying stream events from the agent loop to one consumer."""

from __future__ import annotations

import asyncio
from typing import Any

from job_assistant.errors import ChannelClosedError, ErrorKind
from job_assistant.models import EventType, StreamEvent


class EventChannel:
    """Ordered, append-only event queue with exactly one terminal event.

    The producer publishes; the consumer iterates. Once a ``complete`` or
    ``error`` event has been published nothing else is accepted, and once
    the consumer closes the channel every publish raises
    ``ChannelClosedError`` so the producer can stop early. If the producer
    stays silent for longer than ``idle_timeout`` the channel terminates the
    stream itself with a ``timeout`` error.
    """

    def __init__(self, idle_timeout: float | None = None) -> None:
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._idle_timeout = idle_timeout
        self._seq = 0
        self._terminated = False
        self._terminal_delivered = False
        self._closed = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event_type: EventType, payload: dict[str, Any] | None = None) -> StreamEvent:
        if self._closed:
            raise ChannelClosedError("Stream consumer has gone away")
        if self._terminated:
            raise ChannelClosedError(f"Stream already terminated; dropped {event_type.value} event")
        self._seq += 1
        event = StreamEvent(type=event_type, payload=payload or {}, seq=self._seq)
        if event.is_terminal:
            self._terminated = True
        self._queue.put_nowait(event)
        return event

    def close(self) -> None:
        """Stop the stream; wakes a consumer blocked waiting for the next event."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def __aiter__(self) -> EventChannel:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._terminal_delivered or self._closed:
            raise StopAsyncIteration
        try:
            event = await asyncio.wait_for(self._queue.get(), timeout=self._idle_timeout)
        except asyncio.TimeoutError:
            if self._closed or self._terminated:
                raise StopAsyncIteration from None
            event = self.publish(
                EventType.ERROR,
                {
                    "kind": ErrorKind.TIMEOUT.value,
                    "message": f"No progress for {self._idle_timeout:g}s; the response was abandoned.",
                },
            )
            self._queue.get_nowait()
        if event is None:
            raise StopAsyncIteration
        if event.is_terminal:
            self._terminal_delivered = True
        return event
