"""Error taxonomy shared by the agent loop, the stream and the store."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Stream-level error categories reported in terminal ``error`` events."""

    INVALID_INPUT = "invalid_input"
    TIMEOUT = "timeout"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    TRANSPORT_ERROR = "transport_error"
    PERSISTENCE_ERROR = "persistence_error"
    INTERNAL = "internal"


class AgentError(Exception):
    """Base class for failures that end a stream."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def message(self) -> str:
        return str(self)


class UpstreamUnavailableError(AgentError):
    """The completion API could not be reached or answered with an error."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class ModelTimeoutError(AgentError):
    """A model round-trip exceeded its time bound."""

    kind = ErrorKind.TIMEOUT


class PersistenceError(AgentError):
    """A message or activity write failed."""

    kind = ErrorKind.PERSISTENCE_ERROR


class StreamCancelledError(AgentError):
    """The client went away; the stream must stop without reporting to it."""

    kind = ErrorKind.TRANSPORT_ERROR


class ChannelClosedError(StreamCancelledError):
    """Publishing on a channel that is closed or already terminated."""
