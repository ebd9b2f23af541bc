"""HTTP client for the chat API, used by the timeline reconciler and tests."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import httpx

from job_assistant.errors import AgentError, ErrorKind
from job_assistant.models import Message, StreamEvent
from job_assistant.stream import parse_sse_lines

LOGGER = logging.getLogger(__name__)


class ChatClient:
    """Talks to ``/api/chat`` and the conversation history endpoints on behalf of one user."""

    def __init__(
        self,
        base_url: str,
        user_id: str,
        transport: httpx.AsyncBaseTransport | None = None,
        connect_timeout_seconds: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._user_id = user_id
        self._transport = transport
        # Reads stay open for the lifetime of a stream; the server bounds idleness.
        self._timeout = httpx.Timeout(connect_timeout_seconds, read=None)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={"X-User-Id": self._user_id},
            timeout=self._timeout,
            transport=self._transport,
        )

    async def send(
        self,
        message: str,
        *,
        agent_id: str,
        conversation_id: str | None = None,
        correlation_id: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        body: dict[str, Any] = {"message": message, "agentId": agent_id}
        if conversation_id:
            body["conversationId"] = conversation_id
        if correlation_id:
            body["correlationId"] = correlation_id

        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", "/api/chat", json=body, headers={"Accept": "text/event-stream"}
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise AgentError(_error_detail(response), _kind_for_status(response.status_code))
                    async for event in parse_sse_lines(response.aiter_lines()):
                        yield event
        except httpx.HTTPError as exc:
            LOGGER.warning("Chat stream transport failed: %s", exc)
            raise AgentError(f"Connection to the assistant failed: {exc}", ErrorKind.TRANSPORT_ERROR) from exc

    async def list_messages(self, conversation_id: str) -> list[Message]:
        data = await self._get_json(f"/api/conversations/{conversation_id}/messages")
        return [Message.from_dict(item) for item in data.get("messages", [])]

    async def list_conversations(self, agent_id: str | None = None) -> list[dict[str, Any]]:
        params = {"agentId": agent_id} if agent_id else None
        data = await self._get_json("/api/conversations", params=params)
        return list(data.get("conversations", []))

    async def list_activities(self, conversation_id: str, limit: int = 50) -> list[dict[str, Any]]:
        data = await self._get_json("/api/activities", params={"conversationId": conversation_id, "limit": limit})
        return list(data.get("activities", []))

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(path, params=params)
        except httpx.HTTPError as exc:
            raise AgentError(f"Request to {path} failed: {exc}", ErrorKind.TRANSPORT_ERROR) from exc
        if response.status_code >= 400:
            raise AgentError(_error_detail(response), _kind_for_status(response.status_code))
        return response.json()


def _kind_for_status(status_code: int) -> ErrorKind:
    if status_code < 500:
        return ErrorKind.INVALID_INPUT
    if status_code in (502, 503, 504):
        return ErrorKind.UPSTREAM_UNAVAILABLE
    return ErrorKind.INTERNAL


def _error_detail(response: httpx.Response) -> str:
    try:
        detail = response.json().get("detail")
    except ValueError:
        detail = None
    return str(detail or f"Request failed with HTTP {response.status_code}")

