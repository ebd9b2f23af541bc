"""HTTP surface: the streaming chat endpoint and conversation history."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from job_assistant.db import Database
from job_assistant.models import ChatRequest
from job_assistant.stream import StreamMultiplexer, sse_frames

LOGGER = logging.getLogger(__name__)

MAX_ACTIVITY_LIMIT = 100

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ChatBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = ""
    agent_id: str = Field(alias="agentId")
    conversation_id: str | None = Field(default=None, alias="conversationId")
    correlation_id: str | None = Field(default=None, alias="correlationId")


def _require_user(x_user_id: str | None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()


def create_app(db: Database, multiplexer: StreamMultiplexer) -> FastAPI:
    app = FastAPI(
        title="Job Assistant",
        description="Streaming job-search agent with tool use.",
        version="0.1.0",
    )

    @app.post("/api/chat")
    async def chat(body: ChatBody, request: Request, x_user_id: str | None = Header(default=None)):
        user_id = _require_user(x_user_id)
        if not body.message.strip():
            raise HTTPException(status_code=400, detail="Message is required")
        if not body.agent_id.strip():
            raise HTTPException(status_code=400, detail="agentId is required")

        chat_request = ChatRequest(
            user_id=user_id,
            agent_id=body.agent_id,
            message=body.message.strip(),
            conversation_id=body.conversation_id,
            correlation_id=body.correlation_id,
        )
        events = multiplexer.stream(chat_request, is_disconnected=request.is_disconnected)
        return StreamingResponse(sse_frames(events), media_type="text/event-stream", headers=_SSE_HEADERS)

    @app.get("/api/conversations")
    async def conversations(agentId: str | None = None, x_user_id: str | None = Header(default=None)):  # noqa: N803
        user_id = _require_user(x_user_id)
        return {"conversations": [c.to_dict() for c in db.list_conversations(user_id, agentId)]}

    @app.get("/api/conversations/{conversation_id}/messages")
    async def messages(conversation_id: str, x_user_id: str | None = Header(default=None)):
        user_id = _require_user(x_user_id)
        conversation = db.get_conversation(conversation_id)
        if conversation is None or conversation.user_id != user_id:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return {"messages": [m.to_dict() for m in db.list_messages(conversation_id)]}

    @app.get("/api/activities")
    async def activities(
        conversationId: str | None = None,  # noqa: N803
        limit: int = 50,
        x_user_id: str | None = Header(default=None),
    ):
        user_id = _require_user(x_user_id)
        if not conversationId:
            raise HTTPException(status_code=400, detail="conversationId is required")
        if limit < 1 or limit > MAX_ACTIVITY_LIMIT:
            raise HTTPException(status_code=400, detail=f"limit must be between 1 and {MAX_ACTIVITY_LIMIT}")
        conversation = db.get_conversation(conversationId)
        if conversation is None or conversation.user_id != user_id:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return {"activities": [a.to_dict() for a in db.list_activities(conversationId, limit)]}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "job-assistant"}

    return app
