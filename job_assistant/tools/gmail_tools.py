"""Gmail tools for recruiter outreach and inbox checks."""

from __future__ import annotations

import base64
from email.message import EmailMessage
from typing import Any, Callable

import httpx

from job_assistant.tools.base import Tool

GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"

CredentialLookup = Callable[[str], str | None]


class GmailTool(Tool):
    """Base for tools that call the Gmail API with the user's stored credentials."""

    needs_user_id = True

    def __init__(self, credentials: CredentialLookup, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._credentials = credentials
        self._transport = transport

    def _client(self, user_id: str) -> httpx.AsyncClient:
        access_token = self._credentials(user_id)
        if not access_token:
            raise RuntimeError("Gmail is not connected for this user")
        return httpx.AsyncClient(
            base_url=GMAIL_BASE_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=15.0,
            transport=self._transport,
        )


class GmailListThreadsTool(GmailTool):
    name = "gmail_list_threads"
    description = "List recent Gmail threads for the user, optionally filtered by a Gmail search query."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": 'Gmail search query, e.g. "from:recruiter@example.com is:unread".',
            },
            "maxResults": {"type": "integer", "description": "Maximum threads to return (1-50)."},
        },
        "additionalProperties": False,
    }

    async def run(self, **kwargs: Any) -> dict[str, Any]:
        params: dict[str, Any] = {"maxResults": max(1, min(int(kwargs.get("maxResults") or 10), 50))}
        if kwargs.get("query"):
            params["q"] = kwargs["query"]
        async with self._client(kwargs["user_id"]) as client:
            resp = await client.get("/threads", params=params)
            resp.raise_for_status()
            data = resp.json()
        threads = [
            {"id": t.get("id"), "snippet": t.get("snippet", "")}
            for t in data.get("threads", [])
        ]
        return {"threads": threads, "total": len(threads)}


class GmailSendEmailTool(GmailTool):
    name = "gmail_send_email"
    description = "Send a plain text email from the user's connected Gmail account."
    side_effecting = True
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "to": {"type": "string", "description": "Recipient address(es), comma separated."},
            "subject": {"type": "string", "description": "Email subject line."},
            "body": {"type": "string", "description": "Email body as plain text."},
            "cc": {"type": "string", "description": "Optional CC recipients, comma separated."},
        },
        "required": ["to", "subject", "body"],
        "additionalProperties": False,
    }

    async def run(self, **kwargs: Any) -> dict[str, Any]:
        message = EmailMessage()
        message["To"] = kwargs["to"]
        message["Subject"] = kwargs["subject"]
        if kwargs.get("cc"):
            message["Cc"] = kwargs["cc"]
        message.set_content(kwargs["body"])
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")

        async with self._client(kwargs["user_id"]) as client:
            resp = await client.post("/messages/send", json={"raw": raw})
            resp.raise_for_status()
            data = resp.json()
        return {"id": data.get("id"), "threadId": data.get("threadId"), "message": f"Email sent to {kwargs['to']}"}


def gmail_tools(credentials: CredentialLookup) -> list[Tool]:
    return [GmailListThreadsTool(credentials), GmailSendEmailTool(credentials)]
