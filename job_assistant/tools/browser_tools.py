"""Browser control tools backed by the browser automation service."""

from __future__ import annotations

from typing import Any

import httpx

from job_assistant.tools.base import Tool

_SESSION_ID = {
    "type": "string",
    "description": "Browser session ID (one per conversation).",
}


class BrowserServiceClient:
    """Thin HTTP client for the browser automation service."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._api_key = api_key
        self._transport = transport

    async def post(self, path: str, payload: dict[str, Any], timeout: float = 30.0) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        async with httpx.AsyncClient(base_url=self._base_url, transport=self._transport) as client:
            resp = await client.post(path, json=payload, headers=headers, timeout=timeout)
            resp.raise_for_status()
            return resp.json()


class BrowserTool(Tool):
    """Forwards validated input to one browser service endpoint."""

    side_effecting = True
    endpoint: str

    def __init__(self, client: BrowserServiceClient) -> None:
        self._client = client

    async def run(self, **kwargs: Any) -> dict[str, Any]:
        return await self._client.post(self.endpoint, kwargs, timeout=self.timeout_seconds or 30.0)


class BrowserNavigateTool(BrowserTool):
    name = "browser_navigate"
    description = "Navigate the browser to a URL. Starts or continues a browser session."
    endpoint = "/api/browser/navigate"
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "sessionId": _SESSION_ID,
            "url": {"type": "string", "description": "URL to navigate to."},
        },
        "required": ["sessionId", "url"],
        "additionalProperties": False,
    }


class BrowserSnapshotTool(BrowserTool):
    name = "browser_snapshot"
    description = (
        "Get an accessibility tree snapshot of the current page, listing the interactive "
        "elements available."
    )
    side_effecting = False
    endpoint = "/api/browser/snapshot"
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {"sessionId": _SESSION_ID},
        "required": ["sessionId"],
        "additionalProperties": False,
    }


class BrowserClickTool(BrowserTool):
    name = "browser_click"
    description = "Click an element on the page using a CSS selector."
    endpoint = "/api/browser/click"
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "sessionId": _SESSION_ID,
            "selector": {"type": "string", "description": 'CSS selector, e.g. "button.submit".'},
        },
        "required": ["sessionId", "selector"],
        "additionalProperties": False,
    }


class BrowserTypeTool(BrowserTool):
    name = "browser_type"
    description = "Type text into an input field using a CSS selector."
    endpoint = "/api/browser/type"
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "sessionId": _SESSION_ID,
            "selector": {"type": "string", "description": 'CSS selector, e.g. "input[name=email]".'},
            "text": {"type": "string", "description": "Text to type into the field."},
            "submit": {"type": "boolean", "description": "Press Enter after typing."},
        },
        "required": ["sessionId", "selector", "text"],
        "additionalProperties": False,
    }


class BrowserCloseSessionTool(BrowserTool):
    name = "browser_close_session"
    description = "Close and clean up a browser session when done."
    endpoint = "/api/browser/close"
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {"sessionId": _SESSION_ID},
        "required": ["sessionId"],
        "additionalProperties": False,
    }


class ApplyToJobTool(BrowserTool):
    name = "apply_to_job"
    description = (
        "Submit a job application through browser automation using the user's stored "
        "profile and resume. Only call after the user confirmed the job."
    )
    endpoint = "/api/apply-to-job"
    needs_user_id = True
    timeout_seconds = 120.0
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "jobUrl": {"type": "string", "description": "URL of the job posting or application form."},
            "resumeId": {"type": "string", "description": "Resume to attach (defaults to the primary one)."},
        },
        "required": ["jobUrl"],
        "additionalProperties": False,
    }

    async def run(self, **kwargs: Any) -> dict[str, Any]:
        payload = {
            "userId": kwargs.pop("user_id"),
            "jobUrl": kwargs["jobUrl"],
            "resumeId": kwargs.get("resumeId"),
        }
        return await self._client.post(self.endpoint, payload, timeout=self.timeout_seconds or 120.0)


def browser_tools(client: BrowserServiceClient) -> list[Tool]:
    """All browser-service tools sharing one client."""
    return [
        BrowserNavigateTool(client),
        BrowserSnapshotTool(client),
        BrowserClickTool(client),
        BrowserTypeTool(client),
        BrowserCloseSessionTool(client),
        ApplyToJobTool(client),
    ]
