"""Company research backed by DuckDuckGo."""

from __future__ import annotations

import asyncio
from typing import Any

from ddgs import DDGS

from job_assistant.tools.base import Tool


class CompanyResearchTool(Tool):
    """Look up a company on the web (no API key required)."""

    name = "company_research"
    description = (
        "Research a company before applying: overview, culture, recent news or interview "
        "process. Returns web results with title, link and snippet."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "company": {"type": "string", "description": "Company name."},
            "topic": {
                "type": "string",
                "description": 'What to research, e.g. "culture", "interview process", "funding".',
            },
            "limit": {
                "type": "integer",
                "description": "Max results to return (default 5, max 10).",
            },
        },
        "required": ["company"],
        "additionalProperties": False,
    }

    async def run(self, **kwargs: Any) -> dict[str, Any]:
        company = str(kwargs["company"]).strip()
        topic = str(kwargs.get("topic") or "company overview careers").strip()
        limit = min(int(kwargs.get("limit") or 5), 10)
        query = f"{company} {topic}"

        results = await asyncio.to_thread(
            lambda: DDGS().text(query, max_results=limit, backend="duckduckgo")
        )

        return {
            "company": company,
            "query": query,
            "results": [
                {"title": r["title"], "url": r["href"], "snippet": r["body"]}
                for r in results or []
            ],
        }
