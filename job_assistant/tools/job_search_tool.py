"""Job search across public Greenhouse job boards."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from job_assistant.tools.base import Tool

LOGGER = logging.getLogger(__name__)

GREENHOUSE_BASE_URL = "https://boards-api.greenhouse.io/v1"


class JobSearchTool(Tool):
    """Search open roles on the configured Greenhouse boards."""

    name = "job_search"
    description = (
        "Search open job postings by keywords and location. Returns a list of jobs with "
        "title, company, location and a link to the posting."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "keywords": {
                "type": "string",
                "description": 'Job search keywords (e.g. "software engineer", "marketing manager").',
            },
            "location": {"type": "string", "description": "City, region or country, e.g. Austin."},
            "remote": {"type": "boolean", "description": "Only remote roles when true, only on-site when false."},
            "limit": {"type": "integer", "description": "Max jobs to return (default 10, max 25)."},
        },
        "required": ["keywords"],
        "additionalProperties": False,
    }

    def __init__(self, boards: list[str], transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._boards = boards
        self._transport = transport

    async def run(self, **kwargs: Any) -> dict[str, Any]:
        keywords = str(kwargs["keywords"]).strip()
        location = kwargs.get("location")
        remote = kwargs.get("remote")
        limit = min(int(kwargs.get("limit") or 10), 25)

        async with httpx.AsyncClient(
            base_url=GREENHOUSE_BASE_URL,
            timeout=10.0,
            transport=self._transport,
            headers={"Accept": "application/json"},
        ) as client:
            per_board = await asyncio.gather(*(self._search_board(client, board) for board in self._boards))

        jobs: list[dict[str, Any]] = []
        for board, postings in zip(self._boards, per_board):
            for posting in postings:
                job = _to_job(posting, board)
                if _matches(job, posting, keywords, location, remote):
                    jobs.append(job)

        jobs = jobs[:limit]
        return {"jobs": jobs, "total": len(jobs), "message": f"Found {len(jobs)} jobs on Greenhouse"}

    async def _search_board(self, client: httpx.AsyncClient, board: str) -> list[dict[str, Any]]:
        try:
            resp = await client.get(f"/boards/{board}/jobs", params={"content": "true"})
        except httpx.HTTPError as exc:
            LOGGER.warning("Greenhouse board %s unreachable: %s", board, exc)
            return []
        if resp.status_code == 404:
            LOGGER.info("Greenhouse board not found: %s", board)
            return []
        if resp.status_code != 200:
            LOGGER.warning("Greenhouse board %s returned HTTP %d", board, resp.status_code)
            return []
        return list(resp.json().get("jobs", []))


def _to_job(posting: dict[str, Any], board: str) -> dict[str, Any]:
    return {
        "id": f"greenhouse-{board}-{posting.get('id')}",
        "title": posting.get("title", ""),
        "company": posting.get("company_name") or board.replace("-", " ").title(),
        "location": (posting.get("location") or {}).get("name", ""),
        "url": posting.get("absolute_url", ""),
        "updated_at": posting.get("updated_at"),
        "source": "greenhouse",
    }


def _matches(
    job: dict[str, Any],
    posting: dict[str, Any],
    keywords: str,
    location: str | None,
    remote: bool | None,
) -> bool:
    haystack = f"{job['title']} {posting.get('content', '')}".lower()
    if keywords and keywords.lower() not in haystack:
        return False

    job_location = job["location"].lower()
    is_remote = "remote" in job_location
    if remote is not None and remote != is_remote:
        return False
    if location and remote is None:
        if location.lower() not in job_location and not is_remote:
            return False
    return True
