"""Tests for JobSearchTool."""

from __future__ import annotations

import httpx
import pytest

from job_assistant.tools.job_search_tool import JobSearchTool


def _posting(job_id: int, title: str, location: str, content: str = "") -> dict:
    return {
        "id": job_id,
        "title": title,
        "location": {"name": location},
        "absolute_url": f"https://boards.greenhouse.io/acme/jobs/{job_id}",
        "updated_at": "2026-01-01T00:00:00Z",
        "content": content,
    }


BOARDS = {
    "acme": [
        _posting(1, "Senior Software Engineer", "Austin, TX"),
        _posting(2, "Software Engineer, Payments", "Remote - US"),
        _posting(3, "Product Designer", "Austin, TX"),
        _posting(4, "Backend Developer", "New York, NY", content="Join us as a software engineer"),
    ],
    "globex": [_posting(10, "Software Engineer II", "Austin, TX")],
}


def _transport(requests: list[httpx.Request]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        board = request.url.path.split("/")[-2]
        if board not in BOARDS:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json={"jobs": BOARDS[board]})

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_search_filters_by_keywords_and_location():
    requests: list[httpx.Request] = []
    tool = JobSearchTool(["acme", "globex"], transport=_transport(requests))

    result = await tool.run(keywords="software engineer", location="Austin")

    assert [job["id"] for job in result["jobs"]] == [
        "greenhouse-acme-1",
        "greenhouse-acme-2",
        "greenhouse-globex-10",
    ]
    assert result["total"] == 3
    assert result["jobs"][0]["company"] == "Acme"
    assert result["jobs"][0]["source"] == "greenhouse"
    assert all(r.url.params["content"] == "true" for r in requests)


@pytest.mark.asyncio
async def test_remote_filter_and_limit():
    tool = JobSearchTool(["acme", "globex"], transport=_transport([]))

    remote_only = await tool.run(keywords="engineer", remote=True)
    limited = await tool.run(keywords="software engineer", limit=1)

    assert [job["title"] for job in remote_only["jobs"]] == ["Software Engineer, Payments"]
    assert limited["total"] == 1


@pytest.mark.asyncio
async def test_missing_board_is_skipped():
    tool = JobSearchTool(["does-not-exist", "globex"], transport=_transport([]))

    result = await tool.run(keywords="software engineer")

    assert [job["id"] for job in result["jobs"]] == ["greenhouse-globex-10"]


@pytest.mark.asyncio
async def test_unreachable_board_is_skipped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    tool = JobSearchTool(["acme"], transport=httpx.MockTransport(handler))

    result = await tool.run(keywords="engineer")

    assert result == {"jobs": [], "total": 0, "message": "Found 0 jobs on Greenhouse"}
