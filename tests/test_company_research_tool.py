"""Tests for CompanyResearchTool."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from job_assistant.tools.company_research_tool import CompanyResearchTool

# Patch path must match the import in the module under test
_DDGS_PATH = "job_assistant.tools.company_research_tool.DDGS"


def _ddg_results(*items: tuple[str, str, str]) -> list[dict]:
    return [{"title": t, "href": h, "body": b} for t, h, b in items]


@pytest.mark.asyncio
async def test_run_returns_structured_results():
    mock_ddgs = MagicMock()
    mock_ddgs.text = MagicMock(
        return_value=_ddg_results(
            ("Stripe careers", "https://stripe.com/jobs", "Work at Stripe"),
            ("Stripe culture", "https://example.com/stripe", "What it's like"),
        )
    )

    with patch(_DDGS_PATH, return_value=mock_ddgs):
        result = await CompanyResearchTool().run(company="Stripe", topic="culture")

    assert result["company"] == "Stripe"
    assert result["query"] == "Stripe culture"
    assert result["results"][0] == {
        "title": "Stripe careers",
        "url": "https://stripe.com/jobs",
        "snippet": "Work at Stripe",
    }
    mock_ddgs.text.assert_called_once_with("Stripe culture", max_results=5, backend="duckduckgo")


@pytest.mark.asyncio
async def test_run_handles_no_results():
    mock_ddgs = MagicMock()
    mock_ddgs.text = MagicMock(return_value=[])

    with patch(_DDGS_PATH, return_value=mock_ddgs):
        result = await CompanyResearchTool().run(company="Nobody Inc")

    assert result["results"] == []
    assert result["query"] == "Nobody Inc company overview careers"


@pytest.mark.asyncio
async def test_run_caps_limit_at_10():
    mock_ddgs = MagicMock()
    mock_ddgs.text = MagicMock(return_value=[])

    with patch(_DDGS_PATH, return_value=mock_ddgs):
        await CompanyResearchTool().run(company="Figma", limit=99)

    _, kwargs = mock_ddgs.text.call_args
    assert kwargs["max_results"] == 10
