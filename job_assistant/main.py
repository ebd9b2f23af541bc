"""Application entrypoint."""

from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI

from job_assistant.config import Settings, greenhouse_boards, load_settings
from job_assistant.db import Database
from job_assistant.llm.anthropic import AnthropicProvider
from job_assistant.prompts import load_instructions
from job_assistant.server import create_app
from job_assistant.stream import StreamMultiplexer
from job_assistant.tools.browser_tools import BrowserServiceClient, browser_tools
from job_assistant.tools.company_research_tool import CompanyResearchTool
from job_assistant.tools.gmail_tools import gmail_tools
from job_assistant.tools.job_search_tool import JobSearchTool
from job_assistant.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)


def build_registry(settings: Settings, db: Database) -> ToolRegistry:
    tools = ToolRegistry(
        db,
        timeout_seconds=settings.tool_timeout_seconds,
        max_result_bytes=settings.tool_result_max_bytes,
        truncate_chars=settings.tool_result_truncate_chars,
    )
    tools.register(JobSearchTool(greenhouse_boards(settings)))
    tools.register(CompanyResearchTool())
    browser = BrowserServiceClient(settings.browser_service_url, settings.browser_service_api_key)
    for tool in browser_tools(browser):
        tools.register(tool)
    for tool in gmail_tools(db.get_gmail_access_token):
        tools.register(tool)
    return tools


def build_app(settings: Settings) -> FastAPI:
    """Initialize app layers and return the HTTP application."""

    db = Database(settings.database_path)
    db.initialize()

    registry = build_registry(settings, db)
    longest_tool = registry.longest_timeout_seconds()
    if settings.stream_idle_timeout_seconds <= longest_tool:
        LOGGER.warning(
            "STREAM_IDLE_TIMEOUT_SECONDS=%.0f does not exceed the longest tool timeout (%.0fs); "
            "slow tools will end streams with a timeout error",
            settings.stream_idle_timeout_seconds,
            longest_tool,
        )

    multiplexer = StreamMultiplexer(
        db=db,
        llm=AnthropicProvider(settings),
        tool_registry=registry,
        settings=settings,
        system_prompt=load_instructions(settings.agent_instructions_path),
    )
    return create_app(db, multiplexer)


def main() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    app = build_app(settings)
    LOGGER.info("Job assistant listening on http://%s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
