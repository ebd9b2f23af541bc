import asyncio
import json
from typing import Any

import pytest

from fakes import FakeJobSearchTool, LoginTool
from job_assistant.db import Database
from job_assistant.models import ToolError, ToolErrorKind, ToolResult
from job_assistant.redaction import REDACTION_MARKER, TRUNCATION_MARKER
from job_assistant.tools.base import Tool
from job_assistant.tools.registry import ToolRegistry


class SlowTool(Tool):
    name = "slow"
    description = "Sleeps."
    parameters_schema: dict[str, Any] = {"type": "object", "properties": {}}
    timeout_seconds = 0.05

    async def run(self, **kwargs: Any) -> str:
        await asyncio.sleep(1)
        return "late"


class BrokenTool(Tool):
    name = "broken"
    description = "Always fails."
    parameters_schema: dict[str, Any] = {"type": "object", "properties": {}}

    async def run(self, **kwargs: Any) -> str:
        raise RuntimeError("upstream exploded")


class WhoAmITool(Tool):
    name = "whoami"
    description = "Returns the caller."
    parameters_schema: dict[str, Any] = {"type": "object", "properties": {}}
    needs_user_id = True

    async def run(self, **kwargs: Any) -> dict[str, Any]:
        return {"user": kwargs["user_id"]}


class PageTool(Tool):
    name = "page"
    description = "Returns a large page."
    parameters_schema: dict[str, Any] = {"type": "object", "properties": {}}

    async def run(self, **kwargs: Any) -> dict[str, Any]:
        return {"html": "x" * 20_000}


def _registry(tmp_path, *tools) -> tuple[Database, ToolRegistry]:
    db = Database(tmp_path / "assistant.db")
    db.initialize()
    registry = ToolRegistry(db)
    for tool in tools:
        registry.register(tool)
    return db, registry


@pytest.mark.asyncio
async def test_tool_registry_validates_and_executes(tmp_path):
    db, registry = _registry(tmp_path, FakeJobSearchTool())

    outcome = await registry.execute("user-1", "job_search", {"keywords": "engineer", "location": "Austin"})

    assert isinstance(outcome, ToolResult)
    assert outcome.content["total"] == 5
    assert json.loads(outcome.to_model_content())["success"] is True
    assert db.list_tool_executions("user-1")[0]["tool_name"] == "job_search"


@pytest.mark.asyncio
async def test_tool_registry_rejects_invalid_input(tmp_path):
    tool = FakeJobSearchTool()
    _, registry = _registry(tmp_path, tool)

    outcome = await registry.execute("user-1", "job_search", {"location": "Austin"})

    assert isinstance(outcome, ToolError)
    assert outcome.kind is ToolErrorKind.INVALID_INPUT
    assert tool.calls == []


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_not_raised(tmp_path):
    _, registry = _registry(tmp_path)

    outcome = await registry.execute("user-1", "launch_rocket", {})

    assert isinstance(outcome, ToolError)
    assert outcome.kind is ToolErrorKind.UNKNOWN_TOOL


@pytest.mark.asyncio
async def test_slow_tool_times_out(tmp_path):
    _, registry = _registry(tmp_path, SlowTool())

    outcome = await registry.execute("user-1", "slow", {})

    assert isinstance(outcome, ToolError)
    assert outcome.kind is ToolErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_tool_exception_becomes_execution_failed(tmp_path):
    db, registry = _registry(tmp_path, BrokenTool())

    outcome = await registry.execute("user-1", "broken", {})

    assert isinstance(outcome, ToolError)
    assert outcome.kind is ToolErrorKind.EXECUTION_FAILED
    assert "upstream exploded" in outcome.message
    assert db.list_tool_executions("user-1")[0]["succeeded"] == 0


@pytest.mark.asyncio
async def test_sensitive_params_are_redacted_as_a_whole(tmp_path):
    db, registry = _registry(tmp_path, LoginTool())

    outcome = await registry.execute("user-1", "site_login", {"username": "sam", "password": "abc123"})

    assert isinstance(outcome, ToolResult)
    assert outcome.params == REDACTION_MARKER
    assert outcome.redacted is True
    logged = db.list_tool_executions("user-1")[0]
    assert "abc123" not in logged["input_json"]


@pytest.mark.asyncio
async def test_large_results_are_truncated(tmp_path):
    _, registry = _registry(tmp_path, PageTool())

    outcome = await registry.execute("user-1", "page", {})

    assert outcome.truncated is True
    assert outcome.content.endswith(TRUNCATION_MARKER)


@pytest.mark.asyncio
async def test_user_id_is_injected_for_user_scoped_tools(tmp_path):
    _, registry = _registry(tmp_path, WhoAmITool())

    outcome = await registry.execute("user-42", "whoami", {})

    assert outcome.content == {"user": "user-42"}


def test_tool_specs_use_messages_api_shape(tmp_path):
    _, registry = _registry(tmp_path, FakeJobSearchTool())

    specs = registry.list_tool_specs()

    assert specs == [
        {
            "name": "job_search",
            "description": "Search jobs.",
            "input_schema": FakeJobSearchTool.parameters_schema,
        }
    ]
