"""Registry for safe tool registration and execution."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Any

from pydantic import ValidationError, create_model

from job_assistant.db import Database
from job_assistant.models import ToolError, ToolErrorKind, ToolOutcome, ToolResult
from job_assistant.redaction import redact, sanitize
from job_assistant.tools.base import Tool

LOGGER = logging.getLogger(__name__)


class ToolRegistry:
    """Explicit registry of safe tools.

    ``execute`` never raises for tool-level problems: schema violations,
    timeouts and failures inside the tool come back as ``ToolError`` values.
    Everything that leaves the registry is redacted and size-bounded.
    """

    def __init__(
        self,
        db: Database,
        timeout_seconds: float = 30.0,
        max_result_bytes: int = 10_240,
        truncate_chars: int = 5_000,
    ) -> None:
        self._db = db
        self._timeout_seconds = timeout_seconds
        self._max_result_bytes = max_result_bytes
        self._truncate_chars = truncate_chars
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, tool_name: str) -> Tool | None:
        return self._tools.get(tool_name)

    def longest_timeout_seconds(self) -> float:
        return max((tool.timeout_seconds or self._timeout_seconds for tool in self._tools.values()), default=0.0)

    def list_tool_specs(self) -> list[dict[str, Any]]:
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters_schema,
            }
            for tool in self._tools.values()
        ]

    async def execute(self, user_id: str, tool_name: str, arguments: dict[str, Any]) -> ToolOutcome:
        safe_params, params_redacted = redact(arguments)
        tool = self._tools.get(tool_name)
        if tool is None:
            return ToolError(tool_name, ToolErrorKind.UNKNOWN_TOOL, f"Unknown tool: {tool_name}", safe_params)

        try:
            validated = _validate_json_schema(tool.parameters_schema, arguments)
        except ValueError as exc:
            error = ToolError(tool_name, ToolErrorKind.INVALID_INPUT, str(exc), safe_params, params_redacted)
            self._audit(user_id, tool_name, safe_params, error.content, succeeded=False)
            return error

        if tool.needs_user_id:
            validated["user_id"] = user_id
        timeout = tool.timeout_seconds or self._timeout_seconds
        LOGGER.info("Executing tool %s with %r", tool_name, safe_params)
        try:
            result = await asyncio.wait_for(tool.run(**validated), timeout=timeout)
        except asyncio.TimeoutError:
            message = f"Tool {tool_name} timed out after {timeout:g}s"
            error = ToolError(tool_name, ToolErrorKind.TIMEOUT, message, safe_params, params_redacted)
            LOGGER.warning("Tool %s timed out after %.1fs", tool_name, timeout)
            self._audit(user_id, tool_name, safe_params, error.content, succeeded=False)
            return error
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Tool %s failed", tool_name)
            message, _ = redact(f"Tool execution failed: {exc}")
            error = ToolError(tool_name, ToolErrorKind.EXECUTION_FAILED, message, safe_params, params_redacted)
            self._audit(user_id, tool_name, safe_params, error.content, succeeded=False)
            return error

        content, result_redacted, truncated = sanitize(result, self._max_result_bytes, self._truncate_chars)
        self._audit(user_id, tool_name, safe_params, content, succeeded=True)
        return ToolResult(
            tool_name=tool_name,
            params=safe_params,
            content=content,
            truncated=truncated,
            redacted=params_redacted or result_redacted,
        )

    def _audit(self, user_id: str, tool_name: str, tool_input: Any, tool_output: Any, succeeded: bool) -> None:
        try:
            self._db.log_tool_execution(user_id, tool_name, tool_input, tool_output, succeeded=succeeded)
        except sqlite3.Error:
            LOGGER.exception("Failed to record execution of tool %s", tool_name)


def _validate_json_schema(schema: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    props = schema.get("properties", {})
    required = set(schema.get("required", []))
    fields: dict[str, tuple[type[Any], Any]] = {}
    for name, config in props.items():
        typ = _python_type(config.get("type", "string"))
        if name in required:
            fields[name] = (typ, ...)
        else:
            fields[name] = (typ | None, None)

    model = create_model("ToolInputModel", **fields)
    try:
        value = model(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid input for tool: {exc}") from exc
    return value.model_dump(exclude_none=True)


def _python_type(schema_type: str) -> type[Any]:
    mapping: dict[str, type[Any]] = {
        "string": str,
        "integer": int,
        "number": float,
        "boolean": bool,
        "object": dict,
        "array": list,
    }
    return mapping.get(schema_type, str)
