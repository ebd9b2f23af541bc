"""Tool contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class Tool(ABC):
    """Base class for all agent tools.

    ``side_effecting`` tools (browser control, email) must be safe for the
    caller to retry; the registry itself never retries. Tools that act on
    behalf of the user set ``needs_user_id`` and receive ``user_id`` as a
    keyword argument in addition to their validated input.
    """

    name: str
    description: str
    parameters_schema: dict[str, Any]
    side_effecting: bool = False
    needs_user_id: bool = False
    timeout_seconds: float | None = None

    @abstractmethod
    async def run(self, **kwargs: Any) -> Any:
        """Execute tool with validated arguments."""
