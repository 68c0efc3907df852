"""Tool registry: the gateway the stream calls into for tool requests."""

from __future__ import annotations

import json
import logging
from typing import Any

from oi.errors import ToolError
from oi.tools.base import Tool
from oi.types import ToolResult

_logger = logging.getLogger(__name__)


def _smart_truncate(text: str, max_length: int) -> str:
    """Keep a quarter of the budget from the head and the rest from the tail."""
    if len(text) <= max_length:
        return text
    head = max_length // 4
    omitted = len(text) - max_length
    return f"{text[:head]}\n\n... [{omitted} chars truncated] ...\n\n{text[head - max_length:]}"


def _failure(error: str) -> ToolResult:
    return ToolResult(success=False, output="", error=error)


class ToolRegistry:
    """Tools offered to the model, looked up by name."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def schemas(self) -> list[dict[str, Any]]:
        return [tool.to_schema() for tool in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Run a tool with decoded arguments.

        Never raises: an unknown tool, missing arguments or an exception
        inside the tool all come back as a failed result.
        """
        tool = self._tools.get(name)
        if tool is None:
            return _failure(f"Unknown tool: {name}. Available: {', '.join(self._tools)}")
        missing = tool.missing_arguments(arguments)
        if missing:
            return _failure(f"Missing required argument(s) for {name}: {', '.join(missing)}")

        try:
            result = await tool.execute(**arguments)
        except Exception as e:
            _logger.debug("Tool %s raised", name, exc_info=True)
            return _failure(f"Tool '{name}' execution failed: {type(e).__name__}: {e}")

        if 0 < tool.max_output < len(result.output):
            result.output = _smart_truncate(result.output, tool.max_output)
        return result

    async def invoke(self, name: str, raw_arguments: bytes) -> str:
        """Tool-caller entry point: ``(name, raw JSON bytes) -> result``.

        Raises :class:`ToolError` when the arguments cannot be decoded or
        the tool reports a failure.
        """
        try:
            arguments = json.loads(raw_arguments or b"{}")
        except json.JSONDecodeError as e:
            raise ToolError(f"invalid arguments for {name}: {e}") from e
        if not isinstance(arguments, dict):
            raise ToolError(f"arguments for {name} must be a JSON object")

        _logger.debug("Invoking tool %s with %s", name, arguments)
        result = await self.execute(name, arguments)
        if not result.success:
            raise ToolError(result.to_message())
        return result.output
