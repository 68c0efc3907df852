"""Tool gateway for oi."""

from __future__ import annotations

from oi.errors import SetupError
from oi.tools.base import Tool
from oi.tools.builtin import BUILTIN_TOOLS
from oi.tools.registry import ToolRegistry


def build_registry(names: list[str]) -> ToolRegistry:
    """Create a registry holding the named built-in tools."""
    registry = ToolRegistry()
    for name in names:
        tool_cls = BUILTIN_TOOLS.get(name)
        if tool_cls is None:
            raise SetupError(
                f"unknown tool {name!r}; available: {', '.join(sorted(BUILTIN_TOOLS))}",
                reason="Could not set up tools.",
            )
        registry.register(tool_cls())
    return registry


__all__ = ["BUILTIN_TOOLS", "Tool", "ToolRegistry", "build_registry"]
