"""Built-in tools."""

from __future__ import annotations

from oi.tools.base import Tool
from oi.tools.builtin.file_ops import ListDirectoryTool, ReadFileTool
from oi.tools.builtin.shell import ShellTool

BUILTIN_TOOLS: dict[str, type[Tool]] = {
    cls.name: cls for cls in (ReadFileTool, ListDirectoryTool, ShellTool)
}
