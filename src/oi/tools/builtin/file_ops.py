"""Read-only file tools."""

from __future__ import annotations

import asyncio
from itertools import islice
from pathlib import Path
from typing import Any

from oi.tools.base import Tool
from oi.types import ToolParameter, ToolResult

_MAX_FILE_SIZE = 10_000_000
_MAX_ENTRIES = 500


def _human_size(size: int) -> str:
    for unit, scale in (("MB", 1024 * 1024), ("KB", 1024)):
        if size >= scale:
            return f"{size // scale}{unit}"
    return f"{size}B"


def _failed(error: str) -> ToolResult:
    return ToolResult(success=False, output="", error=error)


def _read_lines(path: str, offset: int, limit: int) -> ToolResult:
    p = Path(path).expanduser().resolve()
    if not p.is_file():
        return _failed(f"Not a file: {p}" if p.exists() else f"File not found: {p}")
    size = p.stat().st_size
    if size > _MAX_FILE_SIZE:
        return _failed(f"File too large ({size} bytes, max 10MB)")

    try:
        with open(p, errors="replace") as f:
            lines = islice(f, offset, offset + limit if limit > 0 else None)
            numbered = [
                f"{n:>5}\t{line.rstrip()}" for n, line in enumerate(lines, start=offset + 1)
            ]
    except OSError as e:
        return _failed(str(e))
    return ToolResult(success=True, output="\n".join(numbered))


def _list_entries(path: str) -> ToolResult:
    p = Path(path).expanduser().resolve()
    if not p.is_dir():
        return _failed(f"Not a directory: {p}" if p.exists() else f"Path not found: {p}")
    try:
        entries = sorted(p.iterdir())
    except OSError as e:
        return _failed(str(e))

    lines = [
        f"d {e.name}" if e.is_dir() else f"f {e.name} ({_human_size(e.stat().st_size)})"
        for e in entries[:_MAX_ENTRIES]
    ]
    if len(entries) > _MAX_ENTRIES:
        lines.append(f"... {len(entries) - _MAX_ENTRIES} more")
    return ToolResult(success=True, output="\n".join(lines))


class ReadFileTool(Tool):
    name = "read_file"
    description = "Read the contents of a text file. Returns numbered lines."
    max_output = 8000
    parameters = [
        ToolParameter(name="path", type="string", description="Path to the file to read"),
        ToolParameter(
            name="offset",
            type="integer",
            description="Number of lines to skip before reading",
            required=False,
            default=0,
        ),
        ToolParameter(
            name="limit",
            type="integer",
            description="Maximum number of lines to return (0 reads to the end)",
            required=False,
            default=0,
        ),
    ]

    async def execute(self, **kwargs: Any) -> ToolResult:
        path = kwargs.get("path") or ""
        if not path:
            return _failed("No path provided")
        offset = max(int(kwargs.get("offset") or 0), 0)
        limit = int(kwargs.get("limit") or 0)
        return await asyncio.to_thread(_read_lines, path, offset, limit)


class ListDirectoryTool(Tool):
    name = "list_dir"
    description = "List files and directories in a given path."
    parameters = [
        ToolParameter(
            name="path",
            type="string",
            description="Directory path to list",
            required=False,
            default=".",
        ),
    ]

    async def execute(self, **kwargs: Any) -> ToolResult:
        return await asyncio.to_thread(_list_entries, kwargs.get("path") or ".")
