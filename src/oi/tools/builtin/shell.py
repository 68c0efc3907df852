"""Shell command tool."""

from __future__ import annotations

import asyncio
import os
from typing import Any

from oi.tools.base import Tool
from oi.types import ToolParameter, ToolResult

# Credentials and oi's own settings stay out of child processes
_SENSITIVE_PREFIXES = (
    "AWS_", "AZURE_", "GOOGLE_", "OPENAI_", "ANTHROPIC_",
    "GITHUB_", "GH_", "HF_", "HUGGING", "OI_",
)
_SENSITIVE_NAMES = frozenset({
    "API_KEY", "SECRET", "SECRET_KEY", "PRIVATE_KEY",
    "TOKEN", "PASSWORD", "DATABASE_URL",
})

_DEFAULT_TIMEOUT = 60


def _build_safe_env() -> dict[str, str]:
    """Copy of ``os.environ`` without the sensitive variables."""
    return {
        key: value
        for key, value in os.environ.items()
        if key not in _SENSITIVE_NAMES and not key.startswith(_SENSITIVE_PREFIXES)
    }


def _combine(stdout: bytes, stderr: bytes) -> str:
    out = stdout.decode(errors="replace")
    err = stderr.decode(errors="replace")
    if out and err:
        return f"{out}\n[stderr]\n{err}".strip()
    return (out or err).strip()


class ShellTool(Tool):
    name = "shell"
    description = "Execute a shell command and return its combined output."
    max_output = 8000
    parameters = [
        ToolParameter(name="command", type="string", description="The shell command to execute"),
        ToolParameter(
            name="cwd",
            type="string",
            description="Working directory for the command",
            required=False,
        ),
        ToolParameter(
            name="timeout",
            type="integer",
            description="Timeout in seconds",
            required=False,
            default=_DEFAULT_TIMEOUT,
        ),
    ]

    async def execute(self, **kwargs: Any) -> ToolResult:
        command = kwargs.get("command") or ""
        if not command:
            return ToolResult(success=False, output="", error="No command provided")
        timeout = kwargs.get("timeout") or _DEFAULT_TIMEOUT

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=kwargs.get("cwd") or None,
                env=_build_safe_env(),
            )
        except OSError as e:
            return ToolResult(success=False, output="", error=f"Failed to execute: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return ToolResult(success=False, output="", error=f"Command timed out after {timeout}s")
        except asyncio.CancelledError:
            proc.kill()
            raise

        output = _combine(stdout, stderr)
        if proc.returncode:
            return ToolResult(success=False, output=output, error=f"Exit code: {proc.returncode}")
        return ToolResult(success=True, output=output)
