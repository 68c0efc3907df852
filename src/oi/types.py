"""Shared data types for oi."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable


# ---------------------------------------------------------------------------
# Message types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Chat message roles."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model inside an assistant message.

    ``arguments`` holds the raw argument bytes as the backend encoded them
    (JSON for Ollama).  The tool gateway decides how to decode them.
    """

    index: int
    name: str
    arguments: bytes = b"{}"
    id: str = ""

    @property
    def call_id(self) -> str:
        return self.id or f"call_{self.index}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "arguments": self.arguments.decode("utf-8", errors="replace"),
            "id": self.id,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ToolCall:
        args = raw.get("arguments", "{}")
        if isinstance(args, str):
            args = args.encode("utf-8")
        return cls(
            index=int(raw.get("index", 0)),
            name=raw.get("name", ""),
            arguments=args,
            id=raw.get("id", ""),
        )


@dataclass
class Message:
    """One entry of the conversation history."""

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    tool_name: str = ""

    def __post_init__(self) -> None:
        self.role = Role(self.role)
        if self.role is Role.TOOL and not self.tool_call_id:
            raise ValueError("tool messages must reference a tool_call_id")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_name:
            data["tool_name"] = self.tool_name
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        return cls(
            role=Role(raw["role"]),
            content=raw.get("content", ""),
            tool_calls=[ToolCall.from_dict(tc) for tc in raw.get("tool_calls", [])],
            tool_call_id=raw.get("tool_call_id"),
            tool_name=raw.get("tool_name", ""),
        )


@dataclass(frozen=True)
class ToolCallStatus:
    """Outcome of executing one tool call."""

    name: str
    result: str = ""
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def __str__(self) -> str:
        text = f"\n> Ran: `{self.name}`"
        if self.error is not None:
            text += f"\n> Failed: `{self.error}`"
        return text + "\n\n"


@dataclass(frozen=True)
class Chunk:
    """A fragment of assistant text delivered during a round."""

    content: str = ""


@dataclass(frozen=True)
class Delta:
    """One response unit pushed by a backend exchange into a stream."""

    content: str = ""
    role: Role | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    done: bool = False


# ---------------------------------------------------------------------------
# Tool types
# ---------------------------------------------------------------------------

@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    type: str  # string, integer, boolean, array, object
    description: str
    required: bool = True
    default: Any = None


@dataclass
class ToolResult:
    """Result of a tool execution."""

    success: bool
    output: str
    error: str = ""

    def to_message(self) -> str:
        if self.success:
            return self.output
        if self.output:
            return f"{self.error}\n{self.output}"
        return self.error


# Async callable ``(name, raw_arguments) -> result``; raises on failure.
ToolCaller = Callable[[str, bytes], Awaitable[str]]


@dataclass(frozen=True)
class Request:
    """A chat request snapshot for one round.

    Sampling parameters set to ``None`` are left to the backend default.
    """

    model: str
    messages: tuple[Message, ...] = ()
    api: str = "ollama"
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop: tuple[str, ...] = ()
    max_tokens: int | None = None
    tools: tuple[dict[str, Any], ...] = ()
    tool_caller: ToolCaller | None = None


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events emitted while a turn runs."""

    TURN_STARTED = "turn.started"
    TURN_CHUNK = "turn.chunk"
    TURN_RETRY = "turn.retry"
    TURN_DONE = "turn.done"
    TURN_ERROR = "turn.error"

    TOOL_EXECUTED = "tool.executed"
    TOOL_ERROR = "tool.error"


@dataclass
class TurnEvent:
    """Event emitted by the orchestrator via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
