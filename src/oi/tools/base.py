"""Base class for tools the model may call during a turn."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from oi.types import ToolParameter, ToolResult


def _property(param: ToolParameter) -> dict[str, Any]:
    prop: dict[str, Any] = {"type": param.type, "description": param.description}
    if param.default is not None:
        prop["default"] = param.default
    return prop


class Tool(ABC):
    """A named capability with a JSON-schema declaration.

    Subclasses declare ``name``, ``description`` and ``parameters`` as class
    attributes and implement ``execute``.  The registry clips output longer
    than ``max_output`` characters; 0 keeps everything.
    """

    name: str
    description: str
    parameters: list[ToolParameter]
    max_output: int = 5000

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Run the tool with decoded keyword arguments."""

    def missing_arguments(self, arguments: dict[str, Any]) -> list[str]:
        return [p.name for p in self.parameters if p.required and p.name not in arguments]

    def to_schema(self) -> dict[str, Any]:
        """Function declaration in the shape Ollama's ``tools`` field takes."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {p.name: _property(p) for p in self.parameters},
                    "required": [p.name for p in self.parameters if p.required],
                },
            },
        }

    def to_compact_description(self) -> str:
        """Signature line used by ``--list-tools``."""
        signature = ", ".join(
            f"{p.name}: {p.type}{'' if p.required else '?'}" for p in self.parameters
        )
        return f"{self.name}({signature}) - {self.description}"
