"""Chat backends for oi."""

from oi.llm.ollama import OllamaClient

__all__ = ["OllamaClient"]
