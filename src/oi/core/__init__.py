"""Turn setup, retry and orchestration."""

from oi.core.orchestrator import Orchestrator, TurnState
from oi.core.retry import RetryPolicy, retry_turn
from oi.core.setup import (
    ResolvedModel,
    build_history,
    preamble,
    read_history,
    resolve_model,
    truncate,
)

__all__ = [
    "Orchestrator",
    "ResolvedModel",
    "RetryPolicy",
    "TurnState",
    "build_history",
    "preamble",
    "read_history",
    "resolve_model",
    "retry_turn",
    "truncate",
]
