"""Turn setup: resolve the model and build the history seeding a request."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

import httpx

from oi.config import Config, ModelSpec
from oi.errors import OiError, SetupError
from oi.types import Message, Role

_logger = logging.getLogger(__name__)


class HistoryReader(Protocol):
    def read(self, id: str) -> list[Message]: ...


@dataclass(frozen=True)
class ResolvedModel:
    """A model entry resolved from the settings."""

    api: str
    name: str
    base_url: str
    max_input_chars: int
    fallback: str = ""


def resolve_model(config: Config, name: str = "", api: str = "") -> ResolvedModel:
    """Look *name* up by name or alias in the configured API.

    An API without any listed models accepts whatever name it is given.
    """
    api_name = api or config.default_api
    name = name or config.default_model
    spec = config.apis.get(api_name)
    if spec is None:
        raise SetupError(
            f"Your configured APIs are: {', '.join(sorted(config.apis)) or 'none'}",
            reason=f"The API endpoint {api_name!r} is not configured.",
        )
    if not name:
        raise SetupError(
            "Pass --model or set default-model in the settings file.",
            reason="No model selected.",
        )

    model: ModelSpec | None = None
    if not spec.models:
        model = ModelSpec()
    else:
        for model_name, candidate in spec.models.items():
            if name == model_name or name in candidate.aliases:
                name, model = model_name, candidate
                break
    if model is None:
        raise SetupError(
            f"Available models are: {', '.join(spec.models)}",
            reason=f"The API endpoint {api_name!r} does not contain the model {name!r}.",
        )

    return ResolvedModel(
        api=api_name,
        name=name,
        base_url=spec.base_url,
        max_input_chars=model.max_input_chars or config.max_input_chars,
        fallback=model.fallback,
    )


def truncate(content: str, limit: int, no_limit: bool = False) -> str:
    """Clip *content* to *limit* characters.  A limit <= 0 disables clipping."""
    if no_limit or limit <= 0 or len(content) <= limit:
        return content
    _logger.debug("Truncating input from %d to %d characters", len(content), limit)
    return content[:limit]


async def load_message(
    source: str,
    *,
    timeout: float = 30,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Resolve a role entry: ``file://`` path, ``http(s)://`` URL or literal text."""
    if source.startswith("file://"):
        path = Path(source[len("file://"):]).expanduser()
        try:
            return await asyncio.to_thread(path.read_text)
        except OSError as e:
            raise SetupError(str(e), reason="Could not use role") from e
    if source.startswith(("http://", "https://")):
        try:
            async with httpx.AsyncClient(
                timeout=timeout, follow_redirects=True, transport=transport,
            ) as http:
                resp = await http.get(source)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise SetupError(str(e), reason="Could not use role") from e
        return resp.text
    return source


async def preamble(
    config: Config, *, transport: httpx.AsyncBaseTransport | None = None,
) -> list[Message]:
    """System messages that open a new conversation."""
    messages: list[Message] = []
    text = config.format_text.get(config.format_as, "")
    if config.format and text:
        messages.append(Message(role=Role.SYSTEM, content=text))

    if config.role:
        entries = config.roles.get(config.role)
        if entries is None:
            raise SetupError(f"role {config.role!r} does not exist", reason="Could not use role")
        for entry in entries:
            content = await load_message(entry, transport=transport)
            messages.append(Message(role=Role.SYSTEM, content=content))
    return messages


def read_history(
    config: Config, cache: HistoryReader | None, read_id: str,
) -> list[Message]:
    """Load the saved conversation this session continues, if any.

    A failed read is fatal: continuing from an empty history would silently
    drop the conversation.
    """
    if cache is None or not read_id or config.no_cache:
        return []
    try:
        messages = cache.read(read_id)
    except OiError as e:
        raise SetupError(
            str(e),
            reason=(
                "There was a problem reading the cache. "
                "Use --no-cache / OI_NO_CACHE to disable it."
            ),
        ) from e
    _logger.debug("Loaded %d message(s) from conversation %s", len(messages), read_id[:8])
    return messages


def build_history(
    config: Config,
    content: str,
    max_input_chars: int,
    *,
    prefix: str = "",
    history: Sequence[Message] = (),
    system: Sequence[Message] = (),
) -> list[Message]:
    """Build the history for one turn, ending with the new user message.

    *system* opens the conversation only when *history* is empty; an
    existing history is kept exactly as it is.
    """
    messages = list(history) or list(system)

    if prefix:
        content = prefix + "\n\n" + content
    content = truncate(content.strip(), max_input_chars, config.no_limit)

    messages.append(Message(role=Role.USER, content=content))
    return messages
