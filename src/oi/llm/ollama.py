"""Ollama chat backend for :class:`oi.stream.Stream`.

Speaks the native ``/api/chat`` NDJSON protocol through
``httpx.AsyncClient`` and translates every line into a
:class:`~oi.types.Delta`.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from oi.errors import ApiError, StreamError
from oi.stream import Sink, Stream
from oi.types import Delta, Message, Request, Role, ToolCall

_logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"

_ROLES = {r.value: r for r in Role}


def _decode_arguments(raw: bytes) -> dict[str, Any]:
    try:
        args = json.loads(raw or b"{}")
    except json.JSONDecodeError:
        return {}
    return args if isinstance(args, dict) else {}


def to_wire_message(message: Message) -> dict[str, Any]:
    """Convert a history message into an Ollama chat message."""
    data: dict[str, Any] = {"role": message.role.value, "content": message.content}
    if message.tool_calls:
        data["tool_calls"] = [
            {
                "function": {
                    "index": call.index,
                    "name": call.name,
                    "arguments": _decode_arguments(call.arguments),
                },
            }
            for call in message.tool_calls
        ]
    if message.role is Role.TOOL and message.tool_name:
        data["tool_name"] = message.tool_name
    return data


def build_payload(request: Request) -> dict[str, Any]:
    """Build the ``/api/chat`` request body.  Unset parameters are omitted."""
    options: dict[str, Any] = {}
    if request.temperature is not None:
        options["temperature"] = request.temperature
    if request.top_p is not None:
        options["top_p"] = request.top_p
    if request.top_k is not None:
        options["top_k"] = request.top_k
    if request.stop:
        options["stop"] = list(request.stop)
    if request.max_tokens is not None:
        options["num_predict"] = request.max_tokens

    payload: dict[str, Any] = {
        "model": request.model,
        "messages": [to_wire_message(m) for m in request.messages],
        "stream": True,
        "options": options,
    }
    if request.tools:
        payload["tools"] = list(request.tools)
    return payload


def parse_delta(data: dict[str, Any]) -> Delta:
    """Translate one streamed response object into a Delta."""
    message = data.get("message") or {}
    calls: list[ToolCall] = []
    for pos, tc in enumerate(message.get("tool_calls") or []):
        func = tc.get("function", {})
        args = func.get("arguments", {})
        if isinstance(args, str):
            raw = args.encode("utf-8")
        else:
            raw = json.dumps(args).encode("utf-8")
        calls.append(
            ToolCall(
                index=func.get("index", pos),
                name=func.get("name", ""),
                arguments=raw,
                id=tc.get("id", ""),
            )
        )
    return Delta(
        content=message.get("content", "") or "",
        role=_ROLES.get(message.get("role", "")),
        tool_calls=tuple(calls),
        done=bool(data.get("done")),
    )


def _error_text(body: str) -> str:
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body.strip() or "empty response"
    if isinstance(data, dict) and "error" in data:
        return str(data["error"])
    return body.strip()


class OllamaClient:
    """Async client for a local or remote Ollama server."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 300,
        proxy: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        # Accept OpenAI-style URLs pointing at the same server
        base_url = base_url.rstrip("/").removesuffix("/v1")
        self.base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout, connect=30),
            proxy=proxy or None,
            transport=transport,
        )

    def request(self, request: Request) -> Stream:
        """Open a stream for *request*.  Must be called inside a running loop."""
        return Stream(request, self._exchange)

    async def _exchange(self, request: Request, sink: Sink) -> None:
        payload = build_payload(request)
        try:
            async with self._client.stream("POST", "/api/chat", json=payload) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode(errors="replace")
                    raise ApiError(
                        f"Ollama: {_error_text(body)}", status_code=resp.status_code,
                    )

                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        _logger.debug("Skipping malformed stream line: %r", line[:200])
                        continue
                    if "error" in data:
                        raise ApiError(f"Ollama: {data['error']}")
                    delta = parse_delta(data)
                    await sink(delta)
                    if delta.done:
                        return
        except httpx.TimeoutException as e:
            raise StreamError(f"Ollama request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise StreamError(f"Ollama request failed: {e}") from e

    async def list_models(self) -> list[str]:
        """Return the names of the models installed on the server."""
        try:
            resp = await self._client.get("/api/tags")
        except httpx.HTTPError as e:
            raise StreamError(f"Could not reach Ollama at {self.base_url}: {e}") from e
        if resp.status_code >= 400:
            raise ApiError(f"Ollama: {_error_text(resp.text)}", status_code=resp.status_code)
        return [m.get("name", "") for m in resp.json().get("models", [])]

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
