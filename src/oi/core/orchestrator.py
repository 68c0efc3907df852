"""Completion orchestrator: drives one stream per user turn.

    setup → request → drain ⇄ tool round → finished | errored

The orchestrator owns the conversation history between turns.  During a
turn the history belongs to the active :class:`~oi.stream.Stream`; it is
published back to ``orchestrator.messages`` only once the turn finishes.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import replace
from typing import Any, Callable

from oi.config import Config
from oi.core.retry import RetryPolicy, is_model_missing, retry_turn
from oi.core.setup import ResolvedModel, build_history, preamble, read_history
from oi.errors import NoContentError, OiError, ToolError
from oi.events.bus import EventBus
from oi.store import ConversationCache
from oi.stream import Client, Stream
from oi.tools.registry import ToolRegistry
from oi.types import EventType, Message, Request

_logger = logging.getLogger(__name__)


class TurnState(enum.Enum):
    IDLE = "idle"
    REQUEST_BUILT = "request_built"
    STREAMING = "streaming"
    TOOL_ROUND = "tool_round"
    FINISHED = "finished"
    ERRORED = "errored"


class Orchestrator:
    """Runs user turns against a chat backend.

    Parameters
    ----------
    client:
        Backend able to open a :class:`Stream` for a request.
    config:
        Loaded settings (sampling, limits, retries, cache switches).
    model:
        The resolved model to talk to.
    registry:
        Tools offered to the model (optional).
    event_bus:
        Receives turn and tool events; the renderer subscribes here.
    cache:
        Conversation store read on the first turn and written after each
        successful one (optional).
    read_id, write_id, title:
        Cache keys for this session.
    prefix:
        Text placed before the first user input.
    """

    def __init__(
        self,
        client: Client,
        config: Config,
        model: ResolvedModel,
        *,
        registry: ToolRegistry | None = None,
        event_bus: EventBus | None = None,
        cache: ConversationCache | None = None,
        read_id: str = "",
        write_id: str = "",
        title: str = "",
        prefix: str = "",
    ) -> None:
        self._client = client
        self._config = config
        self._model = model
        self._registry = registry
        self._event_bus = event_bus or EventBus()
        self._cache = cache
        self._read_id = read_id
        self._write_id = write_id
        self._title = title
        self._prefix = prefix
        self._cancel_handles: list[Callable[[], Any]] = []
        self._turns = 0
        self._cancelled = False
        self._system: list[Message] | None = None
        self.messages: list[Message] = []
        self.state = TurnState.IDLE

    @property
    def model(self) -> ResolvedModel:
        return self._model

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    async def run(self, content: str) -> str:
        """Run one user turn, retrying failed attempts.

        Returns the assistant text of the turn.  A terminal error is
        published as ``turn.error`` and re-raised.
        """
        self._cancelled = False
        policy = RetryPolicy(max_retries=self._config.max_retries)
        try:
            return await retry_turn(
                lambda: self._attempt(content),
                policy,
                fallback=self._use_fallback,
                on_retry=self._on_retry,
                should_stop=lambda: self._cancelled,
            )
        except OiError as e:
            if self._cancelled:
                _logger.debug("Turn stopped during retry: %s", e)
                self.state = TurnState.FINISHED
                await self._emit(EventType.TURN_DONE, content="", rounds=0, cancelled=True)
                return ""
            self.state = TurnState.ERRORED
            await self._emit(EventType.TURN_ERROR, error=str(e), reason=e.reason)
            raise

    def shutdown(self) -> None:
        """Cancel every open exchange and in-flight tool call.

        An interrupted turn ends with the text streamed so far; its history
        is discarded and nothing is written to the cache.
        """
        self._cancelled = True
        handles, self._cancel_handles = self._cancel_handles, []
        for cancel in handles:
            cancel()
        if handles:
            _logger.debug("Cancelled %d outstanding handle(s)", len(handles))

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    async def _attempt(self, content: str) -> str:
        self.state = TurnState.IDLE
        if self._turns:
            history = self.messages
        else:
            history = read_history(self._config, self._cache, self._read_id)
        messages = build_history(
            self._config,
            content,
            self._model.max_input_chars,
            prefix="" if self._turns else self._prefix,
            history=history,
            system=() if history else await self._system_messages(),
        )
        request = self._build_request(messages)
        self.state = TurnState.REQUEST_BUILT

        stream = self._client.request(request)
        self._cancel_handles.append(stream.close)
        self.state = TurnState.STREAMING
        await self._emit(
            EventType.TURN_STARTED, model=self._model.name, messages=len(messages),
        )
        try:
            text = await self._drain(stream)
        finally:
            stream.close()
            self._release(stream.close)

        if self._cancelled:
            self.state = TurnState.FINISHED
            await self._emit(
                EventType.TURN_DONE, content=text, rounds=stream.rounds, cancelled=True,
            )
            return text

        self.messages = stream.messages()
        self._turns += 1
        self.state = TurnState.FINISHED
        self._write_cache()
        await self._emit(EventType.TURN_DONE, content=text, rounds=stream.rounds)
        return text

    async def _drain(self, stream: Stream) -> str:
        output: list[str] = []
        while True:
            while stream.next():
                try:
                    chunk = stream.current()
                except NoContentError:
                    await stream.wait()
                    continue
                if chunk.content:
                    output.append(chunk.content)
                    await self._emit(EventType.TURN_CHUNK, content=chunk.content)

            err = stream.err()
            if err is not None:
                raise err

            self.state = TurnState.TOOL_ROUND
            statuses = await stream.call_tools()
            if not statuses:
                return "".join(output)

            for status in statuses:
                if status.success:
                    await self._emit(
                        EventType.TOOL_EXECUTED, name=status.name, text=str(status),
                    )
                else:
                    await self._emit(
                        EventType.TOOL_ERROR,
                        name=status.name, error=status.error, text=str(status),
                    )
            self.state = TurnState.STREAMING

    def _build_request(self, messages: list[Message]) -> Request:
        cfg = self._config
        tools: tuple[dict[str, Any], ...] = ()
        if self._registry is not None and len(self._registry):
            tools = tuple(self._registry.schemas())
        return Request(
            model=self._model.name,
            messages=tuple(messages),
            api=self._model.api,
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            top_k=cfg.top_k,
            stop=tuple(cfg.stop),
            max_tokens=cfg.max_tokens_or_none,
            tools=tools,
            tool_caller=self._call_tool if tools else None,
        )

    async def _call_tool(self, name: str, arguments: bytes) -> str:
        assert self._registry is not None
        task = asyncio.ensure_future(self._registry.invoke(name, arguments))
        self._cancel_handles.append(task.cancel)
        try:
            return await asyncio.wait_for(task, timeout=self._config.tool_timeout)
        except asyncio.TimeoutError as e:
            raise ToolError(
                f"tool {name!r} timed out after {self._config.tool_timeout}s",
            ) from e
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
            raise ToolError(f"tool {name!r} was cancelled") from None
        finally:
            self._release(task.cancel)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _system_messages(self) -> list[Message]:
        # Loaded once per session so retries do not fetch role text again
        if self._system is None:
            self._system = await preamble(self._config)
        return self._system

    def _use_fallback(self, error: OiError) -> bool:
        if not is_model_missing(error) or not self._model.fallback:
            return False
        _logger.warning(
            "Model %s not found, switching to %s", self._model.name, self._model.fallback,
        )
        self._model = replace(self._model, name=self._model.fallback, fallback="")
        return True

    async def _on_retry(self, attempt: int, delay: float, error: OiError) -> None:
        await self._emit(EventType.TURN_RETRY, attempt=attempt, delay=delay, error=str(error))

    def _write_cache(self) -> None:
        if self._cache is None or not self._write_id or self._config.no_cache:
            return
        try:
            self._cache.write(
                self._write_id, self._title, self._model.api, self._model.name, self.messages,
            )
        except OiError as e:
            _logger.warning("Could not save conversation %s: %s", self._write_id[:8], e)

    def _release(self, handle: Callable[[], Any]) -> None:
        if handle in self._cancel_handles:
            self._cancel_handles.remove(handle)

    async def _emit(self, event_type: EventType, **data: Any) -> None:
        await self._event_bus.publish(event_type, **data)
