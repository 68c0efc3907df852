"""Pull-based completion stream.

A :class:`Stream` drives one user turn against a chat backend.  The backend
exchange runs as an ``asyncio`` task that pushes :class:`~oi.types.Delta`
units into a bounded queue; the consumer pulls them with the classic
external-iterator shape::

    while stream.next():
        try:
            chunk = stream.current()
        except NoContentError:
            await stream.wait()
            continue
        render(chunk.content)
    if stream.err() is not None:
        ...
    statuses = await stream.call_tools()   # [] -> turn complete

When the model asks for tools, ``call_tools()`` runs them, appends the
results to the history and re-opens the exchange on the same object, so
the consumer simply keeps draining.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Protocol

from oi.errors import NoContentError, OiError, StreamError
from oi.types import (
    Chunk,
    Delta,
    Message,
    Request,
    Role,
    ToolCall,
    ToolCallStatus,
    ToolCaller,
)

_logger = logging.getLogger(__name__)

Sink = Callable[[Delta], Awaitable[None]]
Exchange = Callable[[Request, Sink], Awaitable[None]]

_QUEUE_SIZE = 64


class StreamState(enum.Enum):
    FIRST_ROUND = "first_round"
    CONTINUATION = "continuation"
    ROUND_COMPLETE = "round_complete"
    FINISHED = "finished"
    FAILED = "failed"


_STREAMING = frozenset({StreamState.FIRST_ROUND, StreamState.CONTINUATION})


@dataclass(frozen=True)
class _Failure:
    error: BaseException


_END = object()


class Client(Protocol):
    """A chat backend able to open a :class:`Stream` for a request."""

    def request(self, request: Request) -> Stream: ...

    async def close(self) -> None: ...


async def call_tool(
    call: ToolCall, caller: ToolCaller | None,
) -> tuple[Message, ToolCallStatus]:
    """Invoke one tool call and build the tool message answering it.

    A failing tool does not abort the turn: the error is reported back to
    the model as the tool result.
    """
    error: str | None = None
    content = ""
    if caller is None:
        error = "no tool caller configured"
    else:
        try:
            content = await caller(call.name, call.arguments)
        except Exception as e:
            _logger.warning("Tool %s failed: %s", call.name, e)
            error = str(e) or type(e).__name__

    if error is not None:
        content = f"An error occurred: {error}"
    message = Message(
        role=Role.TOOL,
        content=content,
        tool_call_id=call.call_id,
        tool_name=call.name,
    )
    return message, ToolCallStatus(name=call.name, result=content, error=error)


class Stream:
    """Single-consumer stream over one multi-round turn.

    Parameters
    ----------
    request:
        The first round's request.  Its messages seed the history.
    exchange:
        Coroutine function ``(request, sink)`` that performs one backend
        round and awaits ``sink(delta)`` for every response unit.
    queue_size:
        Capacity of the hand-off queue between exchange and consumer.
    """

    def __init__(
        self,
        request: Request,
        exchange: Exchange,
        queue_size: int = _QUEUE_SIZE,
    ) -> None:
        self._request = request
        self._exchange = exchange
        self._queue_size = queue_size
        self._messages: list[Message] = list(request.messages)
        self._state = StreamState.FIRST_ROUND
        self._err: OiError | None = None
        self._closed = False
        self._rounds = 0
        self._reset_round()
        self._open()

    # ------------------------------------------------------------------
    # Iterator contract
    # ------------------------------------------------------------------

    def next(self) -> bool:
        """True while the current round may still produce chunks."""
        return self._err is None and self._state in _STREAMING

    def current(self) -> Chunk:
        """Fold the next buffered unit into the round and return its chunk.

        Raises :class:`NoContentError` when nothing is buffered yet and
        the recorded error for anything fatal.
        """
        if self._err is not None or self._state not in _STREAMING:
            raise NoContentError
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            if not self._task.done():
                raise NoContentError from None
            item = _Failure(StreamError("backend exchange stopped before the round completed"))
        if item is _END:
            item = _Failure(StreamError("backend closed the stream before the round completed"))
        if isinstance(item, _Failure):
            self._fail(item.error)
            raise self._err
        return self._fold(item)

    async def wait(self) -> None:
        """Suspend until a unit is buffered or the exchange has ended."""
        if self._queue.empty() and not self._task.done():
            self._ready.clear()
            await self._ready.wait()

    async def call_tools(self) -> list[ToolCallStatus]:
        """Finalize the round and run any tool calls it requested.

        Returns an empty list once the turn is complete.  Otherwise the
        statuses are returned in call order and the next round is already
        streaming.
        """
        if self._state in _STREAMING:
            raise StreamError("call_tools() called while a round is still streaming")
        if self._state is not StreamState.ROUND_COMPLETE:
            return []

        message = Message(
            role=self._role or Role.ASSISTANT,
            content="".join(self._content),
            tool_calls=sorted(self._tool_calls, key=lambda c: c.index),
        )
        self._messages.append(message)
        if not message.tool_calls:
            self._state = StreamState.FINISHED
            _logger.debug("Turn finished after %d round(s)", self._rounds)
            return []

        statuses: list[ToolCallStatus] = []
        for call in message.tool_calls:
            result, status = await call_tool(call, self._request.tool_caller)
            self._messages.append(result)
            statuses.append(status)

        if self._closed:
            return statuses

        self._reset_round()
        self._request = replace(self._request, messages=tuple(self._messages))
        self._state = StreamState.CONTINUATION
        self._open()
        return statuses

    def err(self) -> OiError | None:
        """The fatal error recorded for this stream, if any."""
        return self._err

    def messages(self) -> list[Message]:
        """The history of the whole turn, in conversation order."""
        return list(self._messages)

    def close(self) -> None:
        """Stop the backend exchange and mark the stream done.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._task.cancel()
        if self._state is not StreamState.FAILED:
            self._state = StreamState.FINISHED

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def rounds(self) -> int:
        return self._rounds

    @property
    def request(self) -> Request:
        return self._request

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reset_round(self) -> None:
        self._content: list[str] = []
        self._role: Role | None = None
        self._tool_calls: list[ToolCall] = []

    def _open(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=self._queue_size)
        self._ready = asyncio.Event()
        self._rounds += 1
        _logger.debug("Opening round %d (%d messages)", self._rounds, len(self._request.messages))
        self._task = asyncio.get_running_loop().create_task(
            self._produce(self._request, self._queue, self._ready),
        )
        self._task.add_done_callback(lambda _t, ready=self._ready: ready.set())

    async def _produce(
        self,
        request: Request,
        queue: asyncio.Queue[object],
        ready: asyncio.Event,
    ) -> None:
        async def sink(delta: Delta) -> None:
            await queue.put(delta)
            ready.set()

        try:
            await self._exchange(request, sink)
        except Exception as e:
            await queue.put(_Failure(e))
        else:
            await queue.put(_END)
        ready.set()

    def _fold(self, delta: Delta) -> Chunk:
        if self._role is None and delta.role is not None:
            self._role = delta.role
        self._content.append(delta.content)
        for call in delta.tool_calls:
            if any(c.index == call.index for c in self._tool_calls):
                call = replace(call, index=max(c.index for c in self._tool_calls) + 1)
            self._tool_calls.append(call)
        if delta.done:
            self._state = StreamState.ROUND_COMPLETE
            _logger.debug(
                "Round %d complete (%d tool call(s))", self._rounds, len(self._tool_calls),
            )
        return Chunk(content=delta.content)

    def _fail(self, error: BaseException) -> None:
        if isinstance(error, OiError):
            self._err = error
        else:
            wrapped = StreamError(f"{type(error).__name__}: {error}")
            wrapped.__cause__ = error
            self._err = wrapped
        self._state = StreamState.FAILED
        _logger.debug("Stream failed: %s", self._err)
        self.close()
