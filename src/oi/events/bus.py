"""Async pub/sub bus carrying turn events to the renderer."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable

from oi.types import EventType, TurnEvent

_logger = logging.getLogger(__name__)

# Subscribe with this key to receive every event
WILDCARD = "*"

# Sync or async callable taking a TurnEvent
Handler = Callable[[TurnEvent], Any]


class EventBus:
    """Ordered async event fan-out.

    Handlers run one after another in subscription order, so a renderer
    sees ``turn.chunk`` events in exactly the order they were emitted.
    A failing handler is logged and skipped.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[TurnEvent] = []
        self._max_history = max_history

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        self._handlers.setdefault(self._key(event_type), []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        handlers = self._handlers.get(self._key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: TurnEvent) -> None:
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[: len(self._history) - self._max_history]

        handlers = list(self._handlers.get(self._key(event.type), []))
        handlers.extend(self._handlers.get(WILDCARD, []))
        for handler in handlers:
            await self._call_handler(handler, event)

    async def publish(self, event_type: EventType, **data: Any) -> None:
        """Shorthand for ``emit(TurnEvent(event_type, data))``."""
        await self.emit(TurnEvent(type=event_type, data=data))

    @property
    def history(self) -> list[TurnEvent]:
        return list(self._history)

    def clear(self) -> None:
        self._handlers.clear()
        self._history.clear()

    @staticmethod
    def _key(event_type: EventType | str) -> str:
        if isinstance(event_type, EventType):
            return event_type.value
        return str(event_type)

    @staticmethod
    async def _call_handler(handler: Handler, event: TurnEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "Handler %s raised for event %s",
                getattr(handler, "__name__", handler),
                event.type.value,
            )
