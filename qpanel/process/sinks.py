"""Event sinks: destinations for the events a run emits, one at a time."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from qpanel.core.models import EventType, StreamEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class EventSink(Protocol):
    """Anything that accepts one event. Events arrive in emission order."""

    async def emit(self, event: StreamEvent) -> None: ...


class NullSink:
    """Discards events. Used when a run has no listener."""

    async def emit(self, event: StreamEvent) -> None:
        return None


class MemorySink:
    """Records events in memory, in order.

    ``wait_for`` lets a caller block until an event of a given type arrives,
    which is how tests synchronise with a running process.
    """

    def __init__(self) -> None:
        self.events: list[StreamEvent] = []
        self._arrived = asyncio.Condition()

    async def emit(self, event: StreamEvent) -> None:
        async with self._arrived:
            self.events.append(event)
            self._arrived.notify_all()

    async def wait_for(self, event_type: EventType, timeout: float = 10.0) -> StreamEvent:
        async def _wait() -> StreamEvent:
            async with self._arrived:
                while True:
                    for event in self.events:
                        if event.type is event_type:
                            return event
                    await self._arrived.wait()

        return await asyncio.wait_for(_wait(), timeout)

    def of_type(self, event_type: EventType) -> list[StreamEvent]:
        return [e for e in self.events if e.type is event_type]

    @property
    def types(self) -> list[EventType]:
        return [e.type for e in self.events]

    def text(self, event_type: EventType = EventType.OUTPUT) -> str:
        return "".join(e.data or "" for e in self.of_type(event_type))


class CallbackSink:
    """Adapts a plain or async callable into a sink."""

    def __init__(self, callback: Callable[[StreamEvent], Awaitable[None] | None]):
        self._callback = callback

    async def emit(self, event: StreamEvent) -> None:
        result = self._callback(event)
        if inspect.isawaitable(result):
            await result
