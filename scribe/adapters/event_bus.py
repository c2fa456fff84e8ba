"""Typed publish/subscribe bus between the orchestrator and its observers.

Handlers run synchronously, in subscription order, on the task that
emitted the event. A failing handler is logged and skipped; it never
prevents later handlers from running and never reaches the emitter.
Async consumers can iterate future events with consume().
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

from scribe.adapters.events import EventKind, SessionEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SessionEvent], None]


class EventBus:
    """Synchronous fan-out of session events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: dict[EventKind, list[EventHandler]] = {
            kind: [] for kind in EventKind
        }
        self._closed = False

    def on(self, kind: EventKind | str, handler: EventHandler) -> None:
        """Subscribe a handler. Subscribing the same handler twice is a no-op."""
        handlers = self._handlers[EventKind(kind)]
        if handler not in handlers:
            handlers.append(handler)

    def off(self, kind: EventKind | str, handler: EventHandler) -> None:
        handlers = self._handlers[EventKind(kind)]
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, kind: EventKind | str) -> int:
        return len(self._handlers[EventKind(kind)])

    def emit(self, event: SessionEvent) -> None:
        """Deliver an event to every handler subscribed to its kind."""
        if self._closed or event.kind is None:
            return
        # Snapshot so handlers may unsubscribe themselves mid-dispatch.
        for handler in list(self._handlers[event.kind]):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler %r failed on %s for session %s",
                    handler, event.kind.value, event.session_id,
                )

    async def consume(
        self,
        *kinds: EventKind | str,
        maxsize: int = 5000,
    ) -> AsyncIterator[SessionEvent]:
        """Yield future events of the given kinds (all kinds if none given).

        Stops on close(). Events that overflow the queue are dropped with
        an error log rather than blocking the emitter.
        """
        selected = [EventKind(k) for k in kinds] or list(EventKind)
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=maxsize)

        def _enqueue(event: SessionEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.error(
                    "EventBus consumer queue full, dropping: %s (queue size: %d)",
                    event.kind.value if event.kind else "?",
                    queue.qsize(),
                )

        for kind in selected:
            self.on(kind, _enqueue)
        try:
            while not self._closed:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                yield event
        finally:
            for kind in selected:
                self.off(kind, _enqueue)

    def close(self) -> None:
        """Stop delivering events and end consume() loops."""
        self._closed = True

    def reset(self) -> None:
        """Drop all handlers and re-open the bus."""
        for handlers in self._handlers.values():
            handlers.clear()
        self._closed = False
