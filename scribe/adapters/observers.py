"""Reference subscribers built on the event bus.

Each observer subscribes in its constructor and unsubscribes in
``detach()``. None of them touches session state; they only react to
events.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from scribe.adapters.event_bus import EventBus
from scribe.adapters.events import (
    EventKind,
    FileChanged,
    LoadingChanged,
    MessageAdded,
    SessionDeleted,
    SessionEvent,
)

logger = logging.getLogger(__name__)

# Strong references to pending async callbacks until they finish.
_pending_callbacks: set[asyncio.Future] = set()


def _run_callback(callback: Callable[..., Any], *args: Any) -> None:
    """Call a sync or async callback from a synchronous event handler."""
    result = callback(*args)
    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        _pending_callbacks.add(task)
        task.add_done_callback(_log_task_failure)


def _log_task_failure(task: asyncio.Future) -> None:
    _pending_callbacks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Observer callback failed", exc_info=exc)


class _Observer:
    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._subscriptions: list[tuple[EventKind, Callable[[SessionEvent], None]]] = []

    def _subscribe(self, kind: EventKind, handler: Callable[[SessionEvent], None]) -> None:
        self._bus.on(kind, handler)
        self._subscriptions.append((kind, handler))

    def detach(self) -> None:
        for kind, handler in self._subscriptions:
            self._bus.off(kind, handler)
        self._subscriptions.clear()


class BusyIndicator(_Observer):
    """Tracks whether any session, per project or overall, is generating."""

    def __init__(
        self,
        bus: EventBus,
        on_change: Callable[[bool], Any] | None = None,
    ) -> None:
        super().__init__(bus)
        self._busy: dict[str, set[str]] = defaultdict(set)
        self._on_change = on_change
        self._subscribe(EventKind.LOADING_CHANGED, self._on_loading)
        self._subscribe(EventKind.SESSION_DELETED, self._on_deleted)

    @property
    def any_busy(self) -> bool:
        return any(self._busy.values())

    def is_project_busy(self, project_id: str) -> bool:
        return bool(self._busy.get(project_id))

    def busy_projects(self) -> list[str]:
        return sorted(p for p, sessions in self._busy.items() if sessions)

    def _update(self, project_id: str, session_id: str, busy: bool) -> None:
        before = self.any_busy
        if busy:
            self._busy[project_id].add(session_id)
        else:
            self._busy[project_id].discard(session_id)
        after = self.any_busy
        if after != before and self._on_change is not None:
            _run_callback(self._on_change, after)

    def _on_loading(self, event: LoadingChanged) -> None:
        self._update(event.project_id, event.session_id, event.is_loading)

    def _on_deleted(self, event: SessionDeleted) -> None:
        self._update(event.project_id, event.session_id, False)


# (project_id, changed_files) -> None or awaitable
BuildCallback = Callable[[str, list[str]], Any]


class AutoBuildDebouncer(_Observer):
    """Triggers one build per project after file changes settle.

    Every ``file_changed`` restarts the project's timer. When the timer
    fires while a session of the project is still generating, the build
    waits for that generation to end.
    """

    def __init__(
        self,
        bus: EventBus,
        build: BuildCallback,
        delay_seconds: float = 1.0,
    ) -> None:
        super().__init__(bus)
        self._build = build
        self._delay = delay_seconds
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._changed: dict[str, list[str]] = defaultdict(list)
        self._loading: dict[str, set[str]] = defaultdict(set)
        self._deferred: set[str] = set()
        self.builds_triggered = 0
        self._subscribe(EventKind.FILE_CHANGED, self._on_file_changed)
        self._subscribe(EventKind.LOADING_CHANGED, self._on_loading)

    def pending(self, project_id: str) -> list[str]:
        return list(self._changed.get(project_id, ()))

    def _on_file_changed(self, event: FileChanged) -> None:
        project_id = event.project_id
        if event.file_path not in self._changed[project_id]:
            self._changed[project_id].append(event.file_path)
        timer = self._timers.pop(project_id, None)
        if timer is not None:
            timer.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._fire(project_id)
            return
        self._timers[project_id] = loop.call_later(self._delay, self._fire, project_id)

    def _on_loading(self, event: LoadingChanged) -> None:
        sessions = self._loading[event.project_id]
        if event.is_loading:
            sessions.add(event.session_id)
            return
        sessions.discard(event.session_id)
        if not sessions and event.project_id in self._deferred:
            self._deferred.discard(event.project_id)
            self._fire(event.project_id)

    def _fire(self, project_id: str) -> None:
        self._timers.pop(project_id, None)
        if self._loading.get(project_id):
            logger.debug("Deferring build of %s until generation ends", project_id)
            self._deferred.add(project_id)
            return
        files = self._changed.pop(project_id, [])
        if not files:
            return
        self.builds_triggered += 1
        logger.info("Auto-build for project %s (%d changed files)", project_id, len(files))
        try:
            _run_callback(self._build, project_id, files)
        except Exception:
            logger.exception("Auto-build callback failed for project %s", project_id)

    def detach(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        super().detach()


class MessageCounter(_Observer):
    """Counts committed messages per project and fires a reminder every N."""

    def __init__(
        self,
        bus: EventBus,
        threshold: int = 10,
        on_reminder: Callable[[str, int], Any] | None = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        super().__init__(bus)
        self.threshold = threshold
        self._on_reminder = on_reminder
        self._counts: dict[str, int] = defaultdict(int)
        self._subscribe(EventKind.MESSAGE_ADDED, self._on_message)

    def count(self, project_id: str) -> int:
        return self._counts.get(project_id, 0)

    def reset(self, project_id: str) -> None:
        self._counts.pop(project_id, None)

    def _on_message(self, event: MessageAdded) -> None:
        # Streaming opens are not committed messages yet.
        if event.streaming:
            return
        self._counts[event.project_id] += 1
        total = self._counts[event.project_id]
        if total % self.threshold == 0 and self._on_reminder is not None:
            _run_callback(self._on_reminder, event.project_id, total)


class CompletionMonitor(_Observer):
    """Reports generations that finish while their session is not in focus."""

    def __init__(
        self,
        bus: EventBus,
        on_complete: Callable[[str, str], Any],
        is_focused: Callable[[str], bool] | None = None,
    ) -> None:
        super().__init__(bus)
        self._on_complete = on_complete
        self._is_focused = is_focused or (lambda session_id: False)
        self._running: set[str] = set()
        self._subscribe(EventKind.LOADING_CHANGED, self._on_loading)

    def _on_loading(self, event: LoadingChanged) -> None:
        if event.is_loading:
            self._running.add(event.session_id)
            return
        if event.session_id not in self._running:
            return
        self._running.discard(event.session_id)
        if not self._is_focused(event.session_id):
            _run_callback(self._on_complete, event.session_id, event.project_id)
