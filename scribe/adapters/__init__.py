"""Adapters package - event types, the event bus, and reference observers.

These connect the engine to whatever frontend watches the sessions.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "EventKind",
    "dict_to_event",
    "event_to_dict",
    "BusyIndicator",
    "AutoBuildDebouncer",
    "MessageCounter",
    "CompletionMonitor",
]

from scribe.adapters.event_bus import EventBus
from scribe.adapters.events import EventKind, dict_to_event, event_to_dict
from scribe.adapters.observers import (
    AutoBuildDebouncer,
    BusyIndicator,
    CompletionMonitor,
    MessageCounter,
)
