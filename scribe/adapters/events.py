"""Event types emitted by the session orchestrator.

The set of kinds is closed: every event is one of the dataclasses below
and carries exactly the payload for its kind.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from scribe.shared.models.message import Message, ToolCallPart, part_from_dict, part_to_dict


class EventKind(str, Enum):
    SESSION_CREATED = "session_created"
    SESSION_DELETED = "session_deleted"
    SESSION_UPDATED = "session_updated"
    MESSAGE_ADDED = "message_added"
    STREAMING_UPDATE = "streaming_update"
    LOADING_CHANGED = "loading_changed"
    FILE_CHANGED = "file_changed"


@dataclass
class SessionEvent:
    """Base event; every event is tagged with its session and project."""
    session_id: str = ""
    project_id: str = ""

    kind = None  # type: EventKind | None


@dataclass
class SessionCreated(SessionEvent):
    kind = EventKind.SESSION_CREATED
    project_name: str = ""


@dataclass
class SessionDeleted(SessionEvent):
    kind = EventKind.SESSION_DELETED


@dataclass
class SessionUpdated(SessionEvent):
    kind = EventKind.SESSION_UPDATED
    message_count: int = 0
    is_loading: bool = False
    session_name: str = ""


@dataclass
class MessageAdded(SessionEvent):
    """A message entered the conversation.

    ``streaming`` is True when an assistant message was opened for
    streaming and False when a message was committed to history.
    """
    kind = EventKind.MESSAGE_ADDED
    message: Message | None = None
    streaming: bool = False


@dataclass
class StreamingUpdate(SessionEvent):
    """Cumulative snapshot of the message currently being streamed."""
    kind = EventKind.STREAMING_UPDATE
    message_id: str = ""
    content: str = ""
    tool_calls: list[ToolCallPart] = field(default_factory=list)


@dataclass
class LoadingChanged(SessionEvent):
    kind = EventKind.LOADING_CHANGED
    is_loading: bool = False


@dataclass
class FileChanged(SessionEvent):
    """A file was created, modified, or deleted by a tool call."""
    kind = EventKind.FILE_CHANGED
    file_path: str = ""
    change_type: str = ""  # "create", "modify", "delete"
    tool_name: str = ""


EVENT_TYPES: dict[EventKind, type[SessionEvent]] = {
    EventKind.SESSION_CREATED: SessionCreated,
    EventKind.SESSION_DELETED: SessionDeleted,
    EventKind.SESSION_UPDATED: SessionUpdated,
    EventKind.MESSAGE_ADDED: MessageAdded,
    EventKind.STREAMING_UPDATE: StreamingUpdate,
    EventKind.LOADING_CHANGED: LoadingChanged,
    EventKind.FILE_CHANGED: FileChanged,
}


def event_to_dict(event: SessionEvent) -> dict[str, Any]:
    """Convert a typed event to a plain dict for JSON serialization."""
    d: dict[str, Any] = {"event": event.kind.value if event.kind else ""}
    for name in event.__dataclass_fields__:
        val = getattr(event, name)
        if val is None:
            continue
        if isinstance(val, Message):
            val = val.to_dict()
        elif name == "tool_calls":
            val = [part_to_dict(p) for p in val]
        d[name] = val
    return d


def dict_to_event(data: dict[str, Any]) -> SessionEvent:
    """Rebuild a typed event from ``event_to_dict`` output.

    Raises ValueError for an event name outside the closed set of kinds.
    """
    cls = EVENT_TYPES[EventKind(data.get("event", ""))]
    valid_fields = set(cls.__dataclass_fields__)
    kwargs = {k: v for k, v in data.items() if k in valid_fields}
    if isinstance(kwargs.get("message"), dict):
        kwargs["message"] = Message.from_dict(kwargs["message"])
    if "tool_calls" in kwargs:
        kwargs["tool_calls"] = [part_from_dict(p) for p in kwargs["tool_calls"]]
    return cls(**kwargs)
