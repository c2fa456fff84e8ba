"""Message and content part models.

Assistant content is an ordered list of parts. Part order is the order in
which the provider emitted them and is preserved for re-rendering and
re-submission.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Union
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())[:8]


def gen_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class TextPart:
    text: str = ""

    kind: ClassVar[str] = "text"


@dataclass
class ToolCallPart:
    id: str
    name: str
    # Parsed JSON arguments. Holds the raw string when the provider sent
    # arguments that are not valid JSON; the executor reports that.
    args: Any = field(default_factory=dict)

    kind: ClassVar[str] = "tool-call"


@dataclass
class ToolResultPart:
    tool_call_id: str
    output: str = ""
    is_error: bool = False

    kind: ClassVar[str] = "tool-result"


ContentPart = Union[TextPart, ToolCallPart, ToolResultPart]


@dataclass
class Message:
    role: MessageRole
    parts: list[ContentPart] = field(default_factory=list)
    id: str = field(default_factory=_gen_id)
    timestamp: datetime = field(default_factory=_utcnow)
    is_streaming: bool = False

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=MessageRole.USER, parts=[TextPart(text)])

    @classmethod
    def assistant(cls, text: str = "", *, streaming: bool = False) -> Message:
        parts: list[ContentPart] = [TextPart(text)] if text else []
        return cls(role=MessageRole.ASSISTANT, parts=parts, is_streaming=streaming)

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]

    def append_text(self, delta: str) -> None:
        """Extend the trailing text part, or start a new one after a tool part."""
        if self.parts and isinstance(self.parts[-1], TextPart):
            self.parts[-1].text += delta
        else:
            self.parts.append(TextPart(delta))

    def unanswered_tool_calls(self) -> list[ToolCallPart]:
        answered = {r.tool_call_id for r in self.tool_results}
        return [c for c in self.tool_calls if c.id not in answered]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "timestamp": self.timestamp.isoformat(),
            "parts": [part_to_dict(p) for p in self.parts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        timestamp = data.get("timestamp")
        return cls(
            role=MessageRole(data["role"]),
            parts=[part_from_dict(p) for p in data.get("parts", [])],
            id=data.get("id") or _gen_id(),
            timestamp=(
                datetime.fromisoformat(timestamp) if timestamp else _utcnow()
            ),
        )


def part_to_dict(part: ContentPart) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": part.kind, "text": part.text}
    if isinstance(part, ToolCallPart):
        return {"type": part.kind, "id": part.id, "name": part.name, "args": part.args}
    return {
        "type": part.kind,
        "tool_call_id": part.tool_call_id,
        "output": part.output,
        "is_error": part.is_error,
    }


def part_from_dict(data: dict[str, Any]) -> ContentPart:
    kind = data.get("type")
    if kind == TextPart.kind:
        return TextPart(data.get("text", ""))
    if kind == ToolCallPart.kind:
        return ToolCallPart(
            id=data["id"], name=data["name"], args=data.get("args", {}),
        )
    if kind == ToolResultPart.kind:
        return ToolResultPart(
            tool_call_id=data["tool_call_id"],
            output=data.get("output", ""),
            is_error=bool(data.get("is_error", False)),
        )
    raise ValueError(f"Unknown content part type: {kind!r}")


def validate_history(messages: list[Message]) -> None:
    """Check tool call / tool result correlation across a history.

    Raises ValueError when a result references an unknown call id, when a
    call id is reused, or when a call gets more than one result.
    """
    seen_calls: set[str] = set()
    answered: set[str] = set()
    for index, msg in enumerate(messages):
        for part in msg.parts:
            if isinstance(part, ToolCallPart):
                if part.id in seen_calls:
                    raise ValueError(
                        f"Message {index} reuses tool call id {part.id!r}"
                    )
                seen_calls.add(part.id)
            elif isinstance(part, ToolResultPart):
                if part.tool_call_id not in seen_calls:
                    raise ValueError(
                        f"Message {index} has a tool result for unknown "
                        f"call id {part.tool_call_id!r}"
                    )
                if part.tool_call_id in answered:
                    raise ValueError(
                        f"Message {index} answers tool call "
                        f"{part.tool_call_id!r} twice"
                    )
                answered.add(part.tool_call_id)
