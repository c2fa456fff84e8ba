"""Session state: one AI conversation bound to a project."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from scribe.shared.models.message import Message
from scribe.shared.services.session_naming import generate_session_name

if TYPE_CHECKING:
    from scribe.engine.tools.base import Tool
    from scribe.engine.tools.mcp_tools import McpServerConfig


DEFAULT_MAX_STEPS = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionConfig:
    """Per-session configuration, fixed at creation.

    ``tools`` selects the built-in tools offered to the model. ``None``
    means the full built-in set rooted at ``project_dir``.
    """

    project_id: str
    project_name: str = ""
    session_id: str | None = None
    tools: Mapping[str, Tool] | None = field(default=None, repr=False)
    custom_tools: Mapping[str, Tool] = field(default_factory=dict, repr=False)
    system_prompt: str | None = None
    max_steps: int = DEFAULT_MAX_STEPS
    project_dir: Path | None = None
    mcp_servers: tuple[McpServerConfig, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Serializable subset; tool objects are rebuilt on load."""
        return {
            "project_id": self.project_id,
            "project_name": self.project_name,
            "session_id": self.session_id,
            "custom_tool_names": sorted(self.custom_tools),
            "system_prompt": self.system_prompt,
            "max_steps": self.max_steps,
            "project_dir": str(self.project_dir) if self.project_dir else None,
        }


@dataclass
class Session:
    """Holds all conversation state for a session."""

    project_id: str
    project_name: str
    config: SessionConfig
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    messages: list[Message] = field(default_factory=list)
    streaming_message: Message | None = None
    is_loading: bool = False
    session_name: str = field(default_factory=generate_session_name)
    last_activity: datetime = field(default_factory=_utcnow)

    @property
    def system_prompt(self) -> str | None:
        return self.config.system_prompt

    @property
    def max_steps(self) -> int:
        return self.config.max_steps

    @property
    def tools(self) -> Mapping[str, Tool] | None:
        return self.config.tools

    @property
    def custom_tools(self) -> Mapping[str, Tool]:
        return self.config.custom_tools

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def touch(self) -> None:
        self.last_activity = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        """Persisted form. Runtime state (loading, streaming) is dropped."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "session_name": self.session_name,
            "last_activity": self.last_activity.isoformat(),
            "messages": [m.to_dict() for m in self.messages],
            "config": self.config.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], config: SessionConfig) -> Session:
        last_activity = data.get("last_activity")
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            project_name=data.get("project_name", ""),
            config=config,
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            session_name=data.get("session_name") or generate_session_name(),
            last_activity=(
                datetime.fromisoformat(last_activity) if last_activity else _utcnow()
            ),
        )
