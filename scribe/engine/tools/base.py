"""Tool capability interface.

A tool takes JSON arguments and returns text. Tools signal failure by
raising; the ToolRegistry turns any failure into an ``is_error`` result
so a broken tool never aborts a conversation.
"""
from __future__ import annotations

import abc
import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

# (file_path, change_type, tool_name) -> None
FileChangeCallback = Callable[[str, str, str], None]


@dataclass
class ToolResult:
    output: str
    is_error: bool = False


@dataclass
class ToolContext:
    """Runtime context shared by the built-in tools of one session."""
    project_dir: Path
    on_file_changed: FileChangeCallback | None = None
    shell_timeout_seconds: float = 60.0
    npm_registry_url: str = "https://registry.npmjs.org"

    def notify_file_changed(self, path: Path, change_type: str, tool_name: str) -> None:
        if self.on_file_changed is None:
            return
        try:
            rel = path.relative_to(self.project_dir.resolve())
        except ValueError:
            rel = path
        self.on_file_changed(rel.as_posix(), change_type, tool_name)


class Tool(abc.ABC):
    """A named capability the model can call."""

    name: str = ""
    description: str = ""
    input_schema: dict[str, Any] = {"type": "object", "properties": {}}

    @abc.abstractmethod
    async def execute(self, args: dict[str, Any]) -> str:
        """Run the tool. Raise on failure."""

    def schema(self) -> dict[str, Any]:
        """Chat-completions function tool schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class FunctionTool(Tool):
    """Adapts a plain (sync or async) function into a Tool.

    Sync functions run in the default executor so they cannot block the
    event loop shared by every session.
    """

    def __init__(
        self,
        name: str,
        func: Callable[..., Any] | Callable[..., Awaitable[Any]],
        *,
        description: str = "",
        input_schema: dict[str, Any] | None = None,
    ) -> None:
        self.name = name
        self.description = description or (inspect.getdoc(func) or "").strip()
        self.input_schema = input_schema or {"type": "object", "properties": {}}
        self._func = func

    async def execute(self, args: dict[str, Any]) -> str:
        if inspect.iscoroutinefunction(self._func):
            result = await self._func(**args)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, lambda: self._func(**args))
        return result if isinstance(result, str) else str(result)


def tool(
    name: str | None = None,
    *,
    description: str = "",
    input_schema: dict[str, Any] | None = None,
) -> Callable[[Callable[..., Any]], FunctionTool]:
    """Decorator form of FunctionTool, used by project-local tool files."""

    def wrap(func: Callable[..., Any]) -> FunctionTool:
        return FunctionTool(
            name or func.__name__,
            func,
            description=description,
            input_schema=input_schema,
        )

    return wrap
