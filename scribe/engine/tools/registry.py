"""Tool resolution and execution for one session.

Resolution is by exact name, in priority order: project-local tools,
injected custom tools, MCP-discovered tools, built-in tools. A name
defined in a higher layer shadows the same name below it.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from scribe.engine.errors import (
    ToolCallTimeoutError,
    ToolExecutionError,
    ToolNotFoundError,
)

from .base import Tool, ToolResult

logger = logging.getLogger(__name__)

LAYERS = ("project", "custom", "mcp", "builtin")


class ToolRegistry:
    """Layered tool lookup plus a never-raising executor."""

    def __init__(
        self,
        *,
        project: Mapping[str, Tool] | None = None,
        custom: Mapping[str, Tool] | None = None,
        mcp: Mapping[str, Tool] | None = None,
        builtin: Mapping[str, Tool] | None = None,
        timeout_seconds: float = 0.0,
    ) -> None:
        self._layers: dict[str, dict[str, Tool]] = {
            "project": dict(project or {}),
            "custom": dict(custom or {}),
            "mcp": dict(mcp or {}),
            "builtin": dict(builtin or {}),
        }
        self._timeout = timeout_seconds
        self._validators: dict[int, Draft7Validator] = {}

    def set_layer(self, layer: str, tools: Mapping[str, Tool]) -> None:
        """Replace one layer, e.g. after MCP discovery completes."""
        if layer not in self._layers:
            raise ValueError(f"Unknown tool layer {layer!r}; expected one of {LAYERS}")
        self._layers[layer] = dict(tools)

    def resolve(self, name: str) -> Tool | None:
        for layer in LAYERS:
            found = self._layers[layer].get(name)
            if found is not None:
                return found
        return None

    def source_of(self, name: str) -> str | None:
        for layer in LAYERS:
            if name in self._layers[layer]:
                return layer
        return None

    def names(self) -> list[str]:
        seen: list[str] = []
        for layer in LAYERS:
            for name in self._layers[layer]:
                if name not in seen:
                    seen.append(name)
        return seen

    def schemas(self) -> list[dict[str, Any]]:
        """Function schemas of every resolvable tool, highest priority wins."""
        return [self.resolve(name).schema() for name in self.names()]  # type: ignore[union-attr]

    def _validator(self, tool: Tool) -> Draft7Validator | None:
        key = id(tool)
        if key not in self._validators:
            try:
                Draft7Validator.check_schema(tool.input_schema)
            except SchemaError:
                logger.warning("Tool %s has an invalid input schema; skipping validation", tool.name)
                self._validators[key] = None  # type: ignore[assignment]
            else:
                self._validators[key] = Draft7Validator(tool.input_schema)
        return self._validators[key]

    def _parse_args(self, tool: Tool, args: Any) -> dict[str, Any]:
        if isinstance(args, str):
            try:
                args = json.loads(args) if args.strip() else {}
            except json.JSONDecodeError as exc:
                raise ToolExecutionError(
                    tool.name, f"error parsing arguments: {exc.msg}",
                ) from exc
        if args is None:
            args = {}
        if not isinstance(args, dict):
            raise ToolExecutionError(tool.name, "arguments must be a JSON object")
        validator = self._validator(tool)
        if validator is not None:
            errors = sorted(validator.iter_errors(args), key=lambda e: list(e.path))
            if errors:
                first = errors[0]
                where = ".".join(str(p) for p in first.path)
                detail = f"{where}: {first.message}" if where else first.message
                raise ToolExecutionError(tool.name, f"invalid arguments: {detail}")
        return args

    async def execute(self, name: str, args: Any) -> ToolResult:
        """Run a tool call. Failures come back as ``is_error`` results.

        Only asyncio.CancelledError propagates, so a stopped generation can
        unwind through a running tool.
        """
        try:
            tool = self.resolve(name)
            if tool is None:
                raise ToolNotFoundError(name)
            parsed = self._parse_args(tool, args)
            if self._timeout > 0:
                try:
                    output = await asyncio.wait_for(tool.execute(parsed), self._timeout)
                except asyncio.TimeoutError as exc:
                    raise ToolCallTimeoutError(name, self._timeout) from exc
            else:
                output = await tool.execute(parsed)
        except asyncio.CancelledError:
            raise
        except ToolExecutionError as exc:
            logger.info("Tool %s failed: %s", name, exc)
            return ToolResult(output=str(exc), is_error=True)
        except Exception as exc:
            logger.warning("Tool %s raised", name, exc_info=True)
            return ToolResult(
                output=f"Error executing tool {name}: {exc or type(exc).__name__}",
                is_error=True,
            )
        if not isinstance(output, str):
            output = str(output)
        return ToolResult(output=output, is_error=False)
