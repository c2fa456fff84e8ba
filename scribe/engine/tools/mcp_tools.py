"""Tools discovered from MCP servers.

Each configured server is connected with an ``mcp`` ClientSession; its
tools are exposed as ``<server>__<tool>`` so names from different servers
never collide with each other or with built-in tools.
"""
from __future__ import annotations

import logging
import os
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any

from mcp import types
from mcp.client.session import ClientSession

from scribe.engine.errors import ConfigError, ToolExecutionError

from .base import Tool

logger = logging.getLogger(__name__)


def _expand_env_vars(env: dict[str, str]) -> dict[str, str]:
    """Expand ``${VAR}`` references in env/header values."""
    result = {}
    for key, value in env.items():
        if value.startswith("${") and value.endswith("}"):
            result[key] = os.environ.get(value[2:-1], "")
        else:
            result[key] = value
    return result


@dataclass(frozen=True)
class McpServerConfig:
    """How to reach one MCP server."""
    name: str
    transport: str = "stdio"  # "stdio" or "streamable-http"
    command: str | None = None
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict, hash=False)
    url: str | None = None

    def validate(self) -> None:
        if self.transport == "stdio" and not self.command:
            raise ConfigError(f"mcp_servers.{self.name}.command", "required for stdio transport")
        if self.transport == "streamable-http" and not self.url:
            raise ConfigError(f"mcp_servers.{self.name}.url", "required for streamable-http transport")
        if self.transport not in ("stdio", "streamable-http"):
            raise ConfigError(
                f"mcp_servers.{self.name}.transport",
                f"unsupported transport {self.transport!r}",
            )


class McpTool(Tool):
    """Proxy for one tool on a connected MCP server."""

    def __init__(self, server: str, info: types.Tool, session: ClientSession) -> None:
        self.server = server
        self.remote_name = info.name
        self.name = f"{server}__{info.name}"
        self.description = info.description or ""
        self.input_schema = info.inputSchema or {"type": "object", "properties": {}}
        self._session = session

    async def execute(self, args: dict[str, Any]) -> str:
        result = await self._session.call_tool(self.remote_name, args)
        texts = []
        for block in result.content:
            if isinstance(block, types.TextContent):
                texts.append(block.text)
            elif isinstance(block, types.ImageContent):
                texts.append(f"[image {block.mimeType}]")
            elif isinstance(block, types.EmbeddedResource):
                res = block.resource
                texts.append(getattr(res, "text", None) or f"[resource {res.uri}]")
        output = "\n".join(texts)
        if result.isError:
            raise ToolExecutionError(self.name, output or "MCP server reported an error")
        return output


class McpToolSource:
    """Connects to MCP servers and exposes their tools.

    Servers that fail to connect are logged and skipped so one broken
    server does not take the others down.
    """

    def __init__(self, servers: tuple[McpServerConfig, ...] | list[McpServerConfig]) -> None:
        self._servers = list(servers)
        self._stack: AsyncExitStack | None = None
        self._tools: dict[str, Tool] = {}
        self.errors: dict[str, str] = {}

    @property
    def tools(self) -> dict[str, Tool]:
        return dict(self._tools)

    async def connect(self) -> dict[str, Tool]:
        if self._stack is not None:
            return self.tools
        self._stack = AsyncExitStack()
        for server in self._servers:
            try:
                server.validate()
                session = await self._open(server)
                listed = await session.list_tools()
            except Exception as exc:
                self.errors[server.name] = str(exc)
                logger.error("Failed to connect to MCP server '%s': %s", server.name, exc)
                continue
            for info in listed.tools:
                mcp_tool = McpTool(server.name, info, session)
                self._tools[mcp_tool.name] = mcp_tool
            logger.info(
                "Connected to MCP server '%s' with %d tools",
                server.name, len(listed.tools),
            )
        return self.tools

    async def _open(self, server: McpServerConfig) -> ClientSession:
        assert self._stack is not None
        if server.transport == "stdio":
            from mcp.client.stdio import StdioServerParameters, stdio_client

            env = dict(os.environ)
            env.update(_expand_env_vars(server.env))
            params = StdioServerParameters(
                command=server.command, args=list(server.args), env=env,
            )
            streams = await self._stack.enter_async_context(stdio_client(params))
        else:
            from mcp.client.streamable_http import streamablehttp_client

            streams = await self._stack.enter_async_context(
                streamablehttp_client(server.url)
            )
        read_stream, write_stream = streams[0], streams[1]
        session = await self._stack.enter_async_context(
            ClientSession(read_stream, write_stream)
        )
        await session.initialize()
        return session

    async def close(self) -> None:
        if self._stack is None:
            return
        try:
            await self._stack.aclose()
        except Exception:
            logger.warning("Error closing MCP connections", exc_info=True)
        self._stack = None
        self._tools = {}
