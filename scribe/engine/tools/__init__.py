"""Tool capabilities available to agent loops."""
from .base import FunctionTool, Tool, ToolContext, ToolResult, tool
from .builtins import build_builtin_tools
from .mcp_tools import McpServerConfig, McpToolSource
from .project_tools import load_project_tools
from .registry import ToolRegistry

__all__ = [
    "FunctionTool",
    "Tool",
    "ToolContext",
    "ToolResult",
    "tool",
    "build_builtin_tools",
    "McpServerConfig",
    "McpToolSource",
    "load_project_tools",
    "ToolRegistry",
]
