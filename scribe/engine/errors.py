"""Exception hierarchy for the session orchestrator.

Only ConfigError escapes to callers. Provider and tool failures are
turned into conversation content inside the agent loop.
"""
from __future__ import annotations


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""


class ConfigError(OrchestrationError):
    """Missing or invalid session or engine configuration."""
    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Invalid configuration for '{field_name}': {reason}")


class ProviderError(OrchestrationError):
    """Transport or model failure while streaming a completion."""
    def __init__(
        self,
        provider_name: str,
        reason: str,
        *,
        status: int | None = None,
    ):
        self.provider_name = provider_name
        self.reason = reason
        self.status = status
        prefix = f"HTTP {status} from " if status is not None else ""
        super().__init__(f"{prefix}provider '{provider_name}': {reason}")


class ProviderNotAvailableError(ProviderError):
    """Requested provider is not configured."""
    def __init__(self, provider_name: str, available: list[str]):
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            provider_name,
            f"not configured. Available providers: {avail_str}",
        )


class ToolExecutionError(OrchestrationError):
    """A tool failed while executing a single call."""
    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Error executing tool {tool_name}: {reason}")


class ToolNotFoundError(ToolExecutionError):
    """No tool with the requested name is available to the session."""
    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        self.reason = "tool is not available"
        OrchestrationError.__init__(self, f"Tool {tool_name} is not available")


class ToolCallTimeoutError(ToolExecutionError):
    """A single tool call exceeded its time budget."""
    def __init__(self, tool_name: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(tool_name, f"timed out after {timeout_seconds}s")
