"""Scribe engine: multi-project AI session orchestration with streaming tool use."""
from .models import GenerationOutcome, LoopState
from .config import OrchestratorConfig
from .errors import (
    ConfigError,
    OrchestrationError,
    ProviderError,
    ProviderNotAvailableError,
    ToolCallTimeoutError,
    ToolExecutionError,
    ToolNotFoundError,
)

__all__ = [
    # Registry and loop (lazy import to avoid circular deps)
    "SessionRegistry",
    "build_registry",
    "AgentLoop",
    "CancellationToken",
    # Models
    "GenerationOutcome",
    "LoopState",
    # Config
    "OrchestratorConfig",
    "ScribeConfig",
    "load_yaml_config",
    # Providers (lazy import)
    "ChatTransport",
    "ProviderRegistry",
    "OpenAICompatibleTransport",
    # Tools (lazy import)
    "Tool",
    "ToolRegistry",
    # Errors
    "ConfigError",
    "OrchestrationError",
    "ProviderError",
    "ProviderNotAvailableError",
    "ToolCallTimeoutError",
    "ToolExecutionError",
    "ToolNotFoundError",
]


def __getattr__(name: str):
    if name == "SessionRegistry":
        from .session_registry import SessionRegistry
        return SessionRegistry
    if name == "build_registry":
        from .session_registry import build_registry
        return build_registry
    if name == "AgentLoop":
        from .agent_loop import AgentLoop
        return AgentLoop
    if name == "CancellationToken":
        from .cancellation import CancellationToken
        return CancellationToken
    if name == "ScribeConfig":
        from .yaml_config import ScribeConfig
        return ScribeConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ChatTransport":
        from .providers.base import ChatTransport
        return ChatTransport
    if name == "ProviderRegistry":
        from .providers.registry import ProviderRegistry
        return ProviderRegistry
    if name == "OpenAICompatibleTransport":
        from .providers.openai_compat import OpenAICompatibleTransport
        return OpenAICompatibleTransport
    if name == "Tool":
        from .tools.base import Tool
        return Tool
    if name == "ToolRegistry":
        from .tools.registry import ToolRegistry
        return ToolRegistry
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
