"""Streaming chat transports for the agent loop."""
from .base import (
    ChatRequest,
    ChatTransport,
    FinishChunk,
    StreamChunk,
    TextDelta,
    ToolCallChunk,
    ToolResultChunk,
)
from .openai_compat import OpenAICompatibleTransport, to_chat_messages
from .registry import ProviderRegistry, build_provider_registry, parse_provider_model

__all__ = [
    "ChatRequest",
    "ChatTransport",
    "FinishChunk",
    "StreamChunk",
    "TextDelta",
    "ToolCallChunk",
    "ToolResultChunk",
    "OpenAICompatibleTransport",
    "to_chat_messages",
    "ProviderRegistry",
    "build_provider_registry",
    "parse_provider_model",
]
