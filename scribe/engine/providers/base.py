"""Abstract base for streaming chat transports.

A transport sends the conversation plus tool schemas to a model and
yields an ordered stream of chunks. The agent loop reconstructs
assistant messages from those chunks; transports never touch session
state.
"""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Union

if TYPE_CHECKING:
    from scribe.engine.cancellation import CancellationToken
    from scribe.shared.models.message import Message

logger = logging.getLogger(__name__)


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallChunk:
    """A complete tool call. Transports accumulate argument deltas first."""
    id: str
    name: str
    args: Any = field(default_factory=dict)


@dataclass
class ToolResultChunk:
    """A result for a tool the provider executed itself."""
    tool_call_id: str
    output: str
    is_error: bool = False


@dataclass
class FinishChunk:
    """End of one provider round-trip."""
    reason: str | None = None


StreamChunk = Union[TextDelta, ToolCallChunk, ToolResultChunk, FinishChunk]


@dataclass
class ChatRequest:
    """Everything a transport needs for one round-trip."""
    model: str
    messages: list[Message]
    system_prompt: str | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)


class ChatTransport(abc.ABC):
    """Streaming chat-completion transport with tool calling."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'openai', 'openrouter')."""

    @abc.abstractmethod
    def stream(
        self,
        request: ChatRequest,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream one completion.

        Implementations are async generators. Failures raise ProviderError.
        The last chunk should be a FinishChunk.
        """

    def is_available(self) -> bool:
        """Whether this transport is configured well enough to be used."""
        return True

    async def shutdown(self) -> None:
        """Release network resources. Default no-op."""
        return None
