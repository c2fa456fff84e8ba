"""Streaming agent loop for one generation request.

One AgentLoop drives a session from the current history to a final
assistant answer:

    request -> consume chunks -> execute tool calls -> request again ...

until the model stops calling tools, the step budget runs out, the user
stops the generation, or the provider fails.

STEP BUDGET:
    Every provider round-trip is one step, whether it produced text,
    tool calls, or both. With ``max_steps`` exhausted the loop ends in
    FINISHED and leaves the conversation as it is.

FAILURE MODEL:
    Nothing escapes run() except asyncio.CancelledError from a
    task-level cancel. Provider failures become an assistant message
    describing the error, tool failures become ``is_error`` results, and
    a user stop finalizes the partial message. ``is_loading`` is reset
    and ``loading_changed`` emitted exactly once on every exit path.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from scribe.adapters.events import (
    LoadingChanged,
    MessageAdded,
    SessionEvent,
    SessionUpdated,
    StreamingUpdate,
)
from scribe.shared.models.message import (
    Message,
    ToolCallPart,
    ToolResultPart,
    gen_tool_call_id,
)

from .cancellation import CANCELLED, CancellationToken
from .errors import ProviderError
from .lifecycle import validate_transition
from .models import GenerationOutcome, LoopState
from .providers.base import (
    ChatRequest,
    FinishChunk,
    StreamChunk,
    TextDelta,
    ToolCallChunk,
    ToolResultChunk,
)

if TYPE_CHECKING:
    from scribe.adapters.event_bus import EventBus
    from scribe.shared.models.session import Session

    from .providers.registry import ProviderRegistry
    from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

CANCELLED_TOOL_OUTPUT = "Tool call was cancelled before it completed"
ABORTED_TOOL_OUTPUT = "Tool call was not executed because generation failed"

# (session, committed message) -> None
CommitCallback = Callable[["Session", Message], None]


def describe_provider_error(exc: BaseException) -> str:
    """User-facing text for a failed generation."""
    status = getattr(exc, "status", None)
    text = str(exc)
    lowered = text.lower()
    if isinstance(exc, ProviderError) and "network error" in lowered:
        return (
            "Network error: Unable to connect to AI service. Please check "
            "your internet connection and AI settings."
        )
    if status in (401, 403) or "api key" in lowered:
        return "Authentication error: Please check your API key in AI settings."
    if status == 429 or "rate limit" in lowered:
        return "Rate limit exceeded. Please wait a moment before trying again."
    if text:
        return f"AI service error: {text}"
    return "Sorry, I encountered an unexpected error. Please try again."


class AgentLoop:
    """Runs provider round-trips and tool calls for one session.

    The loop is the only writer of its session's ``streaming_message``,
    ``messages`` and ``is_loading`` while it runs.
    """

    def __init__(
        self,
        session: Session,
        *,
        provider_model: str,
        providers: ProviderRegistry,
        tools: ToolRegistry,
        bus: EventBus,
        cancel_token: CancellationToken | None = None,
        on_commit: CommitCallback | None = None,
        setup: Callable[[ToolRegistry], Awaitable[Any]] | None = None,
    ) -> None:
        self._session = session
        self._provider_model = provider_model
        self._providers = providers
        self._tools = tools
        self._bus = bus
        self.cancel_token = cancel_token or CancellationToken()
        self._on_commit = on_commit
        self._setup = setup

        self._state = LoopState.IDLE
        self._steps = 0
        self._tool_calls = 0
        self._error: str | None = None
        self._budget_exhausted = False
        self._started = False
        self._known_call_ids: set[str] = set()
        self._step_id_map: dict[str, str] = {}

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def session_id(self) -> str:
        return self._session.id

    # ── lifecycle ──

    def begin(self) -> None:
        """Mark the session busy. Called synchronously before the task starts."""
        if self._started:
            return
        self._started = True
        self._session.is_loading = True
        self._session.touch()
        self._emit(LoadingChanged(is_loading=True))
        self._emit_session_updated()

    async def run(self) -> GenerationOutcome:
        """Execute the generation to a terminal state."""
        self.begin()
        try:
            await self._run_steps()
        except asyncio.CancelledError:
            logger.info("Generation task for session %s cancelled", self.session_id[:8])
            self._finish_cancelled()
            raise
        except Exception as exc:
            if isinstance(exc, ProviderError):
                logger.warning(
                    "Provider failure in session %s: %s", self.session_id[:8], exc,
                )
            else:
                logger.exception(
                    "Unexpected failure in agent loop for session %s",
                    self.session_id[:8],
                )
            self._fail(exc)
        finally:
            self._end()
        return self.outcome()

    def outcome(self) -> GenerationOutcome:
        return GenerationOutcome(
            session_id=self.session_id,
            state=self._state,
            steps=self._steps,
            tool_calls=self._tool_calls,
            error=self._error,
            budget_exhausted=self._budget_exhausted,
        )

    def _end(self) -> None:
        session = self._session
        if session.streaming_message is not None:
            # Every exit path commits the open message; this is a fallback
            # for a failure inside the commit itself.
            logger.warning(
                "Session %s still had a streaming message at loop exit",
                self.session_id[:8],
            )
            session.streaming_message = None
        session.is_loading = False
        session.touch()
        self._emit_session_updated()
        self._emit(LoadingChanged(is_loading=False))
        logger.info(
            "Generation for session %s ended: state=%s steps=%d tool_calls=%d",
            self.session_id[:8], self._state.value, self._steps, self._tool_calls,
        )

    def _transition(self, target: LoopState) -> None:
        validate_transition(self._state, target)
        if target != self._state:
            logger.debug(
                "Loop %s: %s -> %s", self.session_id[:8], self._state.value, target.value,
            )
        self._state = target

    # ── main loop ──

    async def _run_steps(self) -> None:
        session = self._session
        token = self.cancel_token
        transport, model = self._providers.resolve(self._provider_model)
        if self._setup is not None:
            # Async tool discovery (MCP servers).
            if await token.race(self._setup(self._tools)) is CANCELLED:
                self._finish_cancelled()
                return
        schemas = self._tools.schemas()
        self._known_call_ids = {
            call.id for msg in session.messages for call in msg.tool_calls
        }

        while self._steps < session.max_steps:
            if token.cancelled:
                self._finish_cancelled()
                return
            self._steps += 1
            self._step_id_map = {}
            self._transition(LoopState.REQUESTING)
            request = ChatRequest(
                model=model,
                messages=list(session.messages),
                system_prompt=session.system_prompt,
                tools=schemas,
            )
            logger.debug(
                "Session %s step %d/%d via %s/%s",
                self.session_id[:8], self._steps, session.max_steps,
                transport.name, model,
            )

            stream = transport.stream(request, cancel_token=token)
            try:
                while True:
                    if token.cancelled:
                        self._finish_cancelled()
                        return
                    try:
                        chunk = await token.race(stream.__anext__())
                    except StopAsyncIteration:
                        break
                    if chunk is CANCELLED:
                        self._finish_cancelled()
                        return
                    if isinstance(chunk, FinishChunk):
                        logger.debug(
                            "Session %s step %d finished: %s",
                            self.session_id[:8], self._steps, chunk.reason,
                        )
                        break
                    self._apply_chunk(chunk)
            finally:
                await _close_stream(stream)

            message = session.streaming_message
            has_tool_calls = message is not None and bool(message.tool_calls)
            if has_tool_calls:
                self._transition(LoopState.TOOL_EXECUTING)
                if not await self._execute_tool_calls(message):
                    self._finish_cancelled()
                    return
            if message is not None:
                self._commit_streaming()
            if not has_tool_calls:
                self._transition(LoopState.FINISHED)
                return

        self._budget_exhausted = True
        logger.info(
            "Session %s reached its step budget (%d)",
            self.session_id[:8], session.max_steps,
        )
        self._transition(LoopState.FINISHED)

    async def _execute_tool_calls(self, message: Message) -> bool:
        """Run unanswered calls in order. Returns False if cancelled."""
        token = self.cancel_token
        for call in message.unanswered_tool_calls():
            if token.cancelled:
                return False
            logger.info(
                "Session %s executing tool %s (%s)",
                self.session_id[:8], call.name, call.id,
            )
            result = await token.race(self._tools.execute(call.name, call.args))
            if result is CANCELLED:
                return False
            message.parts.append(
                ToolResultPart(
                    tool_call_id=call.id,
                    output=result.output,
                    is_error=result.is_error,
                )
            )
            self._tool_calls += 1
            self._emit_streaming_update(message)
        return True

    # ── chunk handling ──

    def _apply_chunk(self, chunk: StreamChunk) -> None:
        if isinstance(chunk, TextDelta):
            if not chunk.text:
                return
            message = self._ensure_open_message()
            message.append_text(chunk.text)
            self._transition(LoopState.STREAMING)
            self._emit_streaming_update(message)
        elif isinstance(chunk, ToolCallChunk):
            message = self._ensure_open_message()
            call_id = self._claim_call_id(chunk.id)
            message.parts.append(
                ToolCallPart(id=call_id, name=chunk.name, args=chunk.args)
            )
            self._transition(LoopState.TOOL_CALL)
            self._emit_streaming_update(message)
        elif isinstance(chunk, ToolResultChunk):
            message = self._ensure_open_message()
            call_id = self._step_id_map.get(chunk.tool_call_id, chunk.tool_call_id)
            pending = {c.id for c in message.unanswered_tool_calls()}
            if call_id not in pending:
                logger.warning(
                    "Session %s: dropping provider tool result for unknown or "
                    "already answered call %s",
                    self.session_id[:8], chunk.tool_call_id,
                )
                return
            message.parts.append(
                ToolResultPart(
                    tool_call_id=call_id,
                    output=chunk.output,
                    is_error=chunk.is_error,
                )
            )
            self._tool_calls += 1
            self._emit_streaming_update(message)
        else:
            logger.warning("Session %s: ignoring unknown chunk %r", self.session_id[:8], chunk)

    def _claim_call_id(self, provider_id: str) -> str:
        """Return a session-unique id for a provider tool call id."""
        call_id = provider_id
        if not call_id or call_id in self._known_call_ids:
            call_id = gen_tool_call_id()
            while call_id in self._known_call_ids:
                call_id = gen_tool_call_id()
            if provider_id:
                logger.warning(
                    "Session %s: tool call id %s reused by provider; using %s",
                    self.session_id[:8], provider_id, call_id,
                )
        if provider_id:
            self._step_id_map[provider_id] = call_id
        self._known_call_ids.add(call_id)
        return call_id

    def _ensure_open_message(self) -> Message:
        session = self._session
        if session.streaming_message is None:
            message = Message.assistant(streaming=True)
            session.streaming_message = message
            session.touch()
            self._emit(MessageAdded(message=message, streaming=True))
        return session.streaming_message

    def _commit_streaming(self) -> None:
        session = self._session
        message = session.streaming_message
        if message is None:
            return
        message.is_streaming = False
        session.streaming_message = None
        session.messages.append(message)
        session.touch()
        self._emit(MessageAdded(message=message, streaming=False))
        self._emit_session_updated()
        if self._on_commit is not None:
            try:
                self._on_commit(session, message)
            except Exception:
                logger.exception("Commit hook failed for session %s", self.session_id[:8])

    def _close_open_calls(self, message: Message, output: str) -> None:
        for call in message.unanswered_tool_calls():
            message.parts.append(
                ToolResultPart(tool_call_id=call.id, output=output, is_error=True)
            )

    # ── terminal paths ──

    def _finish_cancelled(self) -> None:
        if self._state.is_terminal:
            return
        message = self._session.streaming_message
        if message is not None:
            self._close_open_calls(message, CANCELLED_TOOL_OUTPUT)
            self._commit_streaming()
        logger.info(
            "Generation for session %s cancelled (%s)",
            self.session_id[:8], self.cancel_token.reason,
        )
        self._transition(LoopState.CANCELLED)

    def _fail(self, exc: BaseException) -> None:
        if self._state.is_terminal:
            return
        text = describe_provider_error(exc)
        message = self._ensure_open_message()
        self._close_open_calls(message, ABORTED_TOOL_OUTPUT)
        message.append_text(f"\n\n{text}" if message.text else text)
        self._emit_streaming_update(message)
        self._commit_streaming()
        self._error = text
        self._transition(LoopState.ERROR)

    # ── events ──

    def _emit(self, event: SessionEvent) -> None:
        event.session_id = self._session.id
        event.project_id = self._session.project_id
        self._bus.emit(event)

    def _emit_streaming_update(self, message: Message) -> None:
        self._session.touch()
        self._emit(
            StreamingUpdate(
                message_id=message.id,
                content=message.text,
                tool_calls=list(message.tool_calls),
            )
        )

    def _emit_session_updated(self) -> None:
        session = self._session
        self._emit(
            SessionUpdated(
                message_count=len(session.messages),
                is_loading=session.is_loading,
                session_name=session.session_name,
            )
        )


async def _close_stream(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.debug("Error closing provider stream", exc_info=True)
