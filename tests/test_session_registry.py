"""Session registry behaviour: generation lifecycle, isolation, stop, delete."""
from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from scribe.adapters.event_bus import EventBus
from scribe.adapters.events import (
    EventKind,
    FileChanged,
    LoadingChanged,
    MessageAdded,
    SessionEvent,
    StreamingUpdate,
)
from scribe.engine.config import OrchestratorConfig
from scribe.engine.errors import ConfigError, ProviderError
from scribe.engine.models import LoopState
from scribe.engine.providers.base import (
    ChatRequest,
    ChatTransport,
    FinishChunk,
    TextDelta,
    ToolCallChunk,
)
from scribe.engine.providers.registry import ProviderRegistry
from scribe.engine.session_registry import SessionRegistry
from scribe.engine.tools.base import FunctionTool
from scribe.shared.models.message import Message, MessageRole, ToolResultPart, validate_history
from scribe.shared.models.session import SessionConfig
from scribe.shared.services.persistence import SessionPersistence


class _Stall:
    """Script item that blocks the stream until ``gate`` is set."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()


class _ScriptedTransport(ChatTransport):
    """Plays back one chunk script per round-trip, in request order."""

    def __init__(self, *scripts: list) -> None:
        self._scripts = list(scripts)
        self.requests: list[ChatRequest] = []

    @property
    def name(self) -> str:
        return "fake"

    async def stream(self, request, *, cancel_token=None):
        self.requests.append(request)
        script = self._scripts.pop(0) if self._scripts else [TextDelta("ok"), FinishChunk("stop")]
        for item in script:
            if isinstance(item, Exception):
                raise item
            if isinstance(item, _Stall):
                await item.gate.wait()
                continue
            yield item


class _AlwaysToolTransport(ChatTransport):
    @property
    def name(self) -> str:
        return "fake"

    async def stream(self, request, *, cancel_token=None):
        yield ToolCallChunk(id="", name="echo", args={"text": "again"})
        yield FinishChunk("tool_calls")


async def _echo(text: str) -> str:
    return text


ECHO = FunctionTool(
    "echo",
    _echo,
    description="Echo the given text",
    input_schema={
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    },
)


def _make_registry(
    tmp_path: Path,
    transport: ChatTransport,
    *,
    persistence: SessionPersistence | None = None,
) -> SessionRegistry:
    providers = ProviderRegistry()
    providers.register("fake", transport)
    config = OrchestratorConfig(
        data_dir=tmp_path / "data",
        projects_dir=tmp_path / "projects",
        persist_sessions=persistence is not None,
    )
    return SessionRegistry(
        EventBus(),
        providers,
        config,
        persistence=persistence,
        default_provider_model="fake/test-model",
    )


def _record(registry: SessionRegistry) -> list[SessionEvent]:
    events: list[SessionEvent] = []
    for kind in EventKind:
        registry.bus.on(kind, events.append)
    return events


def _session(registry: SessionRegistry, project_id: str = "site", **kwargs) -> str:
    kwargs.setdefault("tools", {})
    kwargs.setdefault("custom_tools", {"echo": ECHO})
    return registry.create_session(SessionConfig(project_id=project_id, **kwargs))


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# ── creation ──


def test_create_session_rejects_blank_project_id(tmp_path: Path) -> None:
    registry = _make_registry(tmp_path, _ScriptedTransport())
    with pytest.raises(ConfigError) as exc_info:
        registry.create_session(SessionConfig(project_id="  "))
    assert exc_info.value.field_name == "project_id"


def test_create_session_rejects_zero_max_steps(tmp_path: Path) -> None:
    registry = _make_registry(tmp_path, _ScriptedTransport())
    with pytest.raises(ConfigError) as exc_info:
        registry.create_session(SessionConfig(project_id="site", max_steps=0))
    assert exc_info.value.field_name == "max_steps"
    assert registry.get_all_sessions() == []


def test_create_session_emits_created_then_updated(tmp_path: Path) -> None:
    registry = _make_registry(tmp_path, _ScriptedTransport())
    events = _record(registry)

    session_id = _session(registry, project_name="My Site")

    assert [e.kind for e in events] == [EventKind.SESSION_CREATED, EventKind.SESSION_UPDATED]
    assert all(e.session_id == session_id and e.project_id == "site" for e in events)
    session = registry.get_session(session_id)
    assert session.project_name == "My Site"
    assert session.config.project_dir == tmp_path / "projects" / "site"


def test_project_lookup_returns_most_recent_session(tmp_path: Path) -> None:
    registry = _make_registry(tmp_path, _ScriptedTransport())
    first = _session(registry)
    second = _session(registry)
    other = _session(registry, project_id="blog")
    registry.get_session(first).touch()

    assert {s.id for s in registry.get_project_sessions("site")} == {first, second}
    assert registry.get_project_session("site").id == first
    assert registry.get_project_session("blog").id == other
    assert registry.get_project_session("missing") is None

    existing = registry.get_or_create_project_session(SessionConfig(project_id="blog"))
    assert existing.id == other
    created = registry.get_or_create_project_session(SessionConfig(project_id="docs"))
    assert created.project_id == "docs"


# ── generation ──


@pytest.mark.asyncio
async def test_streaming_events_arrive_in_order(tmp_path: Path) -> None:
    transport = _ScriptedTransport([TextDelta("Hi"), TextDelta(" there"), FinishChunk("stop")])
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)
    events = _record(registry)

    outcome = await registry.send_message(session_id, "hello")

    assert outcome.state == LoopState.FINISHED
    assert outcome.steps == 1
    updates = [e.content for e in events if isinstance(e, StreamingUpdate)]
    assert updates == ["Hi", "Hi there"]

    kinds = [e.kind for e in events]
    opened = next(
        i for i, e in enumerate(events) if isinstance(e, MessageAdded) and e.streaming
    )
    assert opened < kinds.index(EventKind.STREAMING_UPDATE)
    assert [e.is_loading for e in events if isinstance(e, LoadingChanged)] == [True, False]
    assert isinstance(events[-1], LoadingChanged) and events[-1].is_loading is False

    session = registry.get_session(session_id)
    assert [m.role for m in session.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert session.messages[-1].text == "Hi there"
    assert session.messages[-1].is_streaming is False
    assert session.is_loading is False
    assert session.streaming_message is None


@pytest.mark.asyncio
async def test_tool_calls_are_executed_and_correlated(tmp_path: Path) -> None:
    transport = _ScriptedTransport(
        [ToolCallChunk(id="call_1", name="echo", args={"text": "ping"}), FinishChunk("tool_calls")],
        [TextDelta("done"), FinishChunk("stop")],
    )
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)

    outcome = await registry.send_message(session_id, "use the tool")

    assert outcome.state == LoopState.FINISHED
    assert outcome.steps == 2
    assert outcome.tool_calls == 1
    session = registry.get_session(session_id)
    validate_history(session.messages)
    tool_msg = session.messages[1]
    assert [c.id for c in tool_msg.tool_calls] == ["call_1"]
    assert tool_msg.tool_results[0].tool_call_id == "call_1"
    assert tool_msg.tool_results[0].output == "ping"
    assert tool_msg.tool_results[0].is_error is False
    assert session.messages[-1].text == "done"

    # The second round-trip sees the tool result.
    second_request = transport.requests[1]
    assert second_request.messages[1].tool_results[0].output == "ping"
    assert second_request.model == "test-model"
    assert [t["function"]["name"] for t in second_request.tools] == ["echo"]


@pytest.mark.asyncio
async def test_unknown_tool_produces_error_result(tmp_path: Path) -> None:
    transport = _ScriptedTransport(
        [ToolCallChunk(id="call_x", name="nope", args={}), FinishChunk("tool_calls")],
        [TextDelta("sorry"), FinishChunk("stop")],
    )
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)

    outcome = await registry.send_message(session_id, "go")

    assert outcome.state == LoopState.FINISHED
    result = registry.get_session(session_id).messages[1].tool_results[0]
    assert result.is_error is True
    assert result.output == "Tool nope is not available"


@pytest.mark.asyncio
async def test_step_budget_of_one_stops_after_first_tool_step(tmp_path: Path) -> None:
    registry = _make_registry(tmp_path, _AlwaysToolTransport())
    session_id = _session(registry, max_steps=1)

    outcome = await registry.send_message(session_id, "loop forever")

    assert outcome.state == LoopState.FINISHED
    assert outcome.steps == 1
    assert outcome.budget_exhausted is True
    session = registry.get_session(session_id)
    assert len(session.messages) == 2
    assert session.messages[1].tool_results[0].output == "again"
    assert session.is_loading is False


@pytest.mark.asyncio
async def test_reused_provider_call_ids_are_replaced(tmp_path: Path) -> None:
    transport = _ScriptedTransport(
        [ToolCallChunk(id="call_1", name="echo", args={"text": "a"}), FinishChunk("tool_calls")],
        [ToolCallChunk(id="call_1", name="echo", args={"text": "b"}), FinishChunk("tool_calls")],
        [TextDelta("done"), FinishChunk("stop")],
    )
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)

    await registry.send_message(session_id, "twice")

    messages = registry.get_session(session_id).messages
    validate_history(messages)
    first_id = messages[1].tool_calls[0].id
    second_id = messages[2].tool_calls[0].id
    assert first_id == "call_1"
    assert second_id != "call_1"
    assert messages[2].tool_results[0].tool_call_id == second_id


@pytest.mark.asyncio
async def test_provider_error_becomes_visible_message(tmp_path: Path) -> None:
    transport = _ScriptedTransport([ProviderError("fake", "model overloaded", status=500)])
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)

    outcome = await registry.send_message(session_id, "hello")

    assert outcome.state == LoopState.ERROR
    session = registry.get_session(session_id)
    last = session.messages[-1]
    assert last.role == MessageRole.ASSISTANT
    assert last.text.startswith("AI service error:")
    assert "model overloaded" in last.text
    assert outcome.error == last.text
    assert session.is_loading is False


@pytest.mark.asyncio
async def test_rate_limit_error_has_friendly_text(tmp_path: Path) -> None:
    transport = _ScriptedTransport(
        [TextDelta("Working"), ProviderError("fake", "slow down", status=429)],
    )
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)

    await registry.send_message(session_id, "hello")

    last = registry.get_session(session_id).messages[-1]
    assert last.text.startswith("Working")
    assert "Rate limit exceeded" in last.text


@pytest.mark.asyncio
async def test_unconfigured_provider_is_reported_in_conversation(tmp_path: Path) -> None:
    registry = _make_registry(tmp_path, _ScriptedTransport())
    session_id = _session(registry)

    outcome = await registry.send_message(session_id, "hello", "missing/model")

    assert outcome.state == LoopState.ERROR
    assert "missing" in registry.get_session(session_id).messages[-1].text


@pytest.mark.asyncio
async def test_start_generation_without_messages_is_noop(tmp_path: Path) -> None:
    registry = _make_registry(tmp_path, _ScriptedTransport())
    session_id = _session(registry)
    events = _record(registry)

    assert await registry.start_generation(session_id) is None
    assert await registry.start_generation("unknown") is None
    assert events == []


@pytest.mark.asyncio
async def test_start_generation_with_override_messages(tmp_path: Path) -> None:
    transport = _ScriptedTransport([TextDelta("rewritten"), FinishChunk("stop")])
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)
    registry.add_message(session_id, Message.user("old"))

    await registry.start_generation(session_id, override_messages=[Message.user("new")])

    messages = registry.get_session(session_id).messages
    assert [m.text for m in messages] == ["new", "rewritten"]
    assert transport.requests[0].messages[0].text == "new"


@pytest.mark.asyncio
async def test_override_with_dangling_tool_result_is_rejected(tmp_path: Path) -> None:
    transport = _ScriptedTransport()
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)
    registry.add_message(session_id, Message.user("keep me"))
    events = _record(registry)
    dangling = Message(
        role=MessageRole.ASSISTANT,
        parts=[ToolResultPart(tool_call_id="zzz", output="orphan")],
    )

    outcome = await registry.start_generation(
        session_id, override_messages=[Message.user("hi"), dangling],
    )

    assert outcome is None
    assert [m.text for m in registry.get_session(session_id).messages] == ["keep me"]
    assert registry.get_session(session_id).is_loading is False
    assert transport.requests == []
    assert events == []


# ── concurrency & cancellation ──


@pytest.mark.asyncio
async def test_second_send_while_loading_is_rejected(tmp_path: Path) -> None:
    stall = _Stall()
    transport = _ScriptedTransport([TextDelta("partial"), stall, FinishChunk("stop")])
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)
    session = registry.get_session(session_id)

    first = asyncio.create_task(registry.send_message(session_id, "one"))
    await _wait_for(lambda: session.streaming_message is not None)

    assert await registry.send_message(session_id, "two") is None
    assert await registry.start_generation(session_id) is None
    assert [m.text for m in session.messages] == ["one"]
    assert registry.is_any_loading() is True

    stall.gate.set()
    outcome = await first
    assert outcome.state == LoopState.FINISHED
    assert len(transport.requests) == 1
    assert registry.is_any_loading() is False


@pytest.mark.asyncio
async def test_stop_preserves_partial_output(tmp_path: Path) -> None:
    transport = _ScriptedTransport([TextDelta("partial answer"), _Stall()])
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)
    session = registry.get_session(session_id)
    events = _record(registry)

    task = asyncio.create_task(registry.send_message(session_id, "hello"))
    await _wait_for(lambda: session.streaming_message is not None)

    assert registry.stop_generation(session_id) is True
    assert registry.stop_generation(session_id) is False
    outcome = await asyncio.wait_for(task, timeout=2)

    assert outcome.state == LoopState.CANCELLED
    assert session.messages[-1].text == "partial answer"
    assert session.messages[-1].is_streaming is False
    assert session.is_loading is False
    assert session.streaming_message is None
    assert [e.is_loading for e in events if isinstance(e, LoadingChanged)] == [True, False]
    assert registry.stop_generation(session_id) is False


@pytest.mark.asyncio
async def test_stop_during_tool_execution_closes_the_call(tmp_path: Path) -> None:
    started = asyncio.Event()

    async def _hang() -> str:
        started.set()
        await asyncio.Event().wait()
        return "never"

    hang = FunctionTool("hang", _hang)
    transport = _ScriptedTransport(
        [ToolCallChunk(id="call_h", name="hang", args={}), FinishChunk("tool_calls")],
    )
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry, custom_tools={"hang": hang})

    task = asyncio.create_task(registry.send_message(session_id, "wait"))
    await asyncio.wait_for(started.wait(), timeout=2)
    registry.stop_generation(session_id)
    outcome = await asyncio.wait_for(task, timeout=2)

    assert outcome.state == LoopState.CANCELLED
    messages = registry.get_session(session_id).messages
    validate_history(messages)
    result = messages[-1].tool_results[0]
    assert result.tool_call_id == "call_h"
    assert result.is_error is True


@pytest.mark.asyncio
async def test_stopping_one_session_leaves_others_running(tmp_path: Path) -> None:
    stall_a, stall_b = _Stall(), _Stall()
    transport = _ScriptedTransport(
        [TextDelta("a"), stall_a],
        [TextDelta("b"), stall_b, TextDelta(" done"), FinishChunk("stop")],
    )
    registry = _make_registry(tmp_path, transport)
    a = _session(registry, project_id="alpha")
    b = _session(registry, project_id="beta")
    session_a, session_b = registry.get_session(a), registry.get_session(b)

    task_a = asyncio.create_task(registry.send_message(a, "first"))
    await _wait_for(lambda: session_a.streaming_message is not None)
    task_b = asyncio.create_task(registry.send_message(b, "second"))
    await _wait_for(lambda: session_b.streaming_message is not None)

    b_messages = list(session_b.messages)
    events = _record(registry)
    registry.stop_generation(a)
    outcome_a = await asyncio.wait_for(task_a, timeout=2)

    assert outcome_a.state == LoopState.CANCELLED
    assert events
    assert {e.session_id for e in events} == {a}
    assert session_b.messages == b_messages
    assert session_b.is_loading is True
    assert session_b.streaming_message.text == "b"

    stall_b.gate.set()
    outcome_b = await asyncio.wait_for(task_b, timeout=2)
    assert outcome_b.state == LoopState.FINISHED
    assert session_b.messages[-1].text == "b done"
    assert session_a.messages[-1].text == "a"


@pytest.mark.asyncio
async def test_caller_cancellation_does_not_stop_generation(tmp_path: Path) -> None:
    stall = _Stall()
    transport = _ScriptedTransport([TextDelta("x"), stall, FinishChunk("stop")])
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)
    session = registry.get_session(session_id)

    caller = asyncio.create_task(registry.send_message(session_id, "go"))
    await _wait_for(lambda: session.streaming_message is not None)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    assert session.is_loading is True
    stall.gate.set()
    await _wait_for(lambda: not session.is_loading)
    assert session.messages[-1].text == "x"


# ── reset & deletion ──


@pytest.mark.asyncio
async def test_start_new_session_clears_history_and_keeps_identity(tmp_path: Path) -> None:
    registry = _make_registry(tmp_path, _ScriptedTransport())
    session_id = _session(registry)
    await registry.send_message(session_id, "hello")
    session = registry.get_session(session_id)
    old_name = session.session_name

    assert await registry.start_new_session(session_id) is True

    assert session.messages == []
    assert session.id == session_id
    assert session.config.custom_tools == {"echo": ECHO}
    assert session.session_name != old_name


@pytest.mark.asyncio
async def test_start_new_session_stops_running_generation(tmp_path: Path) -> None:
    transport = _ScriptedTransport([TextDelta("partial"), _Stall()])
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)
    session = registry.get_session(session_id)

    task = asyncio.create_task(registry.send_message(session_id, "hello"))
    await _wait_for(lambda: session.streaming_message is not None)
    await registry.start_new_session(session_id)

    outcome = await asyncio.wait_for(task, timeout=2)
    assert outcome.state == LoopState.CANCELLED
    assert session.messages == []
    assert session.is_loading is False


@pytest.mark.asyncio
async def test_delete_session_cancels_and_removes(tmp_path: Path) -> None:
    transport = _ScriptedTransport([TextDelta("partial"), _Stall()])
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)
    session = registry.get_session(session_id)
    events = _record(registry)

    task = asyncio.create_task(registry.send_message(session_id, "hello"))
    await _wait_for(lambda: session.streaming_message is not None)
    assert await registry.delete_session(session_id) is True

    outcome = await asyncio.wait_for(task, timeout=2)
    assert outcome.state == LoopState.CANCELLED
    assert registry.get_session(session_id) is None
    assert events[-1].kind == EventKind.SESSION_DELETED
    assert await registry.delete_session(session_id) is False


@pytest.mark.asyncio
async def test_overlapping_deletes_remove_the_session_once(tmp_path: Path) -> None:
    transport = _ScriptedTransport([TextDelta("partial"), _Stall()])
    registry = _make_registry(tmp_path, transport)
    session_id = _session(registry)
    session = registry.get_session(session_id)
    events = _record(registry)

    task = asyncio.create_task(registry.send_message(session_id, "hello"))
    await _wait_for(lambda: session.streaming_message is not None)
    results = await asyncio.gather(
        registry.delete_session(session_id),
        registry.delete_session(session_id),
    )

    assert sorted(results) == [False, True]
    assert registry.get_session(session_id) is None
    assert [e.kind for e in events].count(EventKind.SESSION_DELETED) == 1
    outcome = await asyncio.wait_for(task, timeout=2)
    assert outcome.state == LoopState.CANCELLED


@pytest.mark.asyncio
async def test_delete_project_sessions_only_touches_that_project(tmp_path: Path) -> None:
    registry = _make_registry(tmp_path, _ScriptedTransport())
    _session(registry, project_id="alpha")
    _session(registry, project_id="alpha")
    keep = _session(registry, project_id="beta")

    assert await registry.delete_project_sessions("alpha") == 2
    assert [s.id for s in registry.get_all_sessions()] == [keep]


# ── tools & persistence wiring ──


@pytest.mark.asyncio
async def test_builtin_write_emits_file_changed(tmp_path: Path) -> None:
    project_dir = tmp_path / "site"
    project_dir.mkdir()
    transport = _ScriptedTransport(
        [
            ToolCallChunk(
                id="call_w",
                name="write_file",
                args={"path": "index.html", "content": "<h1>hi</h1>"},
            ),
            FinishChunk("tool_calls"),
        ],
        [TextDelta("written"), FinishChunk("stop")],
    )
    registry = _make_registry(tmp_path, transport)
    session_id = registry.create_session(
        SessionConfig(project_id="site", project_dir=project_dir)
    )
    changes: list[FileChanged] = []
    registry.bus.on(EventKind.FILE_CHANGED, changes.append)

    await registry.send_message(session_id, "write a page")

    assert (project_dir / "index.html").read_text() == "<h1>hi</h1>"
    assert len(changes) == 1
    assert changes[0].file_path == "index.html"
    assert changes[0].change_type == "create"
    assert changes[0].tool_name == "write_file"
    assert changes[0].session_id == session_id


@pytest.mark.asyncio
async def test_persisted_sessions_restore_idle(tmp_path: Path) -> None:
    persistence = SessionPersistence(tmp_path / "data", tmp_path / "projects")
    registry = _make_registry(
        tmp_path,
        _ScriptedTransport([TextDelta("saved reply"), FinishChunk("stop")]),
        persistence=persistence,
    )
    session_id = _session(registry)
    await registry.send_message(session_id, "remember this")
    session = registry.get_session(session_id)
    assert persistence.history_path(session).exists()

    restored = _make_registry(tmp_path, _ScriptedTransport(), persistence=persistence)
    assert restored.load_persisted() == 1

    again = restored.get_session(session_id)
    assert [m.text for m in again.messages] == ["remember this", "saved reply"]
    assert again.is_loading is False
    assert again.streaming_message is None
    assert again.session_name == session.session_name


@pytest.mark.asyncio
async def test_shutdown_stops_all_generations(tmp_path: Path) -> None:
    transport = _ScriptedTransport([TextDelta("a"), _Stall()], [TextDelta("b"), _Stall()])
    registry = _make_registry(tmp_path, transport)
    a = _session(registry, project_id="alpha")
    b = _session(registry, project_id="beta")

    tasks = [
        asyncio.create_task(registry.send_message(a, "x")),
        asyncio.create_task(registry.send_message(b, "y")),
    ]
    await _wait_for(lambda: len(transport.requests) == 2)
    await registry.shutdown()

    outcomes = await asyncio.gather(*tasks)
    assert {o.state for o in outcomes} == {LoopState.CANCELLED}
    assert registry.is_any_loading() is False
