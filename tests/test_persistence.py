"""Session index and per-project history files."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from scribe.shared.models.message import Message, MessageRole, ToolCallPart, ToolResultPart
from scribe.shared.models.session import Session, SessionConfig
from scribe.shared.services.durable_write import atomic_write_json
from scribe.shared.services.persistence import SessionPersistence


def _session(project_dir: Path, *messages: Message, name: str | None = None) -> Session:
    session = Session(
        project_id="web",
        project_name="Web",
        config=SessionConfig(project_id="web", project_name="Web", project_dir=project_dir),
        messages=list(messages),
    )
    if name is not None:
        session.session_name = name
    return session


def test_index_round_trip_drops_runtime_state(tmp_path: Path) -> None:
    store = SessionPersistence(tmp_path / "data")
    session = _session(tmp_path / "proj", Message.user("hello"))
    session.is_loading = True
    session.streaming_message = Message.assistant("partial", streaming=True)

    store.save_index([session])
    records = store.load_index()

    assert len(records) == 1
    record = records[0]
    assert record["id"] == session.id
    assert "is_loading" not in record
    assert "streaming_message" not in record

    restored = Session.from_dict(record, session.config)
    assert restored.is_loading is False
    assert restored.streaming_message is None
    assert [m.text for m in restored.messages] == ["hello"]
    assert restored.session_name == session.session_name


def test_missing_or_corrupt_index_loads_empty(tmp_path: Path) -> None:
    store = SessionPersistence(tmp_path)
    assert store.load_index() == []

    store.index_path.write_text("{not json")
    assert store.load_index() == []

    atomic_write_json(store.index_path, {"version": 1, "sessions": "nope"})
    assert store.load_index() == []

    atomic_write_json(store.index_path, {"sessions": [{"id": "a"}, {"no_id": 1}, 3]})
    assert store.load_index() == [{"id": "a"}]


def test_history_is_written_as_json_lines(tmp_path: Path) -> None:
    store = SessionPersistence(tmp_path / "data")
    assistant = Message(
        role=MessageRole.ASSISTANT,
        parts=[
            ToolCallPart(id="call_1", name="read_file", args={"path": "a"}),
            ToolResultPart(tool_call_id="call_1", output="x"),
        ],
    )
    session = _session(tmp_path / "proj", Message.user("read a"), assistant)

    path = store.save_history(session)

    assert path == tmp_path / "proj" / ".ai" / "history" / f"{session.session_name}.jsonl"
    lines = path.read_text().splitlines()
    assert [json.loads(line)["role"] for line in lines] == ["user", "assistant"]
    restored = store.read_history(path)
    assert restored[1].tool_results[0].output == "x"


def test_history_with_dangling_result_is_refused(tmp_path: Path) -> None:
    store = SessionPersistence(tmp_path)
    bad = Message(role=MessageRole.ASSISTANT, parts=[ToolResultPart(tool_call_id="ghost")])

    with pytest.raises(ValueError, match="unknown call id"):
        store.save_history(_session(tmp_path / "proj", bad))


def test_read_last_history_picks_newest_session(tmp_path: Path) -> None:
    store = SessionPersistence(tmp_path / "data")
    project = tmp_path / "proj"
    older = _session(project, Message.user("old"), name="2026-01-01T00-00-00Z-aaa")
    newer = _session(project, Message.user("new"), name="2026-03-01T00-00-00Z-bbb")
    store.save_history(newer)
    store.save_history(older)
    (project / ".ai" / "history" / "notes.jsonl").write_text('{"role": "user"}\n')

    messages = store.read_last_history(project)

    assert [m.text for m in messages] == ["new"]
    assert store.read_last_history(tmp_path / "elsewhere") == []


def test_bad_history_lines_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "h.jsonl"
    good = json.dumps(Message.user("kept").to_dict())
    path.write_text(f"{good}\nnot json\n\n{json.dumps({'role': 'robot'})}\n")

    messages = SessionPersistence(tmp_path).read_history(path)

    assert [m.text for m in messages] == ["kept"]


def test_delete_history(tmp_path: Path) -> None:
    store = SessionPersistence(tmp_path)
    session = _session(tmp_path / "proj", Message.user("x"))
    store.save_history(session)

    assert store.delete_history(session) is True
    assert store.delete_history(session) is False
