"""Session persistence: an index of all sessions plus per-project history.

Storage layout:
    {data_dir}/sessions.json
    {project_dir}/.ai/history/{session_name}.jsonl

``sessions.json`` holds every session's persisted form (see
``Session.to_dict``). Runtime state such as ``is_loading`` and the
streaming message is never written, so a restart always comes back idle.
The history files hold one message per line and are what a fresh
session of the same project can be seeded from.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from scribe.shared.models.message import Message, validate_history
from scribe.shared.models.session import Session
from scribe.shared.services.durable_write import atomic_write_json, atomic_write_text
from scribe.shared.services.session_naming import is_session_name

logger = logging.getLogger(__name__)

INDEX_FILE = "sessions.json"
HISTORY_DIR = Path(".ai") / "history"
INDEX_VERSION = 1


class SessionPersistence:
    """Reads and writes session state under a data directory."""

    def __init__(self, data_dir: Path, projects_dir: Path | None = None) -> None:
        self._data_dir = Path(data_dir)
        self._projects_dir = Path(projects_dir) if projects_dir else self._data_dir / "projects"

    @property
    def index_path(self) -> Path:
        return self._data_dir / INDEX_FILE

    def project_dir(self, session: Session) -> Path:
        if session.config.project_dir is not None:
            return Path(session.config.project_dir)
        return self._projects_dir / session.project_id

    def history_path(self, session: Session) -> Path:
        return self.project_dir(session) / HISTORY_DIR / f"{session.session_name}.jsonl"

    # ── index ──

    def save_index(self, sessions: list[Session]) -> Path:
        data = {
            "version": INDEX_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "sessions": [s.to_dict() for s in sessions],
        }
        atomic_write_json(self.index_path, data)
        logger.debug("Saved %d sessions to %s", len(sessions), self.index_path)
        return self.index_path

    def load_index(self) -> list[dict[str, Any]]:
        """Return persisted session records; a missing or corrupt index yields []."""
        path = self.index_path
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read session index %s: %s", path, exc)
            return []
        records = data.get("sessions") if isinstance(data, dict) else None
        if not isinstance(records, list):
            logger.warning("Session index %s has no sessions list", path)
            return []
        return [r for r in records if isinstance(r, dict) and r.get("id")]

    # ── history ──

    def save_history(self, session: Session) -> Path:
        """Write the session's committed messages as JSON lines.

        Raises ValueError if the history breaks tool-call correlation.
        """
        validate_history(session.messages)
        lines = [json.dumps(m.to_dict(), ensure_ascii=False) for m in session.messages]
        path = self.history_path(session)
        atomic_write_text(path, "\n".join(lines) + ("\n" if lines else ""))
        logger.debug("Saved %d messages to %s", len(lines), path)
        return path

    def read_history(self, path: Path) -> list[Message]:
        messages: list[Message] = []
        with open(path, encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    messages.append(Message.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as exc:
                    logger.warning("Skipping bad history line %s:%d: %s", path, lineno, exc)
        return messages

    def read_last_history(self, project_dir: Path) -> list[Message]:
        """Messages of the most recent session history in ``project_dir``."""
        history_dir = Path(project_dir) / HISTORY_DIR
        if not history_dir.is_dir():
            return []
        candidates = sorted(
            p for p in history_dir.glob("*.jsonl") if is_session_name(p.stem)
        )
        if not candidates:
            return []
        return self.read_history(candidates[-1])

    def delete_history(self, session: Session) -> bool:
        path = self.history_path(session)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
