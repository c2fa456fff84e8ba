"""Session registry: owns every session and its running generation.

All mutation of a session goes through this object or through the
AgentLoop it started for that session. Sessions are independent: each
has its own message list, cancellation token, and tool set, and stopping
or deleting one never touches another.

Only one generation may run per session. A second start while the
session is loading is rejected, not queued.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from scribe.adapters.event_bus import EventBus
from scribe.adapters.events import (
    FileChanged,
    MessageAdded,
    SessionCreated,
    SessionDeleted,
    SessionEvent,
    SessionUpdated,
)
from scribe.shared.models.message import Message, validate_history
from scribe.shared.models.session import Session, SessionConfig
from scribe.shared.services.persistence import SessionPersistence
from scribe.shared.services.session_naming import generate_session_name

from .agent_loop import AgentLoop
from .cancellation import CancellationToken
from .config import OrchestratorConfig
from .errors import ConfigError
from .models import GenerationOutcome
from .providers.registry import ProviderRegistry
from .tools.base import ToolContext
from .tools.builtins import build_builtin_tools
from .tools.mcp_tools import McpServerConfig, McpToolSource
from .tools.project_tools import load_project_tools
from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

# Grace period for a loop to reach a terminal state after its token fires.
STOP_GRACE_SECONDS = 5.0


@dataclass
class _SessionRuntime:
    """Per-session state that is never persisted."""
    loop: AgentLoop | None = None
    task: asyncio.Task | None = None
    mcp: McpToolSource | None = None


class SessionRegistry:
    """Creates, runs, stops, and deletes sessions across projects."""

    def __init__(
        self,
        bus: EventBus,
        providers: ProviderRegistry,
        config: OrchestratorConfig | None = None,
        *,
        persistence: SessionPersistence | None = None,
        mcp_servers: list[McpServerConfig] | tuple[McpServerConfig, ...] = (),
        default_provider_model: str | None = None,
        default_system_prompt: str | None = None,
        default_max_steps: int | None = None,
    ) -> None:
        self.bus = bus
        self.providers = providers
        self.config = config or OrchestratorConfig()
        self._persistence = persistence
        self._mcp_servers = tuple(mcp_servers)
        self.default_provider_model = (
            default_provider_model or self.config.default_provider_model
        )
        self.default_system_prompt = default_system_prompt
        self.default_max_steps = default_max_steps or self.config.default_max_steps
        self._sessions: dict[str, Session] = {}
        self._runtime: dict[str, _SessionRuntime] = {}

    # ── creation & lookup ──

    def new_session_config(self, project_id: str, **overrides: Any) -> SessionConfig:
        """A SessionConfig carrying this registry's defaults."""
        overrides.setdefault("system_prompt", self.default_system_prompt)
        overrides.setdefault("max_steps", self.default_max_steps)
        return SessionConfig(project_id=project_id, **overrides)

    def create_session(self, config: SessionConfig) -> str:
        """Create a session and return its id.

        Raises ConfigError for a blank project id, a step budget below
        one, or a session id that is already taken.
        """
        if not config.project_id or not config.project_id.strip():
            raise ConfigError("project_id", "must not be empty")
        if config.max_steps < 1:
            raise ConfigError("max_steps", f"must be at least 1, got {config.max_steps}")
        if config.session_id and config.session_id in self._sessions:
            raise ConfigError("session_id", f"session {config.session_id} already exists")

        if config.project_dir is None:
            config = replace(config, project_dir=self.config.project_dir(config.project_id))

        kwargs: dict[str, Any] = {}
        if config.session_id:
            kwargs["id"] = config.session_id
        session = Session(
            project_id=config.project_id,
            project_name=config.project_name or config.project_id,
            config=config,
            messages=self._seed_history(config),
            **kwargs,
        )
        self._sessions[session.id] = session
        self._runtime[session.id] = _SessionRuntime()
        logger.info(
            "Session %s created for project %s (%d seeded messages)",
            session.id[:8], session.project_id, len(session.messages),
        )
        self._emit(session, SessionCreated(project_name=session.project_name))
        self._emit_updated(session)
        self._save_index()
        return session.id

    def _seed_history(self, config: SessionConfig) -> list[Message]:
        if self._persistence is None or config.project_dir is None:
            return []
        try:
            messages = self._persistence.read_last_history(config.project_dir)
            validate_history(messages)
        except (OSError, ValueError) as exc:
            logger.warning(
                "Ignoring persisted history for project %s: %s", config.project_id, exc,
            )
            return []
        return messages

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_all_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def get_project_sessions(self, project_id: str) -> list[Session]:
        return [s for s in self._sessions.values() if s.project_id == project_id]

    def get_project_session(self, project_id: str) -> Session | None:
        """The project's most recently active session."""
        sessions = self.get_project_sessions(project_id)
        if not sessions:
            return None
        return max(sessions, key=lambda s: s.last_activity)

    def get_or_create_project_session(self, config: SessionConfig) -> Session:
        existing = self.get_project_session(config.project_id)
        if existing is not None:
            return existing
        return self._sessions[self.create_session(config)]

    # ── messages & generation ──

    def add_message(self, session_id: str, message: Message) -> bool:
        """Append a committed message without starting a generation."""
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning("add_message: unknown session %s", session_id)
            return False
        session.messages.append(message)
        session.touch()
        self._emit(session, MessageAdded(message=message, streaming=False))
        self._emit_updated(session)
        self._persist_history(session)
        return True

    async def send_message(
        self,
        session_id: str,
        text: str,
        provider_model: str | None = None,
    ) -> GenerationOutcome | None:
        """Append a user message and generate a reply.

        Returns None without touching the session if it is unknown or
        already generating.
        """
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning("send_message: unknown session %s", session_id)
            return None
        if session.is_loading:
            logger.info("send_message: session %s is busy, ignoring", session_id[:8])
            return None
        self.add_message(session_id, Message.user(text))
        return await self.start_generation(session_id, provider_model)

    async def start_generation(
        self,
        session_id: str,
        provider_model: str | None = None,
        override_messages: list[Message] | None = None,
    ) -> GenerationOutcome | None:
        """Run the agent loop for a session and return its outcome.

        The loop runs as its own task; cancelling the caller does not
        stop it (use stop_generation). Returns None if the session is
        unknown, already loading, has no messages, or ``override_messages``
        break tool-call correlation; a rejected start leaves the session
        untouched.
        """
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning("start_generation: unknown session %s", session_id)
            return None
        runtime = self._runtime[session_id]
        if session.is_loading or runtime.loop is not None:
            logger.info("start_generation: session %s already loading", session_id[:8])
            return None
        if override_messages is not None:
            try:
                validate_history(override_messages)
            except ValueError as exc:
                logger.warning(
                    "start_generation: rejecting override history for session %s: %s",
                    session_id[:8], exc,
                )
                return None
            session.messages = list(override_messages)
        if not session.messages:
            logger.info("start_generation: session %s has no messages", session_id[:8])
            return None

        loop = AgentLoop(
            session,
            provider_model=provider_model or self.default_provider_model,
            providers=self.providers,
            tools=self._build_tools(session),
            bus=self.bus,
            cancel_token=CancellationToken(),
            on_commit=self._on_commit,
            setup=self._mcp_setup(session, runtime),
        )
        # Claim the session before the first await.
        loop.begin()
        runtime.loop = loop
        runtime.task = asyncio.create_task(
            self._drive(session_id, loop), name=f"generation-{session_id[:8]}",
        )
        return await asyncio.shield(runtime.task)

    async def _drive(self, session_id: str, loop: AgentLoop) -> GenerationOutcome:
        try:
            return await loop.run()
        finally:
            runtime = self._runtime.get(session_id)
            if runtime is not None and runtime.loop is loop:
                runtime.loop = None
                runtime.task = None
            self._save_index()

    def stop_generation(self, session_id: str) -> bool:
        """Signal the session's running loop to stop. Idempotent."""
        runtime = self._runtime.get(session_id)
        if runtime is None or runtime.loop is None:
            return False
        stopped = runtime.loop.cancel_token.cancel()
        if stopped:
            logger.info("Stop requested for session %s", session_id[:8])
        return stopped

    async def _stop_and_wait(self, session_id: str, reason: str) -> None:
        runtime = self._runtime.get(session_id)
        if runtime is None or runtime.task is None:
            return
        task = runtime.task
        if runtime.loop is not None:
            runtime.loop.cancel_token.cancel(reason)
        done, _ = await asyncio.wait({task}, timeout=STOP_GRACE_SECONDS)
        if not done:
            logger.warning(
                "Session %s did not stop within %.1fs; cancelling its task",
                session_id[:8], STOP_GRACE_SECONDS,
            )
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def is_any_loading(self) -> bool:
        return any(s.is_loading for s in self._sessions.values())

    # ── reset & deletion ──

    async def start_new_session(self, session_id: str) -> bool:
        """Stop any generation and clear history, keeping id and config."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        await self._stop_and_wait(session_id, "new session started")
        session.messages.clear()
        session.streaming_message = None
        session.session_name = generate_session_name()
        session.touch()
        logger.info("Session %s reset as %s", session_id[:8], session.session_name)
        self._emit_updated(session)
        self._save_index()
        return True

    async def delete_session(self, session_id: str) -> bool:
        if session_id not in self._sessions:
            return False
        await self._stop_and_wait(session_id, "session deleted")
        # A concurrent delete may have removed it while this one waited.
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        runtime = self._runtime.pop(session_id, None)
        if runtime is not None and runtime.mcp is not None:
            await runtime.mcp.close()
        logger.info("Session %s deleted", session_id[:8])
        self._emit(session, SessionDeleted())
        self._save_index()
        return True

    async def delete_project_sessions(self, project_id: str) -> int:
        """Delete every session of a project; returns how many were removed."""
        ids = [s.id for s in self.get_project_sessions(project_id)]
        await asyncio.gather(
            *(self._stop_and_wait(sid, "project sessions deleted") for sid in ids)
        )
        count = 0
        for sid in ids:
            if await self.delete_session(sid):
                count += 1
        return count

    async def shutdown(self) -> None:
        """Stop all generations, close MCP connections, and persist."""
        await asyncio.gather(
            *(self._stop_and_wait(sid, "shutdown") for sid in list(self._runtime))
        )
        for runtime in self._runtime.values():
            if runtime.mcp is not None:
                await runtime.mcp.close()
                runtime.mcp = None
        self._save_index()
        await self.providers.shutdown()
        logger.info("Session registry shut down (%d sessions)", len(self._sessions))

    # ── persistence ──

    def load_persisted(self) -> int:
        """Restore sessions from the index; returns how many were loaded."""
        if self._persistence is None:
            return 0
        loaded = 0
        for record in self._persistence.load_index():
            session_id = record["id"]
            if session_id in self._sessions:
                continue
            cfg = record.get("config") or {}
            project_dir = cfg.get("project_dir")
            try:
                config = SessionConfig(
                    project_id=record["project_id"],
                    project_name=record.get("project_name", ""),
                    session_id=session_id,
                    system_prompt=cfg.get("system_prompt"),
                    max_steps=int(cfg.get("max_steps") or self.default_max_steps),
                    project_dir=Path(project_dir) if project_dir else None,
                )
                session = Session.from_dict(record, config)
                validate_history(session.messages)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping persisted session %s: %s", session_id, exc)
                continue
            if cfg.get("custom_tool_names"):
                logger.info(
                    "Session %s had custom tools %s; they must be re-injected",
                    session_id[:8], ", ".join(cfg["custom_tool_names"]),
                )
            self._sessions[session.id] = session
            self._runtime[session.id] = _SessionRuntime()
            self._emit(session, SessionCreated(project_name=session.project_name))
            self._emit_updated(session)
            loaded += 1
        logger.info("Restored %d persisted sessions", loaded)
        return loaded

    def _save_index(self) -> None:
        if self._persistence is None:
            return
        try:
            self._persistence.save_index(list(self._sessions.values()))
        except OSError:
            logger.exception("Failed to save session index")

    def _persist_history(self, session: Session) -> None:
        if self._persistence is None:
            return
        try:
            self._persistence.save_history(session)
        except (OSError, ValueError):
            logger.exception("Failed to save history for session %s", session.id[:8])

    def _on_commit(self, session: Session, message: Message) -> None:
        self._persist_history(session)

    # ── tools ──

    def _build_tools(self, session: Session) -> ToolRegistry:
        project_dir = session.config.project_dir or self.config.project_dir(session.project_id)
        context = ToolContext(
            project_dir=Path(project_dir),
            on_file_changed=self._file_change_emitter(session),
            shell_timeout_seconds=self.config.shell_timeout_seconds,
            npm_registry_url=self.config.npm_registry_url,
        )
        builtin = dict(session.tools) if session.tools is not None else build_builtin_tools(context)
        return ToolRegistry(
            project=load_project_tools(Path(project_dir)),
            custom=session.custom_tools,
            builtin=builtin,
            timeout_seconds=self.config.tool_timeout_seconds,
        )

    def _mcp_setup(self, session: Session, runtime: _SessionRuntime):
        servers = session.config.mcp_servers or self._mcp_servers
        if not servers:
            return None

        async def setup(tools: ToolRegistry) -> None:
            if runtime.mcp is None:
                runtime.mcp = McpToolSource(servers)
            tools.set_layer("mcp", await runtime.mcp.connect())

        return setup

    def _file_change_emitter(self, session: Session):
        def emit(file_path: str, change_type: str, tool_name: str) -> None:
            self._emit(
                session,
                FileChanged(file_path=file_path, change_type=change_type, tool_name=tool_name),
            )
        return emit

    # ── events ──

    def _emit(self, session: Session, event: SessionEvent) -> None:
        event.session_id = session.id
        event.project_id = session.project_id
        self.bus.emit(event)

    def _emit_updated(self, session: Session) -> None:
        self._emit(
            session,
            SessionUpdated(
                message_count=len(session.messages),
                is_loading=session.is_loading,
                session_name=session.session_name,
            ),
        )


def build_registry(
    config_path: str | Path | None = None,
    *,
    bus: EventBus | None = None,
    providers: ProviderRegistry | None = None,
) -> SessionRegistry:
    """Composition root: config, providers, persistence, and the registry.

    Without a YAML file, configuration comes from SCRIBE_* variables and
    a single ``openai`` provider reading OPENAI_API_KEY.
    """
    from .providers.registry import build_provider_registry
    from .yaml_config import ProviderConfig, ScribeConfig, load_yaml_config

    if config_path is not None:
        scribe_config = load_yaml_config(config_path)
    else:
        scribe_config = ScribeConfig(engine=OrchestratorConfig.from_env())
    engine = scribe_config.engine

    if providers is None:
        provider_configs = scribe_config.providers or {
            "openai": ProviderConfig(api_key_env="OPENAI_API_KEY"),
        }
        providers = build_provider_registry(
            provider_configs, request_timeout_seconds=engine.request_timeout_seconds,
        )

    persistence = (
        SessionPersistence(engine.data_dir, engine.projects_dir)
        if engine.persist_sessions else None
    )
    registry = SessionRegistry(
        bus or EventBus(),
        providers,
        engine,
        persistence=persistence,
        mcp_servers=scribe_config.mcp_servers,
        default_provider_model=scribe_config.provider_model,
        default_system_prompt=scribe_config.defaults.system_prompt,
        default_max_steps=scribe_config.max_steps,
    )
    registry.load_persisted()
    return registry
