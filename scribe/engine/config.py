"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via SCRIBE_* env vars.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigError

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(name, f"expected a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(name, f"expected an integer, got {raw!r}") from exc


@dataclass
class OrchestratorConfig:
    """Session orchestrator configuration."""

    # Default step budget (provider round-trips per generation request).
    default_max_steps: int = 50
    # Default "provider/model" used by the CLI when none is given.
    default_provider_model: str = "openai/gpt-4o-mini"

    # Root for persisted state: sessions.json lives here.
    data_dir: Path = Path.home() / ".scribe"
    # Root under which project directories live (<projects_dir>/<project_id>).
    projects_dir: Path = Path.home() / ".scribe" / "projects"
    persist_sessions: bool = True

    # Max wall-clock time for any single tool call.
    # Set to 0 (or a negative value) to disable timeout.
    tool_timeout_seconds: float = 120.0
    # Max wall-clock time for shell_exec commands.
    shell_timeout_seconds: float = 60.0
    # Idle time after the last file change before an auto-build fires.
    auto_build_delay_seconds: float = 1.0

    # HTTP transport
    request_timeout_seconds: float = 300.0
    npm_registry_url: str = "https://registry.npmjs.org"

    # Logging
    log_level: str = "INFO"

    def project_dir(self, project_id: str) -> Path:
        return self.projects_dir / project_id

    @classmethod
    def from_env(cls) -> OrchestratorConfig:
        """Load configuration from SCRIBE_* environment variables."""
        scribe_vars = {
            k: v for k, v in os.environ.items() if k.startswith("SCRIBE_")
        }
        if scribe_vars:
            logger.info(
                "OrchestratorConfig.from_env: SCRIBE_* env overrides: %s",
                ", ".join(sorted(scribe_vars)),
            )
        else:
            logger.debug("OrchestratorConfig.from_env: no SCRIBE_* env vars set, using defaults")

        data_dir = Path(os.getenv("SCRIBE_DATA_DIR", str(cls.data_dir)))
        config = cls(
            default_max_steps=_env_int(
                "SCRIBE_MAX_STEPS", cls.default_max_steps
            ),
            default_provider_model=os.getenv(
                "SCRIBE_PROVIDER_MODEL", cls.default_provider_model
            ),
            data_dir=data_dir,
            projects_dir=Path(
                os.getenv("SCRIBE_PROJECTS_DIR", str(data_dir / "projects"))
            ),
            persist_sessions=_env_bool(
                "SCRIBE_PERSIST_SESSIONS", cls.persist_sessions
            ),
            tool_timeout_seconds=_env_float(
                "SCRIBE_TOOL_TIMEOUT", cls.tool_timeout_seconds
            ),
            shell_timeout_seconds=_env_float(
                "SCRIBE_SHELL_TIMEOUT", cls.shell_timeout_seconds
            ),
            auto_build_delay_seconds=_env_float(
                "SCRIBE_AUTO_BUILD_DELAY", cls.auto_build_delay_seconds
            ),
            request_timeout_seconds=_env_float(
                "SCRIBE_REQUEST_TIMEOUT", cls.request_timeout_seconds
            ),
            npm_registry_url=os.getenv(
                "SCRIBE_NPM_REGISTRY", cls.npm_registry_url
            ),
            log_level=os.getenv("SCRIBE_LOG_LEVEL", cls.log_level),
        )
        if config.default_max_steps < 1:
            raise ConfigError("SCRIBE_MAX_STEPS", "must be at least 1")
        logger.info(
            "OrchestratorConfig.from_env: data_dir=%s max_steps=%d log_level=%s",
            config.data_dir, config.default_max_steps, config.log_level,
        )
        return config
