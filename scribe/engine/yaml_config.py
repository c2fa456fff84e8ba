"""YAML configuration loader.

A single YAML file configures the orchestrator. When no file is given,
``OrchestratorConfig.from_env`` defaults apply unchanged.

Example YAML:
    engine:
      default_max_steps: 30
      data_dir: ~/.scribe
      tool_timeout_seconds: 90
      log_level: DEBUG

    providers:
      openai:
        type: openai
        base_url: https://api.openai.com/v1
        api_key_env: OPENAI_API_KEY
      openrouter:
        type: openai
        base_url: https://openrouter.ai/api/v1
        api_key: "${OPENROUTER_API_KEY}"
        headers:
          X-Title: scribe

    mcp_servers:
      filesystem:
        command: npx
        args: ["-y", "@modelcontextprotocol/server-filesystem", "."]
      docs:
        transport: streamable-http
        url: https://docs.example.com/mcp

    defaults:
      provider_model: openrouter/anthropic/claude-sonnet-4
      max_steps: 20
      system_prompt: |
        You are a coding assistant working inside a web project.

``${VAR}`` references in any string value are replaced with the
environment variable's value (empty when unset).
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .config import OrchestratorConfig
from .errors import ConfigError
from .tools.mcp_tools import McpServerConfig

logger = logging.getLogger(__name__)

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_PATH_FIELDS = {"data_dir", "projects_dir"}


@dataclass
class ProviderConfig:
    """Configuration for a single chat provider."""
    type: str = "openai"  # only OpenAI-compatible endpoints are supported
    base_url: str = "https://api.openai.com/v1"
    api_key: str | None = None
    api_key_env: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class DefaultsConfig:
    """Defaults applied to new sessions."""
    provider_model: str | None = None
    max_steps: int | None = None
    system_prompt: str | None = None


@dataclass
class ScribeConfig:
    """Complete parsed YAML configuration."""
    engine: OrchestratorConfig
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    mcp_servers: list[McpServerConfig] = field(default_factory=list)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)

    @property
    def provider_model(self) -> str:
        return self.defaults.provider_model or self.engine.default_provider_model

    @property
    def max_steps(self) -> int:
        return self.defaults.max_steps or self.engine.default_max_steps


def expand_env(value: Any) -> Any:
    """Recursively substitute ``${VAR}`` in strings."""
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    return value


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(name, f"expected a mapping, got {type(value).__name__}")
    return value


def _parse_engine(engine_raw: dict) -> OrchestratorConfig:
    engine = OrchestratorConfig.from_env()
    known = {f.name: f for f in fields(OrchestratorConfig)}
    for key, value in engine_raw.items():
        if key not in known:
            logger.warning("Ignoring unknown engine setting %r", key)
            continue
        current = getattr(engine, key)
        try:
            if key in _PATH_FIELDS:
                value = Path(str(value)).expanduser()
            elif isinstance(current, bool):
                value = value if isinstance(value, bool) else str(value).lower() in {"1", "true", "yes"}
            elif isinstance(current, int):
                value = int(value)
            elif isinstance(current, float):
                value = float(value)
            else:
                value = str(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"engine.{key}", f"invalid value {value!r}") from exc
        setattr(engine, key, value)
    if "data_dir" in engine_raw and "projects_dir" not in engine_raw:
        engine.projects_dir = engine.data_dir / "projects"
    if engine.default_max_steps < 1:
        raise ConfigError("engine.default_max_steps", "must be at least 1")
    return engine


def _parse_providers(providers_raw: dict) -> dict[str, ProviderConfig]:
    providers: dict[str, ProviderConfig] = {}
    for name, cfg in providers_raw.items():
        cfg = cfg or {}
        if not isinstance(cfg, dict):
            raise ConfigError(f"providers.{name}", "expected a mapping")
        headers = cfg.get("headers") or {}
        if not isinstance(headers, dict):
            raise ConfigError(f"providers.{name}.headers", "expected a mapping")
        providers[name] = ProviderConfig(
            type=cfg.get("type", "openai"),
            base_url=cfg.get("base_url", ProviderConfig.base_url),
            api_key=cfg.get("api_key") or None,
            api_key_env=cfg.get("api_key_env"),
            headers={str(k): str(v) for k, v in headers.items()},
        )
    return providers


def _parse_mcp_servers(servers_raw: dict) -> list[McpServerConfig]:
    servers: list[McpServerConfig] = []
    for name, cfg in servers_raw.items():
        cfg = cfg or {}
        if not isinstance(cfg, dict):
            raise ConfigError(f"mcp_servers.{name}", "expected a mapping")
        server = McpServerConfig(
            name=str(name),
            transport=cfg.get("transport", "streamable-http" if cfg.get("url") else "stdio"),
            command=cfg.get("command"),
            args=tuple(str(a) for a in cfg.get("args") or ()),
            env={str(k): str(v) for k, v in (cfg.get("env") or {}).items()},
            url=cfg.get("url"),
        )
        server.validate()
        servers.append(server)
    return servers


def _parse_defaults(defaults_raw: dict) -> DefaultsConfig:
    max_steps = defaults_raw.get("max_steps")
    if max_steps is not None:
        try:
            max_steps = int(max_steps)
        except (TypeError, ValueError) as exc:
            raise ConfigError("defaults.max_steps", f"invalid value {max_steps!r}") from exc
        if max_steps < 1:
            raise ConfigError("defaults.max_steps", "must be at least 1")
    return DefaultsConfig(
        provider_model=defaults_raw.get("provider_model"),
        max_steps=max_steps,
        system_prompt=defaults_raw.get("system_prompt"),
    )


def load_yaml_config(path: str | Path) -> ScribeConfig:
    """Load and parse a YAML config file.

    Raises FileNotFoundError for a missing file and ConfigError for
    unparseable YAML or a malformed section.
    """
    path = Path(path).expanduser()
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("Config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        raise ConfigError(str(path), f"invalid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")

    raw = expand_env(raw)
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) or "(empty)",
    )

    config = ScribeConfig(
        engine=_parse_engine(_section(raw, "engine")),
        providers=_parse_providers(_section(raw, "providers")),
        mcp_servers=_parse_mcp_servers(_section(raw, "mcp_servers")),
        defaults=_parse_defaults(_section(raw, "defaults")),
    )
    logger.info(
        "Loaded config: %d providers, %d MCP servers, provider_model=%s",
        len(config.providers), len(config.mcp_servers), config.provider_model,
    )
    return config
