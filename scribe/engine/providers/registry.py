"""Provider registry: maps provider names to ChatTransport instances."""
from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from scribe.engine.errors import ProviderError, ProviderNotAvailableError

from .base import ChatTransport
from .openai_compat import OpenAICompatibleTransport

if TYPE_CHECKING:
    from ..yaml_config import ProviderConfig

logger = logging.getLogger(__name__)


def parse_provider_model(provider_model: str) -> tuple[str, str]:
    """Split ``"provider/model"`` into its parts.

    Only the first slash separates the provider, so model names that
    contain slashes (``openrouter/anthropic/claude-sonnet-4``) survive.
    """
    provider, sep, model = (provider_model or "").strip().partition("/")
    if not sep or not provider or not model:
        raise ProviderError(
            provider or "<unknown>",
            f"invalid provider/model string {provider_model!r}; "
            "expected '<provider>/<model>'",
        )
    return provider, model


class ProviderRegistry:
    """Registry of configured chat transports.

    Maps short names (e.g. 'openai', 'openrouter') to transports.
    """

    def __init__(self) -> None:
        self._providers: dict[str, ChatTransport] = {}

    def register(self, name: str, transport: ChatTransport) -> None:
        """Register a transport by name."""
        self._providers[name] = transport
        logger.info(
            "Provider registered: %s (available=%s)",
            name,
            transport.is_available(),
        )

    def get(self, name: str) -> ChatTransport | None:
        """Get a transport by name, or None if not registered."""
        return self._providers.get(name)

    def get_or_raise(self, name: str) -> ChatTransport:
        """Get a transport by name, raising ProviderNotAvailableError."""
        transport = self._providers.get(name)
        if transport is None:
            raise ProviderNotAvailableError(name, self.list_names())
        return transport

    def resolve(self, provider_model: str) -> tuple[ChatTransport, str]:
        """Resolve ``"provider/model"`` to (transport, model name)."""
        provider, model = parse_provider_model(provider_model)
        return self.get_or_raise(provider), model

    def list_names(self) -> list[str]:
        """Return all registered provider names."""
        return list(self._providers.keys())

    def list_available(self) -> list[str]:
        """Return names of providers that are usable."""
        return [
            name for name, p in self._providers.items()
            if p.is_available()
        ]

    async def shutdown(self) -> None:
        for name, transport in self._providers.items():
            try:
                await transport.shutdown()
            except Exception:
                logger.warning("Provider %s shutdown failed", name, exc_info=True)


def build_provider_registry(
    provider_configs: dict[str, ProviderConfig] | Iterable[tuple[str, ProviderConfig]],
    *,
    request_timeout_seconds: float = 300.0,
) -> ProviderRegistry:
    """Build a registry from parsed YAML provider configs."""
    registry = ProviderRegistry()
    items = (
        provider_configs.items()
        if isinstance(provider_configs, dict)
        else provider_configs
    )
    for name, cfg in items:
        if cfg.type != "openai":
            logger.warning(
                "Skipping provider %s: unsupported type %r", name, cfg.type,
            )
            continue
        registry.register(
            name,
            OpenAICompatibleTransport(
                name,
                cfg.base_url,
                api_key=cfg.api_key,
                api_key_env=cfg.api_key_env,
                request_timeout_seconds=request_timeout_seconds,
                extra_headers=cfg.headers,
            ),
        )
    return registry
