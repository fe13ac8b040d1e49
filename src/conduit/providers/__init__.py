"""Provider adapter implementations and the adapter registry."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from conduit.config import PROVIDERS
from conduit.errors import ConfigurationError

from .anthropic import AnthropicAdapter
from .base import ProviderAdapter, ProviderCapabilities
from .google import GoogleAdapter
from .mock import MockAdapter
from .openai import OpenAIAdapter

if TYPE_CHECKING:
    from conduit.config import Config

logger = logging.getLogger(__name__)


def create_adapter(provider: str, api_key: str, config: Config) -> ProviderAdapter:
    """Build the adapter for *provider* using the timeouts and base URLs in *config*."""
    if provider == "anthropic":
        return AnthropicAdapter(
            api_key,
            base_url=config.anthropic_base_url,
            timeout_s=config.timeout_s,
            stream_timeout_s=config.stream_timeout_s,
            default_max_tokens=config.default_max_tokens,
        )
    if provider == "openai":
        return OpenAIAdapter(
            api_key,
            base_url=config.openai_base_url,
            timeout_s=config.timeout_s,
            stream_timeout_s=config.stream_timeout_s,
        )
    if provider == "google":
        return GoogleAdapter(
            api_key,
            base_url=config.google_base_url,
            timeout_s=config.timeout_s,
            stream_timeout_s=config.stream_timeout_s,
        )
    raise ConfigurationError(
        f"Unknown provider: {provider!r}",
        hint=f"Supported providers: {', '.join(PROVIDERS)}.",
    )


def build_registry(config: Config) -> dict[str, ProviderAdapter]:
    """Create one adapter per provider that has credentials.

    In mock mode every provider is served by a ``MockAdapter`` under its own
    name so routing and cost accounting behave as in production.
    """
    if config.use_mock:
        return {p: MockAdapter(p) for p in config.configured_providers}

    registry: dict[str, ProviderAdapter] = {}
    for provider in PROVIDERS:
        key = config.api_key_for(provider)
        if key:
            registry[provider] = create_adapter(provider, key, config)
    logger.debug("Registered providers: %s", ", ".join(registry) or "(none)")
    return registry


__all__ = [
    "AnthropicAdapter",
    "GoogleAdapter",
    "MockAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ProviderCapabilities",
    "build_registry",
    "create_adapter",
]
