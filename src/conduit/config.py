"""Configuration: frozen Config with provider keys resolved from the environment."""

from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Literal

from dotenv import load_dotenv

from conduit._http import validate_base_url
from conduit.errors import ConfigurationError

load_dotenv()

ProviderName = Literal["anthropic", "openai", "google"]

PROVIDERS: tuple[ProviderName, ...] = ("anthropic", "openai", "google")

# Checked in order; the first one set wins.
_API_KEY_ENV_VARS: dict[ProviderName, tuple[str, ...]] = {
    "anthropic": ("ANTHROPIC_API_KEY",),
    "openai": ("OPENAI_API_KEY",),
    "google": ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
}


def _resolve_env_key(provider: ProviderName) -> str | None:
    for env_var in _API_KEY_ENV_VARS[provider]:
        value = os.environ.get(env_var)
        if value:
            return value
    return None


@dataclass(frozen=True)
class Config:
    """Immutable configuration for a Conduit gateway.

    API keys are auto-resolved from standard environment variables. A provider
    without a key is simply not registered; routing then skips its models.

    Example:
        config = Config(timeout_s=30)
        # ANTHROPIC_API_KEY, OPENAI_API_KEY and GOOGLE_API_KEY are picked up
    """

    #: Auto-resolved from ``ANTHROPIC_API_KEY`` when *None*.
    anthropic_api_key: str | None = None
    #: Auto-resolved from ``OPENAI_API_KEY`` when *None*.
    openai_api_key: str | None = None
    #: Auto-resolved from ``GOOGLE_API_KEY`` or ``GEMINI_API_KEY`` when *None*.
    google_api_key: str | None = None
    use_mock: bool = False
    timeout_s: float = 60.0
    stream_timeout_s: float = 120.0
    max_parallel_subtasks: int = 8
    enable_fallbacks: bool = True
    default_max_tokens: int = 4096
    anthropic_base_url: str = "https://api.anthropic.com"
    openai_base_url: str = "https://api.openai.com/v1"
    google_base_url: str = "https://generativelanguage.googleapis.com"

    def __post_init__(self) -> None:
        """Auto-resolve API keys and validate configuration."""
        if self.timeout_s <= 0:
            raise ConfigurationError(
                f"timeout_s must be > 0, got {self.timeout_s}",
                hint="This is the per-call deadline in seconds.",
            )
        if self.stream_timeout_s <= 0:
            raise ConfigurationError(
                f"stream_timeout_s must be > 0, got {self.stream_timeout_s}",
                hint="This is the deadline for a whole streamed response.",
            )
        if self.max_parallel_subtasks < 1:
            raise ConfigurationError(
                f"max_parallel_subtasks must be ≥ 1, got {self.max_parallel_subtasks}",
                hint="This bounds how many sub-tasks run concurrently.",
            )
        if self.default_max_tokens < 1:
            raise ConfigurationError(
                f"default_max_tokens must be ≥ 1, got {self.default_max_tokens}",
            )

        validate_base_url(self.anthropic_base_url, field_name="anthropic_base_url")
        validate_base_url(self.openai_base_url, field_name="openai_base_url")
        validate_base_url(self.google_base_url, field_name="google_base_url")

        if self.use_mock:
            return
        for provider in PROVIDERS:
            attr = f"{provider}_api_key"
            if getattr(self, attr) is None:
                object.__setattr__(self, attr, _resolve_env_key(provider))

    def api_key_for(self, provider: str) -> str | None:
        """Return the configured key for *provider*, if any."""
        if provider not in PROVIDERS:
            return None
        key: str | None = getattr(self, f"{provider}_api_key")
        return key

    def base_url_for(self, provider: str) -> str:
        """Return the configured base URL for *provider*."""
        if provider not in PROVIDERS:
            raise ConfigurationError(
                f"Unknown provider: {provider!r}",
                hint="Supported providers: 'anthropic', 'openai', 'google'",
            )
        url: str = getattr(self, f"{provider}_base_url")
        return url

    @property
    def configured_providers(self) -> tuple[str, ...]:
        """Providers that have a key (every provider in mock mode)."""
        if self.use_mock:
            return PROVIDERS
        return tuple(p for p in PROVIDERS if self.api_key_for(p))

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""

        def _redact(value: str | None) -> str | None:
            return "[REDACTED]" if value else None

        return (
            f"Config(anthropic_api_key={_redact(self.anthropic_api_key)}, "
            f"openai_api_key={_redact(self.openai_api_key)}, "
            f"google_api_key={_redact(self.google_api_key)}, "
            f"use_mock={self.use_mock}, timeout_s={self.timeout_s}, "
            f"max_parallel_subtasks={self.max_parallel_subtasks}, "
            f"enable_fallbacks={self.enable_fallbacks})"
        )

    __repr__ = __str__
