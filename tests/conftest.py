"""Shared test doubles, environment isolation and pytest hooks.

Doubles (``make_request``, ``FakeAdapter``...) live here so every suite builds
requests the same way. Isolation fixtures are autouse.
"""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os
from typing import TYPE_CHECKING, Any

import pytest

from conduit import pricing
from conduit.providers.base import ProviderCapabilities
from conduit.types import (
    ChatMessage,
    Choice,
    LatencyMetrics,
    StreamChunk,
    TokenUsage,
    UnifiedRequest,
    UnifiedResponse,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from conduit.types import CostBreakdown

# =============================================================================
# Test Doubles
# =============================================================================


def make_request(
    text: str = "hello", *, model: str = "gpt-4o-mini", **kwargs: Any
) -> UnifiedRequest:
    """Build a one-message user request."""
    return UnifiedRequest(
        messages=(ChatMessage(role="user", content=text),), model=model, **kwargs
    )


def make_response(
    model: str,
    provider: str,
    text: str = "ok",
    *,
    usage: TokenUsage | None = None,
    latency_ms: float = 10.0,
) -> UnifiedResponse:
    usage = usage or TokenUsage(prompt_tokens=10, completion_tokens=5)
    return UnifiedResponse(
        id=f"{provider}-test",
        model=model,
        provider=provider,
        choices=(Choice(index=0, message=ChatMessage(role="assistant", content=text)),),
        usage=usage,
        cost=pricing.calculate_cost(usage, model),
        latency=LatencyMetrics(total_time_ms=latency_ms),
    )


@dataclass
class FakeAdapter:
    """Provider adapter test double.

    Records every request and replies ``ok:<last message text>`` without any
    network I/O. Use to test gateway and orchestration behavior.
    """

    provider: str = "openai"
    calls: list[UnifiedRequest] = field(default_factory=list)
    timeouts: list[float | None] = field(default_factory=list)
    closed: bool = False
    _capabilities: ProviderCapabilities = field(
        default_factory=lambda: ProviderCapabilities(
            streaming=True, tools=True, inline_images=True, image_urls=True
        )
    )

    @property
    def name(self) -> str:
        return self.provider

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    def models(self) -> tuple[str, ...]:
        return tuple(m.id for m in pricing.models_for_provider(self.provider))

    def reply_text(self, request: UnifiedRequest) -> str:
        return f"ok:{request.messages[-1].text}"

    async def execute(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> UnifiedResponse:
        self.calls.append(request)
        self.timeouts.append(timeout_s)
        return make_response(request.model, self.provider, self.reply_text(request))

    async def stream(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> AsyncIterator[StreamChunk]:
        self.calls.append(request)
        self.timeouts.append(timeout_s)
        for piece in ("ok", ":", "stream"):
            yield StreamChunk(
                id="s-1", model=request.model, provider=self.provider, delta_content=piece
            )
        yield StreamChunk(
            id="s-1",
            model=request.model,
            provider=self.provider,
            finish_reason="stop",
            usage=TokenUsage(prompt_tokens=4, completion_tokens=3),
        )

    def calculate_cost(self, usage: TokenUsage, model: str) -> CostBreakdown:
        return pricing.calculate_cost(usage, model)

    async def validate_api_key(self, key: str) -> bool:
        return key == "good-key"

    async def health_check(self) -> dict[str, Any]:
        return {"healthy": True, "latency_ms": 0.0}

    async def aclose(self) -> None:
        self.closed = True


def fake_registry(*providers: str) -> dict[str, FakeAdapter]:
    """One ``FakeAdapter`` per provider (all three by default)."""
    names = providers or ("anthropic", "openai", "google")
    return {p: FakeAdapter(provider=p) for p in names}


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Stop python-dotenv from reading a developer's .env during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Drop provider credentials from the environment for each test.

    Clears ANTHROPIC_*, OPENAI_*, GOOGLE_* and GEMINI_* env vars.
    Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    for key in list(os.environ.keys()):
        if key.startswith(("ANTHROPIC_", "OPENAI_", "GOOGLE_", "GEMINI_")):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Keep HTTP client debug logs out of captured output."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)
    logging.getLogger("google_genai").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "set ENABLE_API_TESTS=1 to call real providers"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_configure(config):
    for line in (
        "unit: fast, isolated tests of one module",
        "contract: wire-format and interface characterization tests",
        "integration: multi-component tests through the Gateway",
        "api: tests that call real provider APIs",
        "allow_dotenv: let python-dotenv load .env files",
        "allow_env_pollution: keep provider environment variables",
    ):
        config.addinivalue_line("markers", line)


def pytest_collection_modifyitems(items):
    """Skip live-provider tests unless ENABLE_API_TESTS is set."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# API Test Configuration
# =============================================================================

# Cheapest model per provider for live smoke tests.
_ANTHROPIC_TEST_MODEL = "claude-3-haiku"
_OPENAI_TEST_MODEL = "gpt-4o-mini"
_GOOGLE_TEST_MODEL = "gemini-2.0-flash"


@pytest.fixture
def anthropic_api_key():
    """Return ANTHROPIC_API_KEY or skip the test if unavailable."""
    key = os.getenv("ANTHROPIC_API_KEY")
    if not key:
        pytest.skip("ANTHROPIC_API_KEY not set")
    return key


@pytest.fixture
def openai_api_key():
    """Return OPENAI_API_KEY or skip the test if unavailable."""
    key = os.getenv("OPENAI_API_KEY")
    if not key:
        pytest.skip("OPENAI_API_KEY not set")
    return key


@pytest.fixture
def google_api_key():
    """Return GOOGLE_API_KEY/GEMINI_API_KEY or skip the test if unavailable."""
    key = os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
    if not key:
        pytest.skip("GOOGLE_API_KEY not set")
    return key


@pytest.fixture
def live_models() -> dict[str, str]:
    """Model used per provider for API tests."""
    return {
        "anthropic": _ANTHROPIC_TEST_MODEL,
        "openai": _OPENAI_TEST_MODEL,
        "google": _GOOGLE_TEST_MODEL,
    }
