"""Mock adapter for offline use and tests."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, Any

from conduit import pricing
from conduit.providers.base import ProviderCapabilities
from conduit.types import (
    ChatMessage,
    Choice,
    LatencyMetrics,
    StreamChunk,
    TokenUsage,
    UnifiedResponse,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from conduit.types import CostBreakdown, UnifiedRequest


def _estimate_tokens(text: str) -> int:
    return max(1, len(text) // 4)


class MockAdapter:
    """Deterministic adapter that never touches the network.

    Echoes the last user message. Token counts are derived from text length so
    cost accounting behaves like a real provider.
    """

    def __init__(self, provider: str = "mock") -> None:
        self._provider = provider

    @property
    def name(self) -> str:
        return self._provider

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(
            streaming=True, tools=True, inline_images=True, image_urls=True
        )

    def models(self) -> tuple[str, ...]:
        return tuple(m.id for m in pricing.models_for_provider(self._provider))

    def _reply(self, request: UnifiedRequest) -> tuple[str, TokenUsage, str]:
        prompt = next(
            (m.text for m in reversed(request.messages) if m.role == "user"),
            request.messages[-1].text,
        )
        text = f"echo: {prompt[:100]}"
        usage = TokenUsage(
            prompt_tokens=sum(_estimate_tokens(m.text) for m in request.messages),
            completion_tokens=_estimate_tokens(text),
        )
        digest = hashlib.sha256(f"{request.model}:{prompt}".encode()).hexdigest()[:24]
        return text, usage, f"mock-{digest}"

    async def execute(
        self, request: UnifiedRequest, *, timeout_s: float | None = None  # noqa: ARG002
    ) -> UnifiedResponse:
        """Return a deterministic echo response."""
        text, usage, response_id = self._reply(request)
        return UnifiedResponse(
            id=response_id,
            model=request.model,
            provider=self.name,
            choices=(
                Choice(index=0, message=ChatMessage(role="assistant", content=text)),
            ),
            usage=usage,
            cost=self.calculate_cost(usage, request.model),
            latency=LatencyMetrics(total_time_ms=0.0),
        )

    async def stream(
        self, request: UnifiedRequest, *, timeout_s: float | None = None  # noqa: ARG002
    ) -> AsyncIterator[StreamChunk]:
        """Yield the echo response one word at a time."""
        text, usage, response_id = self._reply(request)
        words = text.split(" ")
        for i, word in enumerate(words):
            yield StreamChunk(
                id=response_id,
                model=request.model,
                provider=self.name,
                delta_content=word if i == 0 else f" {word}",
            )
        yield StreamChunk(
            id=response_id,
            model=request.model,
            provider=self.name,
            finish_reason="stop",
            usage=usage,
        )

    def calculate_cost(self, usage: TokenUsage, model: str) -> CostBreakdown:
        return pricing.calculate_cost(usage, model)

    async def validate_api_key(self, key: str) -> bool:
        return bool(key)

    async def health_check(self) -> dict[str, Any]:
        return {"healthy": True, "latency_ms": 0.0}

    async def aclose(self) -> None:
        return None
