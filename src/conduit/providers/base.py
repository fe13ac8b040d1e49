"""Provider adapter protocol: the seam between the gateway and each vendor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from conduit.types import CostBreakdown, StreamChunk, TokenUsage, UnifiedRequest, UnifiedResponse


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags exposed by adapters."""

    streaming: bool = True
    tools: bool = True
    inline_images: bool = True
    #: Whether external image URLs are passed through (else degraded to text).
    image_urls: bool = False


@runtime_checkable
class ProviderAdapter(Protocol):
    """Translate unified requests to one vendor's wire format and back."""

    @property
    def name(self) -> str:
        """Registry key, e.g. ``"anthropic"``."""
        ...

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Feature flags for request validation."""
        ...

    def models(self) -> tuple[str, ...]:
        """Model ids this adapter serves."""
        ...

    async def execute(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> UnifiedResponse:
        """Run one non-streamed completion."""
        ...

    def stream(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> AsyncIterator[StreamChunk]:
        """Yield incremental deltas; the last chunk carries the finish reason."""
        ...

    def calculate_cost(self, usage: TokenUsage, model: str) -> CostBreakdown:
        """Cost of *usage* on *model* from the static pricing table."""
        ...

    async def validate_api_key(self, key: str) -> bool:
        """Return False when the provider rejects *key*."""
        ...

    async def health_check(self) -> dict[str, Any]:
        """Return ``{"healthy", "latency_ms", "error"?}``."""
        ...

    async def aclose(self) -> None:
        """Release client resources."""
        ...
