"""Static model pricing and capability tables.

Prices are USD per one million tokens. The tables are read-only after import
and are consulted by adapters (cost), routing (capability/tier) and the
fallback manager (provider resolution).
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Literal

from conduit.errors import UnsupportedModelError
from conduit.types import CostBreakdown

if TYPE_CHECKING:
    from collections.abc import Mapping

    from conduit.types import CostTier, TokenUsage

logger = logging.getLogger(__name__)

#: Best-effort rate for dashboards when a model has no pricing row.
DEFAULT_COST_PER_1K = 0.002

_COST_DECIMALS = 6


@dataclass(frozen=True)
class ModelSpec:
    """Pricing and capability row for one model."""

    id: str
    provider: Literal["anthropic", "openai", "google"]
    #: Provider-side model name sent on the wire.
    api_model: str
    input_per_million: float
    output_per_million: float
    context_window: int
    max_output_tokens: int
    cost_tier: CostTier
    #: Capability level 1-5 used by routing.
    complexity: int
    avg_latency_ms: int
    input_modalities: frozenset[str] = frozenset({"text"})
    supports_streaming: bool = True
    supports_tools: bool = True

    @property
    def supports_images(self) -> bool:
        return "image" in self.input_modalities


_TEXT_IMAGE = frozenset({"text", "image"})

_ROWS: tuple[ModelSpec, ...] = (
    # Anthropic
    ModelSpec("claude-opus-4", "anthropic", "claude-opus-4-20250514",
              15.0, 75.0, 200_000, 32_000, "high", 5, 3500, _TEXT_IMAGE),
    ModelSpec("claude-sonnet-4", "anthropic", "claude-sonnet-4-20250514",
              3.0, 15.0, 200_000, 64_000, "medium", 3, 2000, _TEXT_IMAGE),
    ModelSpec("claude-3-opus", "anthropic", "claude-3-opus-20240229",
              15.0, 75.0, 200_000, 4_096, "high", 5, 4000, _TEXT_IMAGE),
    ModelSpec("claude-3.5-sonnet", "anthropic", "claude-3-5-sonnet-20241022",
              3.0, 15.0, 200_000, 8_192, "medium", 4, 1800, _TEXT_IMAGE),
    ModelSpec("claude-3.5-haiku", "anthropic", "claude-3-5-haiku-20241022",
              1.0, 5.0, 200_000, 8_192, "low", 2, 900),
    ModelSpec("claude-3-haiku", "anthropic", "claude-3-haiku-20240307",
              0.25, 1.25, 200_000, 4_096, "low", 2, 700, _TEXT_IMAGE),
    # OpenAI
    ModelSpec("gpt-4o", "openai", "gpt-4o",
              5.0, 15.0, 128_000, 16_384, "high", 4, 1500, _TEXT_IMAGE),
    ModelSpec("gpt-4o-mini", "openai", "gpt-4o-mini",
              0.15, 0.6, 128_000, 16_384, "low", 2, 800, _TEXT_IMAGE),
    ModelSpec("gpt-4-turbo", "openai", "gpt-4-turbo",
              10.0, 30.0, 128_000, 4_096, "high", 4, 2500, _TEXT_IMAGE),
    ModelSpec("gpt-3.5-turbo", "openai", "gpt-3.5-turbo",
              0.5, 1.5, 16_385, 4_096, "low", 1, 600),
    ModelSpec("o1-preview", "openai", "o1-preview",
              15.0, 60.0, 128_000, 32_768, "high", 5, 12000,
              supports_streaming=False, supports_tools=False),
    ModelSpec("o1-mini", "openai", "o1-mini",
              3.0, 12.0, 128_000, 65_536, "medium", 4, 6000,
              supports_streaming=False, supports_tools=False),
    # Google
    ModelSpec("gemini-2.0-flash", "google", "gemini-2.0-flash",
              0.1, 0.4, 1_048_576, 8_192, "low", 2, 450, _TEXT_IMAGE),
    ModelSpec("gemini-1.5-pro", "google", "gemini-1.5-pro",
              3.5, 10.5, 2_097_152, 8_192, "medium", 4, 2000, _TEXT_IMAGE),
    ModelSpec("gemini-1.5-flash", "google", "gemini-1.5-flash",
              0.35, 1.05, 1_048_576, 8_192, "low", 2, 800, _TEXT_IMAGE),
    ModelSpec("gemini-pro-vision", "google", "gemini-pro-vision",
              0.25, 0.5, 16_384, 2_048, "low", 2, 1500, _TEXT_IMAGE,
              supports_tools=False),
)  # fmt: skip

MODELS: Mapping[str, ModelSpec] = MappingProxyType({m.id: m for m in _ROWS})

# Provider-side names resolve to the same rows.
_BY_API_MODEL: Mapping[str, ModelSpec] = MappingProxyType(
    {m.api_model: m for m in _ROWS}
)

_PREFIXES: tuple[tuple[str, str], ...] = (
    ("claude", "anthropic"),
    ("gpt", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("gemini", "google"),
)


def find(model: str) -> ModelSpec | None:
    """Return the row for *model* (alias or provider name), or None."""
    return MODELS.get(model) or _BY_API_MODEL.get(model)


def lookup(model: str) -> ModelSpec:
    """Return the row for *model* or raise ``UnsupportedModelError``."""
    spec = find(model)
    if spec is None:
        raise UnsupportedModelError(
            f"Unsupported model: {model!r}",
            model=model,
            hint="See conduit.pricing.MODELS for the supported model ids.",
        )
    return spec


def provider_for(model: str) -> str:
    """Resolve the provider serving *model*."""
    spec = find(model)
    if spec is not None:
        return spec.provider
    for prefix, provider in _PREFIXES:
        if model.startswith(prefix):
            return provider
    raise UnsupportedModelError(
        f"Cannot determine provider for model {model!r}",
        model=model,
    )


def api_model_for(model: str) -> str:
    """Provider-side model name; unknown ids pass through unchanged."""
    spec = find(model)
    return spec.api_model if spec is not None else model


def _breakdown(input_cost: float, output_cost: float, total_tokens: int) -> CostBreakdown:
    input_cost = round(input_cost, _COST_DECIMALS)
    output_cost = round(output_cost, _COST_DECIMALS)
    total = input_cost + output_cost
    per_1k = round(total * 1000 / total_tokens, _COST_DECIMALS) if total_tokens else 0.0
    return CostBreakdown(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=total,
        cost_per_1k_tokens=per_1k,
    )


def calculate_cost(usage: TokenUsage, model: str) -> CostBreakdown:
    """Exact cost of *usage* on *model*; unknown models raise."""
    spec = lookup(model)
    input_cost = usage.prompt_tokens / 1_000_000 * spec.input_per_million
    output_cost = usage.completion_tokens / 1_000_000 * spec.output_per_million
    return _breakdown(input_cost, output_cost, usage.total_tokens)


def estimate_cost(tokens: int, model: str) -> float:
    """Best-effort USD estimate for *tokens* total tokens.

    Uses the mean of the model's input and output rate. Unknown models fall
    back to ``DEFAULT_COST_PER_1K``; this is never used for billing.
    """
    spec = find(model)
    if spec is None:
        logger.debug("No pricing row for %s; using default estimate rate", model)
        return round(tokens / 1000 * DEFAULT_COST_PER_1K, _COST_DECIMALS)
    mean_rate = (spec.input_per_million + spec.output_per_million) / 2
    return round(tokens / 1_000_000 * mean_rate, _COST_DECIMALS)


def models_for_provider(provider: str) -> tuple[ModelSpec, ...]:
    return tuple(m for m in _ROWS if m.provider == provider)
