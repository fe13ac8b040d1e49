"""Pricing table and cost arithmetic."""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from conduit import pricing
from conduit.errors import UnsupportedModelError
from conduit.types import TokenUsage

pytestmark = pytest.mark.unit


def test_calculate_cost_uses_per_million_rates() -> None:
    cost = pricing.calculate_cost(
        TokenUsage(prompt_tokens=1_000_000, completion_tokens=1_000_000), "gpt-4o"
    )
    assert cost.input_cost == 5.0
    assert cost.output_cost == 15.0
    assert cost.total_cost == 20.0
    assert cost.cost_per_1k_tokens == 0.01
    assert cost.currency == "USD"


def test_calculate_cost_with_zero_tokens() -> None:
    cost = pricing.calculate_cost(TokenUsage(), "claude-3-haiku")
    assert cost.total_cost == 0.0
    assert cost.cost_per_1k_tokens == 0.0


def test_calculate_cost_unknown_model_raises() -> None:
    with pytest.raises(UnsupportedModelError) as exc:
        pricing.calculate_cost(TokenUsage(prompt_tokens=1), "mystery-model")
    assert exc.value.model == "mystery-model"


def test_estimate_cost_falls_back_for_unknown_models() -> None:
    assert pricing.estimate_cost(1000, "mystery-model") == pricing.DEFAULT_COST_PER_1K


def test_estimate_cost_uses_mean_rate() -> None:
    # gpt-4o: (5 + 15) / 2 = 10 USD per million
    assert pricing.estimate_cost(100_000, "gpt-4o") == 1.0


def test_provider_side_names_resolve_to_the_same_row() -> None:
    assert pricing.lookup("claude-3-5-sonnet-20241022").id == "claude-3.5-sonnet"
    assert pricing.api_model_for("claude-3-haiku") == "claude-3-haiku-20240307"
    assert pricing.api_model_for("custom-model") == "custom-model"


@pytest.mark.parametrize(
    ("model", "provider"),
    [
        ("claude-3-opus", "anthropic"),
        ("gpt-4o-mini", "openai"),
        ("o1-preview", "openai"),
        ("gemini-1.5-flash", "google"),
        ("gpt-5-experimental", "openai"),
        ("claude-next", "anthropic"),
    ],
)
def test_provider_for(model: str, provider: str) -> None:
    assert pricing.provider_for(model) == provider


def test_provider_for_unknown_family_raises() -> None:
    with pytest.raises(UnsupportedModelError):
        pricing.provider_for("llama-3-70b")


def test_every_row_is_consistent() -> None:
    for spec in pricing.MODELS.values():
        assert spec.provider in ("anthropic", "openai", "google")
        assert spec.cost_tier in ("low", "medium", "high")
        assert 1 <= spec.complexity <= 5
        assert spec.input_per_million >= 0
        assert spec.output_per_million >= 0
        assert pricing.find(spec.id) is spec


def test_models_for_provider_preserves_table_order() -> None:
    ids = [m.id for m in pricing.models_for_provider("google")]
    assert ids == [
        "gemini-2.0-flash",
        "gemini-1.5-pro",
        "gemini-1.5-flash",
        "gemini-pro-vision",
    ]


@given(
    prompt=st.integers(min_value=0, max_value=2_000_000),
    completion=st.integers(min_value=0, max_value=2_000_000),
    model=st.sampled_from(sorted(pricing.MODELS)),
)
@settings(max_examples=50, deadline=None, derandomize=True)
def test_cost_parts_add_up_for_any_usage(prompt: int, completion: int, model: str) -> None:
    cost = pricing.calculate_cost(
        TokenUsage(prompt_tokens=prompt, completion_tokens=completion), model
    )
    assert cost.input_cost >= 0
    assert cost.output_cost >= 0
    assert cost.total_cost == pytest.approx(cost.input_cost + cost.output_cost, abs=1e-6)
