"""Execution plan construction and invariants."""

from __future__ import annotations

import pytest

from conduit import routing
from conduit.errors import PlanningError
from conduit.plan import (
    PARALLEL_MODEL_POOL,
    ExecutionPlan,
    PlanTask,
    break_down,
    build_plan,
    estimate_tokens,
    model_pool,
    total_cost_tier,
)
from conduit.types import RoutingConstraints

pytestmark = pytest.mark.unit

LANDING_PAGE = "Build a landing page for a SaaS product"


def _plan(task: str, constraints: RoutingConstraints | None = None, **kwargs):
    return build_plan(routing.decide(task, constraints), task, **kwargs)


def _assert_well_formed(plan: ExecutionPlan) -> None:
    assert [t.id for t in plan.tasks] == list(range(1, len(plan.tasks) + 1))
    for t in plan.tasks:
        assert all(1 <= dep < t.id for dep in t.depends_on)


# =============================================================================
# Breakdowns
# =============================================================================


def test_landing_page_breakdown() -> None:
    stages = break_down(LANDING_PAGE)
    assert len(stages) == 5
    assert stages[0] == ("Create responsive HTML structure", "implementation")
    assert stages[-1] == ("Optimize for performance", "optimization")


def test_comparison_breakdown_names_both_options() -> None:
    stages = break_down("Compare Python and Rust for systems programming.")
    assert stages == (
        ("Research Python", "analysis"),
        ("Research Rust for systems programming", "analysis"),
        ("Compare Python and Rust for systems programming across key criteria", "integration"),
    )


def test_unparseable_comparison_uses_generic_stages() -> None:
    stages = break_down("Give me a comparison")
    assert len(stages) == 3
    assert stages[-1][1] == "integration"


def test_explicit_parts_become_stages() -> None:
    stages = break_down("Outline the chapter; draft the intro and then edit the draft")
    assert [text for text, _ in stages] == [
        "Outline the chapter",
        "draft the intro",
        "edit the draft",
    ]


def test_generic_breakdown_for_unstructured_tasks() -> None:
    assert len(break_down("Do something unusual")) == 4


# =============================================================================
# Parallel plans
# =============================================================================


def test_parallel_plan_round_robins_the_pool() -> None:
    plan = _plan(LANDING_PAGE)

    assert plan.strategy == "parallel"
    assert len(plan.tasks) >= 3
    _assert_well_formed(plan)
    assert [t.model for t in plan.tasks[:3]] == list(PARALLEL_MODEL_POOL)
    assert plan.tasks[3].model == PARALLEL_MODEL_POOL[0]
    assert [t.provider for t in plan.tasks[:3]] == ["anthropic", "openai", "google"]
    assert all(t.system_prompt and LANDING_PAGE in t.system_prompt for t in plan.tasks)


def test_parallel_plan_dependencies_follow_stage_kinds() -> None:
    plan = _plan("Design a REST API for todos")

    deps = {t.id: t.depends_on for t in plan.tasks}
    # design -> (implement, handle errors) -> (tests, docs)
    assert deps == {1: (), 2: (1,), 3: (1,), 4: (2, 3), 5: (2, 3)}
    assert [t.priority for t in plan.tasks] == [1, 2, 2, 3, 4]


def test_parallel_plan_synthesizes_with_the_selected_model() -> None:
    decision = routing.decide(LANDING_PAGE)
    plan = build_plan(decision, LANDING_PAGE)

    assert plan.aggregation is not None
    assert plan.aggregation.method == "synthesize"
    assert plan.aggregation.aggregator_model == decision.selected_model
    assert plan.estimated_tokens == (
        sum(t.estimated_tokens for t in plan.tasks) + estimate_tokens(LANDING_PAGE)
    )
    assert plan.estimated_cost == "high"
    assert plan.estimated_cost_usd > 0


def test_merge_aggregation_adds_no_synthesis_tokens() -> None:
    plan = _plan(LANDING_PAGE, aggregation="merge")
    assert plan.estimated_tokens == sum(t.estimated_tokens for t in plan.tasks)


def test_parallel_plan_honors_available_providers() -> None:
    plan = _plan(LANDING_PAGE, available_providers=("google",))
    assert {t.model for t in plan.tasks} == {"gemini-1.5-flash"}


def test_plans_are_deterministic_apart_from_identity() -> None:
    first = _plan(LANDING_PAGE).to_dict()
    second = _plan(LANDING_PAGE).to_dict()
    for key in ("planId", "createdAt"):
        first.pop(key)
        second.pop(key)
    assert first == second


# =============================================================================
# Single-task plans
# =============================================================================


def test_direct_plan_has_one_task_on_the_selected_model() -> None:
    plan = _plan("What is the capital of France?")

    assert plan.strategy == "direct"
    assert len(plan.tasks) == 1
    assert plan.tasks[0].model == "gpt-4o-mini"
    assert plan.tasks[0].depends_on == ()
    assert plan.aggregation is None
    assert plan.estimated_cost == "low"


def test_escalation_plan_targets_human_review() -> None:
    plan = _plan("Please drop database customers")

    assert plan.strategy == "escalate"
    assert plan.tasks[0].model == "human-review"
    assert plan.tasks[0].provider == "human"
    assert plan.estimated_cost == "high"


def test_plan_to_dict_shape() -> None:
    body = _plan(LANDING_PAGE).to_dict()

    assert body["strategy"] == "parallel"
    assert body["aggregation"]["method"] == "synthesize"
    task = body["tasks"][0]
    assert set(task) >= {"id", "task", "model", "provider", "priority", "dependsOn"}
    assert body["planId"]
    assert body["createdAt"].endswith("+00:00")


# =============================================================================
# Invariants and helpers
# =============================================================================


def _task(id: int, *deps: int) -> PlanTask:  # noqa: A002
    return PlanTask(id=id, task="t", model="gpt-4o", provider="openai", priority=1, depends_on=deps)


def test_plan_rejects_forward_dependencies() -> None:
    with pytest.raises(PlanningError, match="precede"):
        ExecutionPlan(
            strategy="parallel",
            tasks=(_task(1, 2), _task(2)),
            complexity=3,
            estimated_cost="medium",
            estimated_tokens=0,
        )


def test_plan_rejects_gaps_in_ids() -> None:
    with pytest.raises(PlanningError, match="sequential"):
        ExecutionPlan(
            strategy="parallel",
            tasks=(_task(1), _task(3)),
            complexity=3,
            estimated_cost="medium",
            estimated_tokens=0,
        )


def test_single_task_strategies_reject_several_tasks() -> None:
    with pytest.raises(PlanningError, match="exactly one task"):
        ExecutionPlan(
            strategy="direct",
            tasks=(_task(1), _task(2)),
            complexity=1,
            estimated_cost="low",
            estimated_tokens=0,
        )


def test_empty_plan_is_rejected() -> None:
    with pytest.raises(PlanningError):
        ExecutionPlan(
            strategy="parallel", tasks=(), complexity=1, estimated_cost="low", estimated_tokens=0
        )


@pytest.mark.parametrize(
    ("n", "base", "expected"),
    [
        (1, "low", "low"),
        (2, "medium", "medium"),
        (3, "low", "medium"),
        (4, "medium", "high"),
        (5, "low", "high"),
    ],
)
def test_total_cost_tier(n: int, base: str, expected: str) -> None:
    assert total_cost_tier(n, base) == expected  # type: ignore[arg-type]


def test_estimate_tokens_has_a_floor() -> None:
    assert estimate_tokens("hi") == 200
    assert estimate_tokens("x" * 400) == 1000


def test_model_pool_filters_only_when_something_survives() -> None:
    assert model_pool(max_cost="low") == ("gemini-1.5-flash",)
    assert model_pool(preferred_provider="openai") == ("gpt-4o",)
    assert model_pool(available_providers=("mistral",)) == PARALLEL_MODEL_POOL
