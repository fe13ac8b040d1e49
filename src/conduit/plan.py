"""Execution plans: a pure expansion of a routing decision.

``build_plan`` never performs I/O. The same plan drives plan-only requests
and the orchestrator's execution path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
import logging
import re
from typing import TYPE_CHECKING, Any, Literal
import uuid

from conduit import pricing
from conduit.errors import PlanningError
from conduit.routing import decomposition_domain, is_multi_part
from conduit.types import tier_rank

if TYPE_CHECKING:
    from collections.abc import Iterable

    from conduit.routing import RoutingDecision
    from conduit.types import CostTier, Strategy

logger = logging.getLogger(__name__)

AggregationMethod = Literal["merge", "select_best", "synthesize"]
StageKind = Literal[
    "analysis", "implementation", "testing", "optimization", "integration", "documentation"
]

HUMAN_REVIEW_MODEL = "human-review"
HUMAN_PROVIDER = "human"

#: Round-robin pool for parallel sub-tasks.
PARALLEL_MODEL_POOL: tuple[str, ...] = ("claude-3.5-sonnet", "gpt-4o", "gemini-1.5-flash")

# Lower number = earlier pipeline stage = higher priority.
_KIND_PRIORITY: dict[str, int] = {
    "analysis": 1,
    "implementation": 2,
    "integration": 3,
    "testing": 3,
    "optimization": 4,
    "documentation": 4,
}

_DOWNSTREAM_KINDS = frozenset({"testing", "optimization", "integration", "documentation"})

_BREAKDOWNS: dict[str, tuple[tuple[str, StageKind], ...]] = {
    "landing_page": (
        ("Create responsive HTML structure", "implementation"),
        ("Style components with CSS", "implementation"),
        ("Add interactive elements", "implementation"),
        ("Implement token section", "implementation"),
        ("Optimize for performance", "optimization"),
    ),
    "api": (
        ("Design API endpoints", "analysis"),
        ("Implement core logic", "implementation"),
        ("Add error handling", "implementation"),
        ("Write tests", "testing"),
        ("Document API", "documentation"),
    ),
    "generic": (
        ("Analyze requirements", "analysis"),
        ("Implement core functionality", "implementation"),
        ("Add refinements", "implementation"),
        ("Test and validate", "testing"),
    ),
}

_COMPARE_RE = re.compile(
    r"compar\w*\s+(?P<a>.+?)\s+(?:and|with|to|vs\.?|versus)\s+(?P<b>.+?)(?:[.?!]|$)",
    re.IGNORECASE,
)
_PART_SPLIT_RE = re.compile(
    r"\s*(?:\band then\b|\bafter that\b|;|\n\s*(?:\d+[.)]|[-*])\s)\s*", re.IGNORECASE
)


@dataclass(frozen=True)
class PlanTask:
    """One unit of work in an execution plan."""

    id: int
    task: str
    model: str
    provider: str
    priority: int
    depends_on: tuple[int, ...] = ()
    estimated_tokens: int = 0
    kind: StageKind = "implementation"
    system_prompt: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "task": self.task,
            "model": self.model,
            "provider": self.provider,
            "priority": self.priority,
            "dependsOn": list(self.depends_on),
            "estimatedTokens": self.estimated_tokens,
        }
        if self.system_prompt is not None:
            out["systemPrompt"] = self.system_prompt
        return out


@dataclass(frozen=True)
class Aggregation:
    method: AggregationMethod
    aggregator_model: str

    def to_dict(self) -> dict[str, str]:
        return {"method": self.method, "aggregatorModel": self.aggregator_model}


@dataclass(frozen=True)
class ExecutionPlan:
    """Machine-readable plan for a task.

    Invariants (checked on construction): task ids are 1..N in order, every
    ``depends_on`` id is smaller than its own id, and non-parallel strategies
    have exactly one task.
    """

    strategy: Strategy
    tasks: tuple[PlanTask, ...]
    complexity: int
    estimated_cost: CostTier
    estimated_tokens: int
    estimated_cost_usd: float = 0.0
    aggregation: Aggregation | None = None
    task: str = ""
    plan_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(
        default_factory=lambda: datetime.now(UTC).isoformat(timespec="seconds")
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "tasks", tuple(self.tasks))
        if not self.tasks:
            raise PlanningError("An execution plan needs at least one task")
        for expected_id, t in enumerate(self.tasks, start=1):
            if t.id != expected_id:
                raise PlanningError(f"Plan task ids must be sequential; got {t.id}")
            if any(dep >= t.id or dep < 1 for dep in t.depends_on):
                raise PlanningError(
                    f"Task {t.id} depends on a task that does not precede it",
                )
        if self.strategy != "parallel" and len(self.tasks) != 1:
            raise PlanningError(f"{self.strategy} plans have exactly one task")

    def to_dict(self) -> dict[str, Any]:
        """Render the JSON view with camelCase keys."""
        out: dict[str, Any] = {
            "planId": self.plan_id,
            "strategy": self.strategy,
            "complexity": self.complexity,
            "tasks": [t.to_dict() for t in self.tasks],
            "estimatedCost": self.estimated_cost,
            "estimatedCostUsd": self.estimated_cost_usd,
            "estimatedTokens": self.estimated_tokens,
            "createdAt": self.created_at,
        }
        if self.aggregation is not None:
            out["aggregation"] = self.aggregation.to_dict()
        return out


def estimate_tokens(text: str) -> int:
    """Rough output expectation for a task description."""
    return max(200, len(text) // 4 * 10)


def total_cost_tier(num_tasks: int, base: CostTier) -> CostTier:
    """Scale the decision's tier by fan-out width."""
    if num_tasks <= 2:
        return base
    if num_tasks <= 4:
        return "medium" if base == "low" else "high"
    return "high"


def _comparison_stages(task: str) -> tuple[tuple[str, StageKind], ...]:
    m = _COMPARE_RE.search(task)
    if m is None:
        return (
            ("Identify the options being compared", "analysis"),
            ("Research each option's strengths and weaknesses", "analysis"),
            ("Compare the options across key criteria", "integration"),
        )
    a, b = m.group("a").strip(), m.group("b").strip()
    return (
        (f"Research {a}", "analysis"),
        (f"Research {b}", "analysis"),
        (f"Compare {a} and {b} across key criteria", "integration"),
    )


def _explicit_parts(task: str) -> tuple[tuple[str, StageKind], ...]:
    parts = [p.strip(" .") for p in _PART_SPLIT_RE.split(task) if p and p.strip(" .")]
    return tuple((p, "implementation") for p in parts)


def break_down(task: str) -> tuple[tuple[str, StageKind], ...]:
    """Decompose *task* into ordered ``(description, kind)`` stages."""
    domain = decomposition_domain(task)
    if domain == "comparison":
        return _comparison_stages(task)
    if domain is not None:
        return _BREAKDOWNS[domain]
    if is_multi_part(task):
        parts = _explicit_parts(task)
        if len(parts) >= 2:
            return parts
    return _BREAKDOWNS["generic"]


def _dependencies(kinds: list[StageKind], index: int) -> tuple[int, ...]:
    kind = kinds[index]
    earlier = range(index)
    if kind == "implementation":
        return tuple(i + 1 for i in earlier if kinds[i] == "analysis")
    if kind in _DOWNSTREAM_KINDS:
        impl = tuple(i + 1 for i in earlier if kinds[i] == "implementation")
        if impl:
            return impl
        return tuple(i + 1 for i in earlier if kinds[i] == "analysis")
    return ()


def model_pool(
    *,
    preferred_provider: str | None = None,
    max_cost: str | None = None,
    available_providers: Iterable[str] | None = None,
) -> tuple[str, ...]:
    """Models eligible for parallel sub-tasks, in round-robin order."""
    pool = [pricing.lookup(m) for m in PARALLEL_MODEL_POOL]
    if available_providers is not None:
        allowed = set(available_providers)
        narrowed = [m for m in pool if m.provider in allowed]
        pool = narrowed or pool
    if max_cost is not None:
        capped = [m for m in pool if tier_rank(m.cost_tier) <= tier_rank(max_cost)]
        pool = capped or pool
    if preferred_provider:
        preferred = [m for m in pool if m.provider == preferred_provider]
        pool = preferred or pool
    return tuple(m.id for m in pool)


def _subtask_system_prompt(task: str) -> str:
    return (
        "You are one of several agents working in parallel on the overall task: "
        f"{task!r}. Complete only your assigned part and be concise."
    )


def build_plan(
    decision: RoutingDecision,
    task: str,
    *,
    aggregation: AggregationMethod = "synthesize",
    available_providers: Iterable[str] | None = None,
) -> ExecutionPlan:
    """Expand *decision* into an ``ExecutionPlan`` for *task*."""
    if decision.strategy == "parallel":
        stages = break_down(task)
        pool = model_pool(
            preferred_provider=decision.constraints.preferred_provider,
            max_cost=decision.constraints.max_cost,
            available_providers=available_providers,
        )
        kinds = [kind for _, kind in stages]
        tasks: list[PlanTask] = []
        for i, (text, kind) in enumerate(stages):
            model = pool[i % len(pool)]
            tasks.append(
                PlanTask(
                    id=i + 1,
                    task=text,
                    model=model,
                    provider=pricing.provider_for(model),
                    priority=_KIND_PRIORITY[kind],
                    depends_on=_dependencies(kinds, i),
                    estimated_tokens=estimate_tokens(text),
                    kind=kind,
                    system_prompt=_subtask_system_prompt(task),
                )
            )
        agg = Aggregation(method=aggregation, aggregator_model=decision.selected_model)
        tokens = sum(t.estimated_tokens for t in tasks)
        if aggregation == "synthesize":
            tokens += estimate_tokens(task)
        usd = sum(pricing.estimate_cost(t.estimated_tokens, t.model) for t in tasks)
        if aggregation == "synthesize":
            usd += pricing.estimate_cost(estimate_tokens(task), decision.selected_model)
        plan = ExecutionPlan(
            strategy="parallel",
            tasks=tuple(tasks),
            complexity=decision.complexity,
            estimated_cost=total_cost_tier(len(tasks), decision.estimated_cost),
            estimated_tokens=tokens,
            estimated_cost_usd=round(usd, 6),
            aggregation=agg,
            task=task,
        )
    elif decision.strategy == "escalate":
        plan = ExecutionPlan(
            strategy="escalate",
            tasks=(
                PlanTask(
                    id=1,
                    task=task,
                    model=HUMAN_REVIEW_MODEL,
                    provider=HUMAN_PROVIDER,
                    priority=1,
                    estimated_tokens=estimate_tokens(task),
                    kind="analysis",
                ),
            ),
            complexity=decision.complexity,
            estimated_cost="high",
            estimated_tokens=estimate_tokens(task),
            task=task,
        )
    else:
        tokens = estimate_tokens(task)
        plan = ExecutionPlan(
            strategy=decision.strategy,
            tasks=(
                PlanTask(
                    id=1,
                    task=task,
                    model=decision.selected_model,
                    provider=decision.selected_provider,
                    priority=1,
                    estimated_tokens=tokens,
                ),
            ),
            complexity=decision.complexity,
            estimated_cost=decision.estimated_cost,
            estimated_tokens=tokens,
            estimated_cost_usd=pricing.estimate_cost(tokens, decision.selected_model),
            task=task,
        )
    logger.debug(
        "Built %s plan %s with %d task(s)", plan.strategy, plan.plan_id, len(plan.tasks)
    )
    return plan
