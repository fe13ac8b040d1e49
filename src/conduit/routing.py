"""Routing decision engine.

Maps a task description plus constraints to a strategy and a concrete
model/provider pair. Everything here is a pure function of its inputs: the
same task and constraints always produce the same decision.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
import re
from typing import TYPE_CHECKING

from conduit import pricing
from conduit.errors import UnsupportedModelError
from conduit.types import RoutingConstraints, tier_rank

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from conduit.pricing import ModelSpec
    from conduit.types import CostTier, Objective, Strategy

logger = logging.getLogger(__name__)

HIGH_KEYWORDS = (
    "analyze", "complex", "detailed", "comprehensive", "research",
    "architecture", "algorithm", "optimization", "distributed", "consensus",
)  # fmt: skip
MEDIUM_KEYWORDS = (
    "code", "implement", "debug", "review", "design", "plan", "calculate",
    "build", "create", "integrate",
)  # fmt: skip
LOW_KEYWORDS = (
    "simple", "basic", "quick", "summarize", "list", "hello", "what", "how",
)  # fmt: skip
TECHNICAL_TERMS = (
    "api", "database", "sql", "javascript", "python", "react", "nodejs",
    "docker", "kubernetes", "aws", "cloud", "microservice", "authentication",
    "encryption", "blockchain", "ml", "ai", "neural", "algorithm", "json",
    "rest", "graphql",
)  # fmt: skip

# Irreversible or regulated actions that always need a human.
HIGH_RISK_PHRASES = (
    "delete production", "drop database", "drop table", "wipe", "transfer funds",
    "wire money", "deploy to production", "production deploy", "legal advice",
    "medical advice", "diagnose", "terminate employee", "sign contract",
)  # fmt: skip

SPECIALIZATIONS: dict[str, tuple[str, ...]] = {
    "coding": ("code", "debug", "implement", "function", "refactor", "bug", "regex"),
    "math": ("calculate", "equation", "math", "prove", "integral", "probability"),
    "writing": ("write", "essay", "story", "poem", "draft", "translate", "rewrite"),
    "data": ("sql", "query", "dataset", "csv", "spreadsheet"),
}

# Task shapes with a known multi-stage breakdown.
DECOMPOSITION_DOMAINS: dict[str, tuple[str, ...]] = {
    "landing_page": ("landing page", "website", "web page", "homepage"),
    "api": ("api", "endpoint", "backend service"),
    "comparison": ("compare", "comparison", "versus", "vs"),
}

#: Models the router chooses from, in tie-break order.
ROUTING_CANDIDATES: tuple[str, ...] = (
    "claude-opus-4",
    "claude-sonnet-4",
    "gpt-4o",
    "gpt-4o-mini",
    "gemini-2.0-flash",
)

_MULTI_PART_RE = re.compile(r"(?:\band then\b|\bafter that\b|;|\n\s*(?:\d+[.)]|[-*])\s)")

_SUFFIXES = r"(?:s|es|d|ed|ing)?"


def _word_re(term: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(term)}{_SUFFIXES}\b")


_PATTERNS: dict[str, re.Pattern[str]] = {
    term: _word_re(term)
    for term in (
        *HIGH_KEYWORDS,
        *MEDIUM_KEYWORDS,
        *LOW_KEYWORDS,
        *TECHNICAL_TERMS,
        *HIGH_RISK_PHRASES,
        *(t for terms in SPECIALIZATIONS.values() for t in terms),
        *(t for terms in DECOMPOSITION_DOMAINS.values() for t in terms),
    )
}


def _count(text: str, terms: Iterable[str]) -> int:
    return sum(1 for t in terms if _PATTERNS[t].search(text))


def _contains_any(text: str, terms: Iterable[str]) -> bool:
    return any(_PATTERNS[t].search(text) for t in terms)


def analyze_complexity(task: str) -> int:
    """Score *task* on a 1-5 scale from its length and vocabulary."""
    text = task.lower()
    score = 1.0
    if len(task) > 500:
        score += 2
    elif len(task) > 200:
        score += 1
    elif len(task) > 100:
        score += 0.5

    score += _count(text, HIGH_KEYWORDS) * 0.8
    score += _count(text, MEDIUM_KEYWORDS) * 0.4
    score -= _count(text, LOW_KEYWORDS) * 0.2
    score += _count(text, TECHNICAL_TERMS) * 0.3

    # Round half up so 2.5 -> 3 regardless of float banking rules.
    return max(1, min(5, math.floor(score + 0.5)))


def decomposition_domain(task: str) -> str | None:
    """Return the known breakdown domain for *task*, if any."""
    text = task.lower()
    for domain, cues in DECOMPOSITION_DOMAINS.items():
        if _contains_any(text, cues):
            return domain
    return None


def is_multi_part(task: str) -> bool:
    """Whether *task* spells out several sequential parts."""
    return _MULTI_PART_RE.search(task.lower()) is not None


def specialization(task: str) -> str | None:
    """Return the single specialization *task* signals, or None if zero or several."""
    text = task.lower()
    matched = [name for name, cues in SPECIALIZATIONS.items() if _contains_any(text, cues)]
    return matched[0] if len(matched) == 1 else None


def is_high_risk(task: str) -> bool:
    return _contains_any(task.lower(), HIGH_RISK_PHRASES)


@dataclass(frozen=True)
class RoutingDecision:
    """The routing engine's verdict for one task."""

    strategy: Strategy
    selected_model: str
    selected_provider: str
    complexity: int
    estimated_cost: CostTier
    reason: str
    considered_models: tuple[str, ...] = ()
    constraints: RoutingConstraints = field(default_factory=RoutingConstraints)

    def to_dict(self) -> dict[str, object]:
        return {
            "strategy": self.strategy,
            "selectedModel": self.selected_model,
            "selectedProvider": self.selected_provider,
            "complexity": self.complexity,
            "estimatedCost": self.estimated_cost,
            "reason": self.reason,
        }


def choose_strategy(task: str, complexity: int, max_cost: str | None) -> tuple[Strategy, str]:
    """Threshold *complexity* against the cost ceiling; returns (strategy, why)."""
    low_ceiling = max_cost == "low"
    if is_high_risk(task):
        return "escalate", "task requests an irreversible or high-risk action"

    decomposable = decomposition_domain(task) is not None or (
        is_multi_part(task) and complexity >= 3
    )
    if decomposable and not low_ceiling:
        return "parallel", "task decomposes into independent stages"
    if complexity >= 5 and not low_ceiling:
        return "escalate", "complexity exceeds automation thresholds"
    if decomposable or complexity >= 3:
        why = "low cost ceiling caps fan-out" if low_ceiling else "moderate complexity"
        return "delegate", why
    spec = specialization(task)
    if complexity == 2 and spec is not None:
        return "delegate", f"single clear specialization ({spec})"
    return "direct", "low complexity"


# Tie-break keys per objective; the candidate order settles what is left.
_OBJECTIVE_KEYS: dict[str, Callable[[ModelSpec, int], tuple[int, ...]]] = {
    "balanced": lambda m, c: (abs(m.complexity - c), tier_rank(m.cost_tier)),
    "cost": lambda m, c: (tier_rank(m.cost_tier), abs(m.complexity - c)),
    "latency": lambda m, c: (m.avg_latency_ms, abs(m.complexity - c)),
    "quality": lambda m, c: (-m.complexity, tier_rank(m.cost_tier)),
}


def select_model(
    complexity: int,
    *,
    max_cost: str | None = None,
    max_latency: int | None = None,
    preferred_provider: str | None = None,
    objective: Objective = "balanced",
    needs_images: bool = False,
    available_providers: Iterable[str] | None = None,
    blocked_providers: Iterable[str] = (),
    candidates: Iterable[str] = ROUTING_CANDIDATES,
) -> tuple[ModelSpec, str, tuple[str, ...]]:
    """Pick the model that best serves *complexity* under *objective*.

    Provider, cost and image filters are hard: when nothing survives them
    ``UnsupportedModelError`` is raised. The latency budget and the preferred
    provider narrow the pool only when at least one model is left.

    Returns ``(spec, reason, considered_ids)``.
    """
    candidates = tuple(candidates)
    pool = [pricing.lookup(m) for m in candidates]
    if available_providers is not None:
        allowed = set(available_providers)
        pool = [m for m in pool if m.provider in allowed]
    blocked = set(blocked_providers)
    if blocked:
        pool = [m for m in pool if m.provider not in blocked]
    if max_cost is not None:
        ceiling = tier_rank(max_cost)
        pool = [m for m in pool if tier_rank(m.cost_tier) <= ceiling]
    if needs_images:
        pool = [m for m in pool if m.supports_images]
    if not pool:
        raise UnsupportedModelError(
            "No model satisfies the routing constraints",
            hint="Relax maxCost, unblock a provider, or configure another API key.",
        )

    latency_hit = False
    if max_latency is not None:
        fast = [m for m in pool if m.avg_latency_ms <= max_latency]
        if fast:
            pool = fast
            latency_hit = True
        else:
            logger.debug("No candidate within %d ms; budget ignored", max_latency)

    preferred_hit = False
    if preferred_provider:
        preferred = [m for m in pool if m.provider == preferred_provider]
        if preferred:
            pool = preferred
            preferred_hit = True

    order = {m: i for i, m in enumerate(candidates)}
    rank = _OBJECTIVE_KEYS[objective]
    best = min(pool, key=lambda m: (*rank(m, complexity), order.get(m.id, len(order))))

    if preferred_hit:
        reason = (
            f"Selected {best.id} from preferred provider {best.provider} with complexity "
            f"{best.complexity} matching analyzed complexity {complexity}"
        )
    elif max_cost is not None:
        reason = (
            f"Selected {best.id} as the best model within {max_cost} cost constraint "
            f"(complexity match: {best.complexity} vs {complexity})"
        )
    elif latency_hit:
        reason = (
            f"Selected {best.id} as the best model within the {max_latency} ms latency "
            f"budget (typical {best.avg_latency_ms} ms)"
        )
    else:
        reason = f"Selected {best.id} as optimal match for complexity level {complexity}"
    if objective != "balanced":
        reason = f"{reason}, optimizing for {objective}"
    return best, reason, tuple(m.id for m in pool)


def decide(
    task: str,
    constraints: RoutingConstraints | None = None,
    *,
    needs_images: bool = False,
    available_providers: Iterable[str] | None = None,
    blocked_providers: Iterable[str] = (),
) -> RoutingDecision:
    """Produce the routing decision for *task*."""
    constraints = constraints or RoutingConstraints()

    complexity = analyze_complexity(task)
    strategy, why = choose_strategy(task, complexity, constraints.max_cost)
    spec, reason, considered = select_model(
        complexity,
        max_cost=constraints.max_cost,
        max_latency=constraints.max_latency,
        preferred_provider=constraints.preferred_provider,
        objective=constraints.optimize_for,
        needs_images=needs_images,
        available_providers=available_providers,
        blocked_providers=blocked_providers,
    )
    logger.info(
        "Routing decision: strategy=%s model=%s complexity=%d (%s)",
        strategy,
        spec.id,
        complexity,
        why,
    )
    return RoutingDecision(
        strategy=strategy,
        selected_model=spec.id,
        selected_provider=spec.provider,
        complexity=complexity,
        estimated_cost=spec.cost_tier,
        reason=f"{reason}; strategy {strategy}: {why}",
        considered_models=considered,
        constraints=constraints,
    )


def escalation(
    task: str, constraints: RoutingConstraints | None = None, *, reason: str
) -> RoutingDecision:
    """A decision that hands *task* to a human; used when nothing can serve it."""
    return RoutingDecision(
        strategy="escalate",
        selected_model="human-review",
        selected_provider="human",
        complexity=analyze_complexity(task),
        estimated_cost="high",
        reason=reason,
        constraints=constraints or RoutingConstraints(),
    )
