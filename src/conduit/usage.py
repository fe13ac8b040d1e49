"""In-memory usage accounting.

A single ``UsageAccountant`` is owned by the gateway and shared by every call
path, including concurrent parallel sub-tasks. Updates are serialized by a
lock held only for the counter arithmetic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
import logging
import threading
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping

    from conduit.errors import GatewayError
    from conduit.types import UnifiedResponse

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


@dataclass(frozen=True)
class ModelUsage:
    """Counters for one model."""

    requests: int = 0
    tokens: int = 0
    cost: float = 0.0
    avg_latency_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests": self.requests,
            "tokens": self.tokens,
            "cost": self.cost,
            "avg_latency_ms": self.avg_latency_ms,
        }


@dataclass(frozen=True)
class UsageSnapshot:
    """Immutable copy of the accountant's counters."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    average_latency_ms: float = 0.0
    fallback_events: int = 0
    by_model: Mapping[str, ModelUsage] = field(default_factory=dict)
    errors: Mapping[str, int] = field(default_factory=dict)
    last_reset: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "total_tokens": self.total_tokens,
            "total_cost": self.total_cost,
            "average_latency_ms": self.average_latency_ms,
            "fallback_events": self.fallback_events,
            "by_model": {k: v.to_dict() for k, v in self.by_model.items()},
            "errors": dict(self.errors),
            "last_reset": self.last_reset,
        }


class UsageAccountant:
    """Process-lifetime request, token and cost counters.

    Each top-level outcome is recorded exactly once through ``record_success``
    or ``record_failure``. Per-model latency is a running mean updated as
    ``avg' = (avg * n + latency) / (n + 1)``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._successes = 0
        self._failures = 0
        self._tokens = 0
        self._cost = 0.0
        self._latency_sum = 0.0
        self._fallbacks = 0
        self._by_model: dict[str, ModelUsage] = {}
        self._errors: dict[str, int] = {}
        self._last_reset = _now()

    def record_response(
        self, response: UnifiedResponse, *, fallback_used: bool = False
    ) -> None:
        """Record a completed call from its normalized response."""
        self.record_success(
            model=response.model,
            tokens=response.usage.total_tokens,
            cost=response.cost.total_cost,
            latency_ms=response.latency.total_time_ms,
            fallback_used=fallback_used,
        )

    def record_success(
        self,
        *,
        model: str,
        tokens: int,
        cost: float,
        latency_ms: float,
        fallback_used: bool = False,
    ) -> None:
        with self._lock:
            self._successes += 1
            self._tokens += tokens
            self._cost += cost
            self._latency_sum += latency_ms
            if fallback_used:
                self._fallbacks += 1
            prev = self._by_model.get(model, ModelUsage())
            n = prev.requests
            self._by_model[model] = ModelUsage(
                requests=n + 1,
                tokens=prev.tokens + tokens,
                cost=prev.cost + cost,
                avg_latency_ms=(prev.avg_latency_ms * n + latency_ms) / (n + 1),
            )
        logger.debug(
            "Recorded success model=%s tokens=%d cost=%.6f", model, tokens, cost
        )

    def record_failure(self, error: GatewayError, *, fallback_used: bool = False) -> None:
        with self._lock:
            self._failures += 1
            key = error.code
            self._errors[key] = self._errors.get(key, 0) + 1
            if fallback_used:
                self._fallbacks += 1
        logger.debug("Recorded failure type=%s", error.code)

    def snapshot(self) -> UsageSnapshot:
        with self._lock:
            total = self._successes + self._failures
            return UsageSnapshot(
                total_requests=total,
                successful_requests=self._successes,
                failed_requests=self._failures,
                total_tokens=self._tokens,
                total_cost=round(self._cost, 6),
                average_latency_ms=(
                    self._latency_sum / self._successes if self._successes else 0.0
                ),
                fallback_events=self._fallbacks,
                by_model=MappingProxyType(dict(self._by_model)),
                errors=MappingProxyType(dict(self._errors)),
                last_reset=self._last_reset,
            )

    def reset(self) -> None:
        """Zero every counter in one critical section."""
        with self._lock:
            self._reset_locked()
        logger.info("Usage counters reset")
