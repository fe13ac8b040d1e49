"""Fallback chains: substitute models after a retryable failure.

Chain selection matches on ``GatewayError.type``; message text is never
inspected. A request gets at most one chain.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import TYPE_CHECKING

from conduit.errors import RETRYABLE_TYPES, ErrorType
from conduit.result import Failure, Success

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from conduit.errors import GatewayError
    from conduit.result import Result
    from conduit.types import UnifiedRequest, UnifiedResponse

    Attempt = Callable[[UnifiedRequest], Awaitable[Result[UnifiedResponse, GatewayError]]]

logger = logging.getLogger(__name__)

COST_OPTIMIZED = "cost-optimized"
REASONING_FOCUSED = "reasoning-focused"
REQUEST_CHAIN = "request"

_REASONING_RE = re.compile(r"\b(?:reasoning|complex|prove|step by step)\b", re.IGNORECASE)


@dataclass(frozen=True)
class FallbackChain:
    """A named, ordered list of substitute models."""

    name: str
    models: tuple[str, ...]
    eligible_errors: frozenset[ErrorType]

    def __post_init__(self) -> None:
        object.__setattr__(self, "models", tuple(self.models))
        object.__setattr__(
            self, "eligible_errors", frozenset(ErrorType(e) for e in self.eligible_errors)
        )

    def handles(self, error: GatewayError) -> bool:
        return error.type in self.eligible_errors


_OUTAGE = frozenset(
    {ErrorType.RATE_LIMIT, ErrorType.SERVER_ERROR, ErrorType.MODEL_UNAVAILABLE}
)

DEFAULT_CHAINS: tuple[FallbackChain, ...] = (
    FallbackChain(
        "claude-primary", ("claude-3.5-sonnet", "claude-3-haiku", "gpt-4o-mini"), _OUTAGE
    ),
    FallbackChain("gpt-primary", ("gpt-4o", "gpt-4o-mini", "claude-3.5-sonnet"), _OUTAGE),
    FallbackChain(
        COST_OPTIMIZED,
        ("gpt-4o-mini", "claude-3-haiku", "gemini-1.5-flash"),
        frozenset({ErrorType.RATE_LIMIT, ErrorType.SERVER_ERROR, ErrorType.TIMEOUT}),
    ),
    FallbackChain(
        REASONING_FOCUSED,
        ("o1-preview", "claude-3-opus", "gpt-4-turbo"),
        frozenset({ErrorType.SERVER_ERROR, ErrorType.MODEL_UNAVAILABLE}),
    ),
)


def signals_reasoning(text: str) -> bool:
    return _REASONING_RE.search(text) is not None


class FallbackManager:
    """Select and run a fallback chain for a failed request."""

    def __init__(self, chains: Iterable[FallbackChain] = DEFAULT_CHAINS) -> None:
        self.chains = tuple(chains)

    def select_chain(
        self, request: UnifiedRequest, error: GatewayError
    ) -> FallbackChain | None:
        """Return the chain to try for *error*, or None when none applies.

        Order of preference: the request's own ``fallback_models``, the
        cost-optimized chain under a ``low`` ceiling, the reasoning-focused
        chain when the prompt asks for reasoning, then the first eligible
        configured chain.
        """
        if not error.retryable or error.type not in RETRYABLE_TYPES:
            return None

        routing = request.routing
        if routing is not None and routing.fallback_models:
            return FallbackChain(REQUEST_CHAIN, routing.fallback_models, RETRYABLE_TYPES)

        eligible = [c for c in self.chains if c.handles(error)]
        if not eligible:
            return None
        by_name = {c.name: c for c in eligible}

        max_cost = routing.max_cost if routing is not None else None
        if max_cost == "low" and COST_OPTIMIZED in by_name:
            return by_name[COST_OPTIMIZED]
        if REASONING_FOCUSED in by_name and signals_reasoning(request.prompt_text):
            return by_name[REASONING_FOCUSED]
        return eligible[0]

    async def run(
        self,
        chain: FallbackChain,
        request: UnifiedRequest,
        error: GatewayError,
        attempt: Attempt,
        *,
        is_available: Callable[[str], bool] | None = None,
    ) -> Result[UnifiedResponse, GatewayError]:
        """Try each model of *chain* in order; first success wins.

        The model that produced *error* is skipped. Returns the last failure
        when the chain is exhausted, or *error* itself when nothing was tried.
        """
        failed_model = error.model or request.model
        last: GatewayError = error
        for model in chain.models:
            if model == failed_model:
                continue
            if is_available is not None and not is_available(model):
                logger.debug("Skipping fallback model %s: provider not configured", model)
                continue
            logger.info("Fallback chain %s: trying %s", chain.name, model)
            match await attempt(request.with_model(model)):
                case Success() as ok:
                    return ok
                case Failure(error=e):
                    logger.warning(
                        "Fallback model %s failed (type=%s)", model, e.code
                    )
                    last = e
        return Failure(last)
