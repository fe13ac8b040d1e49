"""The gateway service object: routing, execution, fallback and accounting."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from contextlib import aclosing
from dataclasses import replace
import logging
import time
from typing import TYPE_CHECKING, Any, Self

from conduit import pricing
from conduit._http import preview
from conduit.config import Config
from conduit.errors import (
    AuthError,
    ConfigurationError,
    GatewayError,
    InvalidRequestError,
    UnsupportedModelError,
)
from conduit.fallback import FallbackManager
from conduit.orchestrator import Orchestrator
from conduit.plan import build_plan
from conduit.providers import ProviderAdapter, build_registry, create_adapter
from conduit.result import Failure, Success, capture
from conduit.routing import decide, escalation
from conduit.types import (
    LatencyMetrics,
    OrchestratorRequest,
    RoutingConstraints,
    RoutingInfo,
    UnifiedRequest,
)
from conduit.usage import UsageAccountant

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable
    from types import TracebackType

    from conduit.fallback import FallbackChain
    from conduit.orchestrator import OrchestratorResponse
    from conduit.plan import ExecutionPlan
    from conduit.routing import RoutingDecision
    from conduit.types import StreamChunk, TokenUsage, UnifiedResponse
    from conduit.usage import UsageSnapshot

logger = logging.getLogger(__name__)


def _as_request(request: UnifiedRequest | Mapping[str, Any]) -> UnifiedRequest:
    if isinstance(request, UnifiedRequest):
        return request
    if isinstance(request, Mapping):
        return UnifiedRequest.from_dict(request)
    raise InvalidRequestError(
        f"Expected a UnifiedRequest or a JSON object, got {type(request).__name__}"
    )


class Gateway:
    """Unified entry point over every configured provider.

    Owns the adapter registry, the usage accountant and the fallback manager.
    Use as an async context manager so adapter HTTP clients are closed.

    Example:
        async with Gateway(Config(use_mock=True)) as gw:
            response = await gw.route(
                UnifiedRequest(messages=(ChatMessage(role="user", content="hi"),))
            )
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        adapters: Mapping[str, ProviderAdapter] | None = None,
        accountant: UsageAccountant | None = None,
        fallback_chains: Iterable[FallbackChain] | None = None,
    ) -> None:
        self.config = config if config is not None else Config()
        self._adapters: dict[str, ProviderAdapter] = (
            dict(adapters) if adapters is not None else build_registry(self.config)
        )
        self.accountant = accountant if accountant is not None else UsageAccountant()
        self.fallback = (
            FallbackManager(fallback_chains)
            if fallback_chains is not None
            else FallbackManager()
        )
        self._orchestrator = Orchestrator(
            self,
            max_parallel=self.config.max_parallel_subtasks,
            timeout_s=self.config.timeout_s,
        )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    @property
    def providers(self) -> tuple[str, ...]:
        """Names of the providers with a registered adapter."""
        return tuple(self._adapters)

    def register_adapter(self, name: str, adapter: ProviderAdapter) -> None:
        """Register (or replace) the adapter serving provider *name*."""
        if not isinstance(adapter, ProviderAdapter):
            raise ConfigurationError(
                f"{type(adapter).__name__} does not implement ProviderAdapter",
                hint="Adapters need name, capabilities, execute, stream, "
                "calculate_cost, validate_api_key, health_check and aclose.",
            )
        self._adapters[name] = adapter
        logger.debug("Registered adapter for provider %s", name)

    def _adapter_for(self, provider: str, model: str) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise AuthError(
                f"No adapter configured for provider {provider!r}",
                provider=provider,
                model=model,
                hint=f"Set the {provider.upper()}_API_KEY environment variable.",
            )
        return adapter

    def _is_available(self, model: str) -> bool:
        try:
            return pricing.provider_for(model) in self._adapters
        except UnsupportedModelError:
            return False

    # ------------------------------------------------------------------
    # Single-call path
    # ------------------------------------------------------------------

    def _resolve(self, request: UnifiedRequest) -> tuple[UnifiedRequest, RoutingInfo]:
        """Pick the concrete model for *request* and check it can serve it.

        Raises before any network call when the model is unknown or lacks a
        capability the request needs.
        """
        prefs = request.routing
        blocked = prefs.blocked_providers if prefs is not None else ()
        if request.is_auto:
            constraints = RoutingConstraints(
                max_cost=prefs.max_cost if prefs else None,
                preferred_provider=(
                    prefs.preferred_providers[0]
                    if prefs and prefs.preferred_providers
                    else None
                ),
                max_latency=prefs.max_latency_ms if prefs else None,
                optimize_for=prefs.strategy if prefs else "balanced",
            )
            decision = decide(
                request.prompt_text or request.messages[-1].text,
                constraints,
                needs_images=request.has_images,
                available_providers=self.providers,
                blocked_providers=blocked,
            )
            spec = pricing.lookup(decision.selected_model)
            info = RoutingInfo(
                selected_model=spec.id,
                selected_provider=spec.provider,
                strategy=decision.strategy,
                reason=decision.reason,
                complexity=decision.complexity,
                considered_models=decision.considered_models,
            )
        else:
            spec = pricing.lookup(request.model)
            if spec.provider in blocked:
                raise InvalidRequestError(
                    f"Model {spec.id} is served by blocked provider {spec.provider}",
                    model=spec.id,
                )
            info = RoutingInfo(
                selected_model=spec.id,
                selected_provider=spec.provider,
                reason=f"Explicitly requested model {spec.id}",
            )

        if request.has_images and not spec.supports_images:
            raise InvalidRequestError(
                f"Model {spec.id} does not accept image input", model=spec.id
            )
        if request.tools and not spec.supports_tools:
            raise InvalidRequestError(
                f"Model {spec.id} does not support tool calling", model=spec.id
            )
        if request.stream and not spec.supports_streaming:
            raise InvalidRequestError(
                f"Model {spec.id} does not support streaming", model=spec.id
            )
        return request.with_model(spec.id), info

    async def _call(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> UnifiedResponse:
        resolved, info = self._resolve(request)
        adapter = self._adapter_for(info.selected_provider, resolved.model)
        logger.debug(
            "Dispatching to %s/%s prompt=%r",
            info.selected_provider,
            resolved.model,
            preview(resolved.prompt_text),
        )
        start = time.perf_counter()
        response = await adapter.execute(resolved, timeout_s=timeout_s)
        info = replace(info, execution_time_ms=(time.perf_counter() - start) * 1000)
        _check_budget(resolved, response)
        return replace(response, routing=info)

    async def route(
        self,
        request: UnifiedRequest | Mapping[str, Any],
        *,
        timeout_s: float | None = None,
    ) -> UnifiedResponse:
        """Execute one call with no fallback; raises a ``GatewayError`` on failure."""
        try:
            response = await self._call(_as_request(request), timeout_s=timeout_s)
        except GatewayError as e:
            self.accountant.record_failure(e)
            raise
        self.accountant.record_response(response)
        return response

    async def route_with_fallback(
        self,
        request: UnifiedRequest | Mapping[str, Any],
        *,
        timeout_s: float | None = None,
    ) -> UnifiedResponse:
        """Execute one call; on a retryable failure, walk one fallback chain."""
        try:
            req = _as_request(request)
        except GatewayError as e:
            self.accountant.record_failure(e)
            raise

        match await capture(self._call(req, timeout_s=timeout_s)):
            case Success(value=response):
                self.accountant.record_response(response)
                return response
            case Failure(error=error):
                return await self._recover(req, error, timeout_s=timeout_s)

    async def _recover(
        self, req: UnifiedRequest, error: GatewayError, *, timeout_s: float | None
    ) -> UnifiedResponse:
        chain = self.fallback.select_chain(req, error) if self.config.enable_fallbacks else None
        if chain is None:
            self.accountant.record_failure(error)
            raise error

        failed_model = error.model or req.model
        logger.info(
            "Primary model %s failed (type=%s); falling back via %s",
            failed_model,
            error.code,
            chain.name,
        )
        outcome = await self.fallback.run(
            chain,
            req,
            error,
            lambda r: capture(self._call(r, timeout_s=timeout_s)),
            is_available=self._is_available,
        )
        match outcome:
            case Success(value=response):
                routing = response.routing or RoutingInfo(
                    selected_model=response.model, selected_provider=response.provider
                )
                response = replace(
                    response,
                    routing=replace(
                        routing,
                        fallback_used=True,
                        fallback_reason=(
                            f"{failed_model} failed with {error.code}: "
                            f"{error.public_message()}"
                        ),
                        fallback_chain=chain.name,
                    ),
                )
                self.accountant.record_response(response, fallback_used=True)
                return response
            case Failure(error=last):
                self.accountant.record_failure(last, fallback_used=True)
                raise last

    async def stream(
        self,
        request: UnifiedRequest | Mapping[str, Any],
        *,
        timeout_s: float | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream one call as unified chunks, in provider order.

        Usage is recorded exactly once: as a failure when the upstream raises,
        otherwise when the stream ends or the caller stops iterating. Streams
        are not retried through fallback chains.
        """
        try:
            req = replace(_as_request(request), stream=True)
            resolved, info = self._resolve(req)
            adapter = self._adapter_for(info.selected_provider, resolved.model)
        except GatewayError as e:
            self.accountant.record_failure(e)
            raise

        start = time.perf_counter()
        ttfb_ms: float | None = None
        usage: TokenUsage | None = None
        failed = False
        try:
            upstream = adapter.stream(resolved, timeout_s=timeout_s)
            async with aclosing(upstream) as chunks:
                async for chunk in chunks:
                    if ttfb_ms is None:
                        ttfb_ms = (time.perf_counter() - start) * 1000
                        logger.debug(
                            "First chunk from %s after %.1f ms", resolved.model, ttfb_ms
                        )
                    if chunk.usage is not None:
                        usage = chunk.usage
                    yield chunk
        except GatewayError as e:
            failed = True
            self.accountant.record_failure(e)
            raise
        finally:
            if not failed:
                self._record_stream(adapter, resolved.model, usage, start, ttfb_ms)

    def _record_stream(
        self,
        adapter: ProviderAdapter,
        model: str,
        usage: TokenUsage | None,
        start: float,
        ttfb_ms: float | None,
    ) -> None:
        latency = LatencyMetrics(
            total_time_ms=(time.perf_counter() - start) * 1000, ttfb_ms=ttfb_ms
        )
        tokens = usage.total_tokens if usage is not None else 0
        cost = 0.0
        if usage is not None:
            cost = adapter.calculate_cost(usage, model).total_cost
        self.accountant.record_success(
            model=model, tokens=tokens, cost=cost, latency_ms=latency.total_time_ms
        )

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def decide(
        self, task: str, constraints: RoutingConstraints | Mapping[str, Any] | None = None
    ) -> RoutingDecision:
        """Route *task* over the configured providers."""
        return decide(
            task, _as_constraints(constraints), available_providers=self.providers
        )

    def _decide_or_escalate(
        self, task: str, constraints: RoutingConstraints
    ) -> RoutingDecision:
        try:
            return decide(task, constraints, available_providers=self.providers)
        except UnsupportedModelError:
            logger.warning("No configured model satisfies the constraints; escalating")
            return escalation(
                task,
                constraints,
                reason="No configured model satisfies the routing constraints",
            )

    def plan(
        self, task: str, constraints: RoutingConstraints | Mapping[str, Any] | None = None
    ) -> ExecutionPlan:
        """Build the execution plan for *task* without calling any provider."""
        request = OrchestratorRequest(task=task, constraints=_as_constraints(constraints))
        decision = self._decide_or_escalate(request.task, request.constraints)
        return build_plan(decision, request.task, available_providers=self.providers)

    async def orchestrate(
        self, request: OrchestratorRequest | Mapping[str, Any]
    ) -> ExecutionPlan | OrchestratorResponse:
        """Plan *request*, and execute the plan unless ``plan_only`` is set."""
        if not isinstance(request, OrchestratorRequest):
            request = OrchestratorRequest.from_dict(request)
        decision = self._decide_or_escalate(request.task, request.constraints)
        plan = build_plan(decision, request.task, available_providers=self.providers)
        if request.plan_only:
            return plan
        return await self._orchestrator.execute(plan, decision)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def usage_stats(self) -> UsageSnapshot:
        return self.accountant.snapshot()

    def reset_usage(self) -> None:
        self.accountant.reset()

    async def validate_api_key(self, provider: str, key: str) -> bool:
        """Check *key* against *provider* with its cheapest authenticated call."""
        adapter = self._adapters.get(provider)
        if adapter is not None:
            return await adapter.validate_api_key(key)
        temp = create_adapter(provider, key, self.config)
        try:
            return await temp.validate_api_key(key)
        finally:
            await temp.aclose()

    async def health(self) -> dict[str, dict[str, Any]]:
        """Run every adapter's health check concurrently."""
        names = list(self._adapters)
        results = await asyncio.gather(
            *(self._adapters[n].health_check() for n in names)
        )
        return dict(zip(names, results, strict=True))

    async def aclose(self) -> None:
        """Close every adapter's HTTP client."""
        for adapter in self._adapters.values():
            await adapter.aclose()


def _as_constraints(
    constraints: RoutingConstraints | Mapping[str, Any] | None,
) -> RoutingConstraints:
    if isinstance(constraints, RoutingConstraints):
        return constraints
    return RoutingConstraints.from_dict(constraints)


def _check_budget(request: UnifiedRequest, response: UnifiedResponse) -> None:
    budget = request.budget
    if budget is None or budget.max_cost is None:
        return
    if response.cost.total_cost > budget.max_cost:
        logger.warning(
            "Call cost %.6f exceeded budget %.6f (tracking_id=%s)",
            response.cost.total_cost,
            budget.max_cost,
            budget.tracking_id,
        )
