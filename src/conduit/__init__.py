"""Conduit: one request format for every LLM provider.

Public API:
    - Gateway: routing, execution, fallback and usage accounting
    - route() / route_with_fallback(): one-shot unified completions
    - orchestrate(): plan or execute a task across models
    - Config: configuration dataclass
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from conduit.config import Config
from conduit.errors import (
    AuthError,
    ConduitError,
    ConfigurationError,
    ErrorType,
    GatewayError,
    GatewayTimeoutError,
    InvalidRequestError,
    ModelUnavailableError,
    PlanningError,
    RateLimitError,
    ServerError,
    UnsupportedModelError,
)
from conduit.fallback import DEFAULT_CHAINS, FallbackChain, FallbackManager
from conduit.gateway import Gateway
from conduit.orchestrator import OrchestratorResponse, SubTask
from conduit.plan import ExecutionPlan, PlanTask
from conduit.routing import RoutingDecision
from conduit.types import (
    Budget,
    ChatMessage,
    ContentPart,
    CostBreakdown,
    LatencyMetrics,
    OrchestratorRequest,
    RoutingConstraints,
    RoutingInfo,
    RoutingPreferences,
    StreamChunk,
    TokenUsage,
    Tool,
    ToolCall,
    UnifiedRequest,
    UnifiedResponse,
)
from conduit.usage import UsageAccountant, UsageSnapshot

if TYPE_CHECKING:
    from collections.abc import Mapping

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("conduit-gateway")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("conduit").addHandler(logging.NullHandler())


async def route(
    request: UnifiedRequest | Mapping[str, Any], *, config: Config | None = None
) -> UnifiedResponse:
    """Run one unified request through a short-lived ``Gateway``.

    Example:
        response = await route(
            {"model": "auto", "messages": [{"role": "user", "content": "Hi"}]}
        )
        print(response.content)
    """
    async with Gateway(config) as gateway:
        return await gateway.route(request)


async def route_with_fallback(
    request: UnifiedRequest | Mapping[str, Any], *, config: Config | None = None
) -> UnifiedResponse:
    """Like ``route`` but walks a fallback chain on retryable failures."""
    async with Gateway(config) as gateway:
        return await gateway.route_with_fallback(request)


async def orchestrate(
    request: OrchestratorRequest | Mapping[str, Any], *, config: Config | None = None
) -> ExecutionPlan | OrchestratorResponse:
    """Plan a task, executing the plan unless ``plan_only`` is set."""
    async with Gateway(config) as gateway:
        return await gateway.orchestrate(request)


__all__ = [
    "DEFAULT_CHAINS",
    "AuthError",
    "Budget",
    "ChatMessage",
    "ConduitError",
    "Config",
    "ConfigurationError",
    "ContentPart",
    "CostBreakdown",
    "ErrorType",
    "ExecutionPlan",
    "FallbackChain",
    "FallbackManager",
    "Gateway",
    "GatewayError",
    "GatewayTimeoutError",
    "InvalidRequestError",
    "LatencyMetrics",
    "ModelUnavailableError",
    "OrchestratorRequest",
    "OrchestratorResponse",
    "PlanTask",
    "PlanningError",
    "RateLimitError",
    "RoutingConstraints",
    "RoutingDecision",
    "RoutingInfo",
    "RoutingPreferences",
    "ServerError",
    "StreamChunk",
    "SubTask",
    "TokenUsage",
    "Tool",
    "ToolCall",
    "UnifiedRequest",
    "UnifiedResponse",
    "UnsupportedModelError",
    "UsageAccountant",
    "UsageSnapshot",
    "__version__",
    "orchestrate",
    "route",
    "route_with_fallback",
]
