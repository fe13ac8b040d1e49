"""Provider-agnostic request/response types.

Every adapter translates to and from these shapes. Instances are frozen once
constructed; sequences are normalized to tuples in ``__post_init__``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import time
from typing import TYPE_CHECKING, Any, Literal

from conduit.errors import InvalidRequestError

if TYPE_CHECKING:
    from collections.abc import Mapping

Role = Literal["system", "user", "assistant", "tool"]
FinishReason = Literal["stop", "length", "tool_calls", "content_filter"]
Strategy = Literal["direct", "delegate", "parallel", "escalate"]
CostTier = Literal["low", "medium", "high"]
#: What auto-routing optimizes for when several models fit.
Objective = Literal["cost", "latency", "quality", "balanced"]
ToolChoice = Literal["auto", "none", "required"] | dict[str, str]

ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "tool"})
FINISH_REASONS: frozenset[str] = frozenset(
    {"stop", "length", "tool_calls", "content_filter"}
)
STRATEGIES: tuple[str, ...] = ("direct", "delegate", "parallel", "escalate")
COST_TIERS: tuple[str, ...] = ("low", "medium", "high")
OBJECTIVES: tuple[str, ...] = ("cost", "latency", "quality", "balanced")


def tier_rank(tier: str) -> int:
    """Return 0/1/2 for low/medium/high."""
    return COST_TIERS.index(tier)


# =============================================================================
# Messages
# =============================================================================


@dataclass(frozen=True)
class ContentPart:
    """One typed piece of multimodal message content."""

    type: Literal["text", "image"]
    text: str | None = None
    #: ``data:<mime>;base64,<payload>`` or an external http(s) URL.
    image_url: str | None = None

    def __post_init__(self) -> None:
        if self.type == "text":
            if not isinstance(self.text, str):
                raise InvalidRequestError("Text content parts require a string 'text'")
        elif self.type == "image":
            if not isinstance(self.image_url, str) or not self.image_url:
                raise InvalidRequestError("Image content parts require an 'image_url'")
        else:
            raise InvalidRequestError(f"Unsupported content part type: {self.type!r}")

    @classmethod
    def of_text(cls, text: str) -> ContentPart:
        return cls(type="text", text=text)

    @classmethod
    def of_image(cls, url: str) -> ContentPart:
        return cls(type="image", image_url=url)

    @property
    def is_inline_image(self) -> bool:
        return self.type == "image" and (self.image_url or "").startswith("data:")

    def split_data_url(self) -> tuple[str, str]:
        """Return ``(mime_type, base64_payload)`` for an inline image."""
        url = self.image_url or ""
        header, sep, payload = url.partition(",")
        if not sep or not header.startswith("data:") or ";base64" not in header:
            raise InvalidRequestError("Inline images must be base64 data URLs")
        mime_type = header[len("data:") :].split(";", 1)[0] or "image/png"
        return mime_type, payload


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    #: JSON-encoded argument object, exactly as the provider produced it.
    arguments: str = "{}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class Tool:
    """A function the model may call."""

    name: str
    description: str = ""
    parameters: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidRequestError("Tools require a non-empty name")


@dataclass(frozen=True)
class ChatMessage:
    """A single conversational turn."""

    role: Role
    content: str | tuple[ContentPart, ...] | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    tool_call_id: str | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise InvalidRequestError(
                f"Invalid message role: {self.role!r}",
                hint="Roles are system, user, assistant or tool.",
            )
        if isinstance(self.content, (list, tuple)):
            object.__setattr__(self, "content", tuple(self.content))
        if self.tool_calls is not None:
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        if self.content is None and not self.tool_calls:
            raise InvalidRequestError(
                f"{self.role} message has no content",
                hint="Only assistant messages carrying tool_calls may omit content.",
            )
        if self.role == "tool" and not self.tool_call_id:
            raise InvalidRequestError("Tool messages require a tool_call_id")

    @property
    def parts(self) -> tuple[ContentPart, ...]:
        """Content as typed parts (a plain string becomes one text part)."""
        if self.content is None:
            return ()
        if isinstance(self.content, str):
            return (ContentPart.of_text(self.content),)
        return self.content

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(p.text or "" for p in self.parts if p.type == "text")

    @property
    def has_images(self) -> bool:
        return any(p.type == "image" for p in self.parts)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"role": self.role}
        if self.content is None or isinstance(self.content, str):
            out["content"] = self.content
        else:
            out["content"] = [
                {"type": "text", "text": p.text}
                if p.type == "text"
                else {"type": "image_url", "image_url": {"url": p.image_url}}
                for p in self.content
            ]
        if self.tool_calls:
            out["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            out["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            out["name"] = self.name
        return out


# =============================================================================
# Request
# =============================================================================


@dataclass(frozen=True)
class RoutingPreferences:
    """Caller hints for model selection on ``model="auto"`` requests."""

    strategy: Objective = "balanced"
    max_cost: CostTier | None = None
    max_latency_ms: int | None = None
    preferred_providers: tuple[str, ...] = ()
    blocked_providers: tuple[str, ...] = ()
    #: Ad-hoc fallback chain tried before the configured chains.
    fallback_models: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for name in ("preferred_providers", "blocked_providers", "fallback_models"):
            object.__setattr__(self, name, tuple(getattr(self, name)))
        if self.max_cost is not None and self.max_cost not in COST_TIERS:
            raise InvalidRequestError(f"Invalid max_cost tier: {self.max_cost!r}")
        if self.max_latency_ms is not None and self.max_latency_ms <= 0:
            raise InvalidRequestError("max_latency_ms must be > 0")


@dataclass(frozen=True)
class Budget:
    """Spend limit and attribution ids carried through to accounting."""

    max_cost: float | None = None
    tracking_id: str | None = None
    user_id: str | None = None
    project_id: str | None = None

    def __post_init__(self) -> None:
        if self.max_cost is not None and self.max_cost < 0:
            raise InvalidRequestError("budget.max_cost must be ≥ 0")


def _check_range(name: str, value: float | None, lo: float, hi: float) -> None:
    if value is not None and not lo <= value <= hi:
        raise InvalidRequestError(
            f"{name} must be between {lo} and {hi}, got {value}",
        )


@dataclass(frozen=True)
class UnifiedRequest:
    """A provider-agnostic chat completion request."""

    messages: tuple[ChatMessage, ...]
    model: str = "auto"
    tools: tuple[Tool, ...] | None = None
    tool_choice: ToolChoice | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop: tuple[str, ...] | None = None
    seed: int | None = None
    stream: bool = False
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    routing: RoutingPreferences | None = None
    budget: Budget | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "messages", tuple(self.messages or ()))
        if not self.messages:
            raise InvalidRequestError(
                "messages must contain at least one message",
            )
        if not self.model:
            raise InvalidRequestError("model must be a model id or 'auto'")
        if self.tools is not None:
            object.__setattr__(self, "tools", tuple(self.tools))
        if isinstance(self.stop, str):
            object.__setattr__(self, "stop", (self.stop,))
        elif self.stop is not None:
            object.__setattr__(self, "stop", tuple(self.stop))

        _check_range("temperature", self.temperature, 0.0, 2.0)
        _check_range("top_p", self.top_p, 0.0, 1.0)
        _check_range("frequency_penalty", self.frequency_penalty, -2.0, 2.0)
        _check_range("presence_penalty", self.presence_penalty, -2.0, 2.0)
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise InvalidRequestError(f"max_tokens must be > 0, got {self.max_tokens}")
        if self.top_k is not None and self.top_k <= 0:
            raise InvalidRequestError(f"top_k must be > 0, got {self.top_k}")

        tc = self.tool_choice
        if tc is not None:
            if isinstance(tc, dict):
                if not tc.get("name"):
                    raise InvalidRequestError("tool_choice objects require a 'name'")
            elif tc not in ("auto", "none", "required"):
                raise InvalidRequestError(f"Invalid tool_choice: {tc!r}")

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> UnifiedRequest:
        """Parse an OpenAI-compatible JSON body."""
        from conduit.schema import parse_unified_request

        return parse_unified_request(payload)

    @property
    def is_auto(self) -> bool:
        return self.model == "auto"

    @property
    def has_images(self) -> bool:
        return any(m.has_images for m in self.messages)

    @property
    def prompt_text(self) -> str:
        """Text of all user turns, used for routing and estimation."""
        return "\n".join(m.text for m in self.messages if m.role == "user")

    def with_model(self, model: str) -> UnifiedRequest:
        return replace(self, model=model)


# =============================================================================
# Response
# =============================================================================


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    def __post_init__(self) -> None:
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts must be non-negative")

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class CostBreakdown:
    """USD cost of one call."""

    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0
    cost_per_1k_tokens: float = 0.0
    currency: Literal["USD"] = "USD"

    def __post_init__(self) -> None:
        if self.input_cost < 0 or self.output_cost < 0:
            raise ValueError("costs must be non-negative")
        if abs(self.total_cost - (self.input_cost + self.output_cost)) > 1e-6:
            raise ValueError("total_cost must equal input_cost + output_cost")

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_cost": self.input_cost,
            "output_cost": self.output_cost,
            "total_cost": self.total_cost,
            "cost_per_1k_tokens": self.cost_per_1k_tokens,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class LatencyMetrics:
    total_time_ms: float = 0.0
    #: Time to first chunk; only measured for streams.
    ttfb_ms: float | None = None


@dataclass(frozen=True)
class RoutingInfo:
    """How a response was routed, attached to every gateway response."""

    selected_model: str
    selected_provider: str
    strategy: str | None = None
    reason: str = ""
    complexity: int | None = None
    fallback_used: bool = False
    fallback_reason: str | None = None
    fallback_chain: str | None = None
    considered_models: tuple[str, ...] = ()
    execution_time_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "selected_model": self.selected_model,
            "selected_provider": self.selected_provider,
            "reason": self.reason,
            "complexity": self.complexity,
            "fallback_used": self.fallback_used,
            "fallback_reason": self.fallback_reason,
            "fallback_chain": self.fallback_chain,
            "considered_models": list(self.considered_models),
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass(frozen=True)
class Choice:
    index: int
    message: ChatMessage
    finish_reason: FinishReason = "stop"


@dataclass(frozen=True)
class UnifiedResponse:
    """A normalized completion from any provider."""

    id: str
    model: str
    provider: str
    choices: tuple[Choice, ...]
    usage: TokenUsage
    cost: CostBreakdown
    latency: LatencyMetrics = field(default_factory=LatencyMetrics)
    routing: RoutingInfo | None = None
    created: int = field(default_factory=lambda: int(time.time()))

    def __post_init__(self) -> None:
        object.__setattr__(self, "choices", tuple(self.choices))

    @property
    def content(self) -> str:
        """Text of the first choice."""
        if not self.choices:
            return ""
        return self.choices[0].message.text

    @property
    def tool_calls(self) -> tuple[ToolCall, ...]:
        if not self.choices:
            return ()
        return self.choices[0].message.tool_calls or ()

    @property
    def finish_reason(self) -> FinishReason | None:
        return self.choices[0].finish_reason if self.choices else None

    def to_dict(self) -> dict[str, Any]:
        """Render the OpenAI-compatible response body."""
        out: dict[str, Any] = {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "provider": self.provider,
            "choices": [
                {
                    "index": c.index,
                    "message": c.message.to_dict(),
                    "finish_reason": c.finish_reason,
                }
                for c in self.choices
            ],
            "usage": self.usage.to_dict(),
            "cost": self.cost.to_dict(),
            "latency": {
                "total_time_ms": self.latency.total_time_ms,
                "ttfb_ms": self.latency.ttfb_ms,
            },
        }
        if self.routing is not None:
            out["routing"] = self.routing.to_dict()
        return out


@dataclass(frozen=True)
class StreamChunk:
    """One incremental delta of a streamed completion.

    Tool calls are emitted whole, once their arguments are complete.
    The terminal chunk carries ``finish_reason`` and, when reported, usage.
    """

    id: str
    model: str
    provider: str
    index: int = 0
    delta_content: str | None = None
    delta_tool_calls: tuple[ToolCall, ...] | None = None
    finish_reason: FinishReason | None = None
    usage: TokenUsage | None = None

    def to_dict(self) -> dict[str, Any]:
        delta: dict[str, Any] = {}
        if self.delta_content is not None:
            delta["content"] = self.delta_content
        if self.delta_tool_calls:
            delta["tool_calls"] = [tc.to_dict() for tc in self.delta_tool_calls]
        out: dict[str, Any] = {
            "id": self.id,
            "object": "chat.completion.chunk",
            "model": self.model,
            "provider": self.provider,
            "choices": [
                {"index": self.index, "delta": delta, "finish_reason": self.finish_reason}
            ],
        }
        if self.usage is not None:
            out["usage"] = self.usage.to_dict()
        return out


# =============================================================================
# Orchestration inputs
# =============================================================================


@dataclass(frozen=True)
class RoutingConstraints:
    """Constraints accepted by the routing engine."""

    max_cost: CostTier | None = None
    preferred_provider: str | None = None
    #: Per-call deadline in milliseconds.
    timeout: int | None = None
    #: Latency budget in milliseconds.
    max_latency: int | None = None
    optimize_for: Objective = "balanced"

    def __post_init__(self) -> None:
        if self.max_cost is not None and self.max_cost not in COST_TIERS:
            raise InvalidRequestError(
                f"Invalid maxCost: {self.max_cost!r}",
                hint="Use one of 'low', 'medium', 'high'.",
            )
        if self.timeout is not None and self.timeout <= 0:
            raise InvalidRequestError("timeout must be a positive number of ms")
        if self.max_latency is not None and self.max_latency <= 0:
            raise InvalidRequestError("maxLatency must be a positive number of ms")
        if self.optimize_for not in OBJECTIVES:
            raise InvalidRequestError(
                f"Invalid optimizeFor: {self.optimize_for!r}",
                hint="Use one of 'cost', 'latency', 'quality', 'balanced'.",
            )

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> RoutingConstraints:
        """Accept camelCase or snake_case keys; unknown keys are ignored."""
        from conduit.schema import parse_constraints

        return parse_constraints(payload)


@dataclass(frozen=True)
class OrchestratorRequest:
    task: str
    constraints: RoutingConstraints = field(default_factory=RoutingConstraints)
    plan_only: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.task, str) or not 1 <= len(self.task) <= 2000:
            raise InvalidRequestError(
                "task must be between 1 and 2000 characters",
            )

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> OrchestratorRequest:
        from conduit.schema import parse_orchestrator_request

        return parse_orchestrator_request(payload)
