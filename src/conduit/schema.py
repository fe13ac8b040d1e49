"""Pydantic schema wall for inbound JSON.

Wire payloads (OpenAI-compatible chat bodies and orchestrator requests) are
validated here, then converted to the frozen types in ``conduit.types``.
Every validation failure surfaces as ``InvalidRequestError``.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from conduit.errors import InvalidRequestError
from conduit.types import (
    Budget,
    ChatMessage,
    ContentPart,
    OrchestratorRequest,
    RoutingConstraints,
    RoutingPreferences,
    Tool,
    ToolCall,
    UnifiedRequest,
)

if TYPE_CHECKING:
    from collections.abc import Mapping


class _ImageURL(BaseModel):
    url: str = Field(min_length=1)


class _ContentPartModel(BaseModel):
    type: Literal["text", "image_url", "image"]
    text: str | None = None
    image_url: _ImageURL | str | None = None

    def to_part(self) -> ContentPart:
        if self.type == "text":
            return ContentPart.of_text(self.text or "")
        url = self.image_url.url if isinstance(self.image_url, _ImageURL) else self.image_url
        return ContentPart.of_image(url or "")


class _FunctionCallModel(BaseModel):
    name: str = Field(min_length=1)
    arguments: str | dict[str, Any] = "{}"


class _ToolCallModel(BaseModel):
    id: str = Field(min_length=1)
    type: Literal["function"] = "function"
    function: _FunctionCallModel

    def to_tool_call(self) -> ToolCall:
        args = self.function.arguments
        if not isinstance(args, str):
            args = json.dumps(args)
        return ToolCall(id=self.id, name=self.function.name, arguments=args)


class _MessageModel(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str | list[_ContentPartModel] | None = None
    tool_calls: list[_ToolCallModel] | None = None
    tool_call_id: str | None = None
    name: str | None = None

    def to_message(self) -> ChatMessage:
        content: str | tuple[ContentPart, ...] | None
        if isinstance(self.content, list):
            content = tuple(p.to_part() for p in self.content)
        else:
            content = self.content
        return ChatMessage(
            role=self.role,
            content=content,
            tool_calls=tuple(tc.to_tool_call() for tc in self.tool_calls)
            if self.tool_calls
            else None,
            tool_call_id=self.tool_call_id,
            name=self.name,
        )


class _FunctionDefModel(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class _ToolModel(BaseModel):
    type: Literal["function"] = "function"
    function: _FunctionDefModel

    def to_tool(self) -> Tool:
        f = self.function
        return Tool(name=f.name, description=f.description, parameters=f.parameters)


class _NamedToolChoice(BaseModel):
    type: Literal["function"] = "function"
    function: dict[str, str]


class _RoutingModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    strategy: Literal["cost", "latency", "quality", "balanced"] = "balanced"
    max_cost: Literal["low", "medium", "high"] | None = Field(
        default=None, validation_alias=AliasChoices("max_cost", "maxCost")
    )
    max_latency_ms: int | None = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("max_latency_ms", "maxLatencyMs", "max_latency"),
    )
    preferred_providers: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("preferred_providers", "preferredProviders"),
    )
    blocked_providers: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("blocked_providers", "blockedProviders"),
    )
    fallback_models: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("fallback_models", "fallbackModels"),
    )


class _BudgetModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    max_cost: float | None = Field(default=None, ge=0)
    tracking_id: str | None = None
    user_id: str | None = None
    project_id: str | None = None


class _ChatRequestModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str = "auto"
    messages: list[_MessageModel]
    tools: list[_ToolModel] | None = None
    tool_choice: Literal["auto", "none", "required"] | _NamedToolChoice | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop: str | list[str] | None = None
    seed: int | None = None
    stream: bool = False
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    routing: _RoutingModel | None = None
    budget: _BudgetModel | None = None

    @field_validator("model", mode="before")
    @classmethod
    def normalize_model(cls, v: Any) -> Any:
        """Trim surrounding whitespace on model identifiers."""
        if isinstance(v, str):
            return v.strip()
        return v


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ())) or "body"
    return f"{loc}: {err.get('msg', 'invalid value')}"


def parse_unified_request(payload: Mapping[str, Any]) -> UnifiedRequest:
    """Validate an OpenAI-compatible chat body into a ``UnifiedRequest``."""
    try:
        body = _ChatRequestModel.model_validate(payload)
    except ValidationError as e:
        raise InvalidRequestError(
            f"Invalid request body ({_first_error(e)})",
            hint="The body follows the OpenAI chat completions shape.",
        ) from e

    tool_choice: Any = body.tool_choice
    if isinstance(tool_choice, _NamedToolChoice):
        name = tool_choice.function.get("name")
        if not name:
            raise InvalidRequestError("tool_choice.function.name is required")
        tool_choice = {"name": name}

    routing = None
    if body.routing is not None:
        r = body.routing
        routing = RoutingPreferences(
            strategy=r.strategy,
            max_cost=r.max_cost,
            max_latency_ms=r.max_latency_ms,
            preferred_providers=tuple(r.preferred_providers),
            blocked_providers=tuple(r.blocked_providers),
            fallback_models=tuple(r.fallback_models),
        )
    budget = Budget(**body.budget.model_dump()) if body.budget is not None else None

    return UnifiedRequest(
        model=body.model,
        messages=tuple(m.to_message() for m in body.messages),
        tools=tuple(t.to_tool() for t in body.tools) if body.tools else None,
        tool_choice=tool_choice,
        temperature=body.temperature,
        max_tokens=body.max_tokens,
        top_p=body.top_p,
        top_k=body.top_k,
        stop=body.stop,
        seed=body.seed,
        stream=body.stream,
        frequency_penalty=body.frequency_penalty,
        presence_penalty=body.presence_penalty,
        routing=routing,
        budget=budget,
    )


class _ConstraintsModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    max_cost: Literal["low", "medium", "high"] | None = Field(
        default=None, validation_alias=AliasChoices("max_cost", "maxCost")
    )
    preferred_provider: str | None = Field(
        default=None,
        validation_alias=AliasChoices("preferred_provider", "preferredProvider"),
    )
    timeout: int | None = Field(default=None, gt=0)
    max_latency: int | None = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("max_latency", "maxLatency"),
    )
    optimize_for: Literal["cost", "latency", "quality", "balanced"] = Field(
        default="balanced",
        validation_alias=AliasChoices("optimize_for", "optimizeFor"),
    )


class _OrchestratorRequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    task: str = Field(min_length=1, max_length=2000)
    constraints: _ConstraintsModel | None = None
    plan_only: bool = Field(
        default=False, validation_alias=AliasChoices("plan_only", "planOnly")
    )


def _to_constraints(model: _ConstraintsModel | None) -> RoutingConstraints:
    if model is None:
        return RoutingConstraints()
    return RoutingConstraints(
        max_cost=model.max_cost,
        preferred_provider=model.preferred_provider,
        timeout=model.timeout,
        max_latency=model.max_latency,
        optimize_for=model.optimize_for,
    )


def parse_constraints(payload: Mapping[str, Any] | None) -> RoutingConstraints:
    """Validate a routing constraints object."""
    if payload is None:
        return RoutingConstraints()
    try:
        model = _ConstraintsModel.model_validate(payload)
    except ValidationError as e:
        raise InvalidRequestError(
            f"Invalid constraints ({_first_error(e)})",
            hint="maxCost is one of 'low', 'medium', 'high'; timeout is in ms.",
        ) from e
    return _to_constraints(model)


def parse_orchestrator_request(payload: Mapping[str, Any]) -> OrchestratorRequest:
    """Validate an orchestrator request body."""
    try:
        body = _OrchestratorRequestModel.model_validate(payload)
    except ValidationError as e:
        raise InvalidRequestError(
            f"Invalid orchestrator request ({_first_error(e)})",
            hint="task is required and must be 1..2000 characters.",
        ) from e
    return OrchestratorRequest(
        task=body.task,
        constraints=_to_constraints(body.constraints),
        plan_only=body.plan_only,
    )
