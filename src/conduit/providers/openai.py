"""OpenAI Chat Completions adapter (official ``openai`` SDK)."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from conduit import pricing
from conduit._http import ensure_no_credentials_in_url
from conduit.errors import GatewayError, ServerError
from conduit.providers._errors import extract_status_code, wrap_provider_error
from conduit.providers._utils import (
    VALIDATION_TIMEOUT_S,
    elapsed_ms,
    iter_until,
    new_response_id,
    stream_deadline,
    timed_health_check,
)
from conduit.providers.base import ProviderCapabilities
from conduit.types import (
    ChatMessage,
    Choice,
    LatencyMetrics,
    StreamChunk,
    TokenUsage,
    ToolCall,
    UnifiedResponse,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from conduit.types import CostBreakdown, FinishReason, UnifiedRequest

logger = logging.getLogger(__name__)

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "content_filter": "content_filter",
}

# Reasoning models take max_completion_tokens and reject sampling knobs.
_REASONING_PREFIXES = ("o1", "o3")


class OpenAIAdapter:
    """OpenAI Chat Completions adapter."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 60.0,
        stream_timeout_s: float = 120.0,
        client: Any = None,
    ) -> None:
        """Initialize with an API key; *client* is injectable for tests."""
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.stream_timeout_s = stream_timeout_s
        self._client: Any = client

    @property
    def name(self) -> str:
        return "openai"

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(
            streaming=True, tools=True, inline_images=True, image_urls=True
        )

    def models(self) -> tuple[str, ...]:
        return tuple(m.id for m in pricing.models_for_provider("openai"))

    def _new_client(self, api_key: str, timeout_s: float) -> Any:
        from openai import AsyncOpenAI

        ensure_no_credentials_in_url(self.base_url, provider=self.name)
        # Retries belong to the fallback manager, not the SDK.
        return AsyncOpenAI(
            api_key=api_key, base_url=self.base_url, timeout=timeout_s, max_retries=0
        )

    def _get_client(self) -> Any:
        """Lazily initialize and return the OpenAI client."""
        if self._client is None:
            self._client = self._new_client(self.api_key, self.timeout_s)
        return self._client

    def build_payload(self, request: UnifiedRequest, *, stream: bool = False) -> dict[str, Any]:
        """Translate a unified request into ``chat.completions.create`` kwargs."""
        api_model = pricing.api_model_for(request.model)
        reasoning = api_model.startswith(_REASONING_PREFIXES)
        kwargs: dict[str, Any] = {
            "model": api_model,
            "messages": [_to_openai_message(m) for m in request.messages],
        }
        if request.max_tokens is not None:
            key = "max_completion_tokens" if reasoning else "max_tokens"
            kwargs[key] = request.max_tokens
        if not reasoning:
            if request.temperature is not None:
                kwargs["temperature"] = request.temperature
            if request.top_p is not None:
                kwargs["top_p"] = request.top_p
            if request.frequency_penalty is not None:
                kwargs["frequency_penalty"] = request.frequency_penalty
            if request.presence_penalty is not None:
                kwargs["presence_penalty"] = request.presence_penalty
        if request.stop:
            kwargs["stop"] = list(request.stop)
        if request.seed is not None:
            kwargs["seed"] = request.seed
        if request.budget is not None and request.budget.user_id:
            kwargs["user"] = request.budget.user_id
        if request.tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": dict(t.parameters),
                    },
                }
                for t in request.tools
            ]
            tc = request.tool_choice
            if isinstance(tc, dict):
                kwargs["tool_choice"] = {"type": "function", "function": {"name": tc["name"]}}
            elif tc is not None:
                kwargs["tool_choice"] = tc
        if stream:
            kwargs["stream"] = True
            kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    async def execute(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> UnifiedResponse:
        """Run one chat completion."""
        client = self._get_client()
        start = time.perf_counter()
        kwargs = self.build_payload(request)
        try:
            async with asyncio.timeout(timeout_s or self.timeout_s):
                response = await client.chat.completions.create(**kwargs)
        except asyncio.CancelledError:
            raise
        except GatewayError:
            raise
        except Exception as e:
            raise wrap_provider_error(e, provider=self.name, model=request.model) from e
        return _parse_response(
            response,
            model=request.model,
            cost_fn=self.calculate_cost,
            latency=LatencyMetrics(total_time_ms=elapsed_ms(start)),
        )

    async def stream(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion as unified chunks."""
        client = self._get_client()
        kwargs = self.build_payload(request, stream=True)
        deadline = stream_deadline(timeout_s or self.stream_timeout_s)
        response_id = new_response_id(self.name)
        finish: FinishReason = "stop"
        usage: TokenUsage | None = None
        # index -> [id, name, argument fragments]
        pending_tools: dict[int, list[Any]] = {}

        def chunk(**fields: Any) -> StreamChunk:
            return StreamChunk(
                id=response_id, model=request.model, provider=self.name, **fields
            )

        try:
            async with asyncio.timeout_at(deadline):
                events = await client.chat.completions.create(**kwargs)
            async for event in iter_until(
                events, deadline, provider=self.name, model=request.model
            ):
                response_id = getattr(event, "id", None) or response_id
                usage_raw = getattr(event, "usage", None)
                if usage_raw is not None:
                    usage = _usage(usage_raw)
                for choice in getattr(event, "choices", None) or []:
                    delta = getattr(choice, "delta", None)
                    content = getattr(delta, "content", None)
                    if content:
                        yield chunk(delta_content=content)
                    for tc in getattr(delta, "tool_calls", None) or []:
                        entry = pending_tools.setdefault(
                            int(getattr(tc, "index", 0) or 0), ["", "", []]
                        )
                        if getattr(tc, "id", None):
                            entry[0] = tc.id
                        fn = getattr(tc, "function", None)
                        if getattr(fn, "name", None):
                            entry[1] = fn.name
                        if getattr(fn, "arguments", None):
                            entry[2].append(fn.arguments)
                    reason = getattr(choice, "finish_reason", None)
                    if reason:
                        finish = _normalize_finish_reason(reason)
        except asyncio.CancelledError:
            raise
        except GatewayError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.name, model=request.model, phase="stream"
            ) from e

        if pending_tools:
            calls = tuple(
                ToolCall(id=entry[0], name=entry[1], arguments="".join(entry[2]) or "{}")
                for _, entry in sorted(pending_tools.items())
            )
            yield chunk(delta_tool_calls=calls)
        yield chunk(finish_reason=finish, usage=usage)

    def calculate_cost(self, usage: TokenUsage, model: str) -> CostBreakdown:
        return pricing.calculate_cost(usage, model)

    async def validate_api_key(self, key: str) -> bool:
        """List models with *key*; False for 401/403 or transport failure."""
        client = self._new_client(key, VALIDATION_TIMEOUT_S)
        try:
            async with asyncio.timeout(VALIDATION_TIMEOUT_S):
                await client.models.list()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            status = extract_status_code(e)
            logger.debug("openai key validation failed (status=%s)", status)
            return status not in (401, 403) and status is not None
        finally:
            await client.close()
        return True

    async def health_check(self) -> dict[str, Any]:
        return await timed_health_check(self.validate_api_key(self.api_key))

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        await client.close()


def _to_openai_message(message: ChatMessage) -> dict[str, Any]:
    out: dict[str, Any] = {"role": message.role}
    if message.content is None or isinstance(message.content, str):
        out["content"] = message.content
    else:
        out["content"] = [
            {"type": "text", "text": p.text}
            if p.type == "text"
            else {"type": "image_url", "image_url": {"url": p.image_url}}
            for p in message.content
        ]
    if message.tool_calls:
        out["tool_calls"] = [tc.to_dict() for tc in message.tool_calls]
    if message.tool_call_id is not None:
        out["tool_call_id"] = message.tool_call_id
    if message.name is not None and message.role != "tool":
        out["name"] = message.name
    return out


def _normalize_finish_reason(reason: Any) -> FinishReason:
    return _FINISH_REASONS.get(str(reason), "stop")


def _usage(raw: Any) -> TokenUsage:
    return TokenUsage(
        prompt_tokens=int(getattr(raw, "prompt_tokens", 0) or 0),
        completion_tokens=int(getattr(raw, "completion_tokens", 0) or 0),
    )


def _parse_response(
    response: Any,
    *,
    model: str,
    cost_fn: Any,
    latency: LatencyMetrics,
) -> UnifiedResponse:
    """Parse a ``ChatCompletion`` into a UnifiedResponse."""
    choices: list[Choice] = []
    for idx, choice in enumerate(getattr(response, "choices", None) or []):
        msg = getattr(choice, "message", None)
        calls = tuple(
            ToolCall(
                id=getattr(tc, "id", ""),
                name=getattr(tc.function, "name", ""),
                arguments=getattr(tc.function, "arguments", None) or "{}",
            )
            for tc in getattr(msg, "tool_calls", None) or []
        )
        finish = _normalize_finish_reason(getattr(choice, "finish_reason", "stop"))
        if calls and finish == "stop":
            finish = "tool_calls"
        choices.append(
            Choice(
                index=getattr(choice, "index", idx),
                message=ChatMessage(
                    role="assistant",
                    content=getattr(msg, "content", None) or "",
                    tool_calls=calls or None,
                ),
                finish_reason=finish,
            )
        )

    if not choices:
        raise ServerError(
            "openai returned a completion with no choices",
            provider="openai",
            model=model,
        )

    usage_raw = getattr(response, "usage", None)
    usage = _usage(usage_raw) if usage_raw is not None else TokenUsage()
    return UnifiedResponse(
        id=getattr(response, "id", None) or new_response_id("openai"),
        model=model,
        provider="openai",
        choices=tuple(choices),
        usage=usage,
        cost=cost_fn(usage, model),
        latency=latency,
    )
