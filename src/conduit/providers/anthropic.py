"""Anthropic Messages API adapter (official ``anthropic`` SDK)."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from conduit import pricing
from conduit._http import ensure_no_credentials_in_url
from conduit.errors import GatewayError, InvalidRequestError
from conduit.providers._errors import extract_status_code, wrap_provider_error
from conduit.providers._utils import (
    VALIDATION_TIMEOUT_S,
    elapsed_ms,
    iter_until,
    loads_arguments,
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

_DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "pause_turn": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
}


class AnthropicAdapter:
    """Anthropic Messages API adapter."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.anthropic.com",
        timeout_s: float = 60.0,
        stream_timeout_s: float = 120.0,
        default_max_tokens: int = _DEFAULT_MAX_TOKENS,
        client: Any = None,
    ) -> None:
        """Initialize with an API key; *client* is injectable for tests."""
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.stream_timeout_s = stream_timeout_s
        self.default_max_tokens = default_max_tokens
        self._client: Any = client

    @property
    def name(self) -> str:
        return "anthropic"

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(
            streaming=True, tools=True, inline_images=True, image_urls=False
        )

    def models(self) -> tuple[str, ...]:
        return tuple(m.id for m in pricing.models_for_provider("anthropic"))

    def _new_client(self, api_key: str, timeout_s: float) -> Any:
        from anthropic import AsyncAnthropic

        ensure_no_credentials_in_url(self.base_url, provider=self.name)
        # Retries belong to the fallback manager, not the SDK.
        return AsyncAnthropic(
            api_key=api_key, base_url=self.base_url, timeout=timeout_s, max_retries=0
        )

    def _get_client(self) -> Any:
        """Lazily initialize and return the Anthropic client."""
        if self._client is None:
            self._client = self._new_client(self.api_key, self.timeout_s)
        return self._client

    def build_payload(self, request: UnifiedRequest, *, stream: bool = False) -> dict[str, Any]:
        """Translate a unified request into ``messages.create`` kwargs."""
        system, messages = _build_messages(request.messages)
        payload: dict[str, Any] = {
            "model": pricing.api_model_for(request.model),
            "messages": messages,
            "max_tokens": request.max_tokens or self.default_max_tokens,
        }
        if system:
            payload["system"] = system
        if request.temperature is not None:
            # Anthropic accepts 0..1.
            payload["temperature"] = min(request.temperature, 1.0)
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.top_k is not None:
            payload["top_k"] = request.top_k
        if request.stop:
            payload["stop_sequences"] = list(request.stop)
        if request.budget is not None and request.budget.user_id:
            payload["metadata"] = {"user_id": request.budget.user_id}
        if request.tools:
            payload["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": dict(t.parameters),
                }
                for t in request.tools
            ]
            mapped = _map_tool_choice(request.tool_choice)
            if mapped is not None:
                payload["tool_choice"] = mapped
        if stream:
            payload["stream"] = True
        return payload

    async def execute(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> UnifiedResponse:
        """Run one Messages API call."""
        client = self._get_client()
        start = time.perf_counter()
        payload = self.build_payload(request)
        logger.debug("anthropic execute model=%s", payload["model"])
        try:
            async with asyncio.timeout(timeout_s or self.timeout_s):
                message = await client.messages.create(**payload)
        except asyncio.CancelledError:
            raise
        except GatewayError:
            raise
        except Exception as e:
            raise wrap_provider_error(e, provider=self.name, model=request.model) from e
        return _parse_response(
            message,
            model=request.model,
            cost_fn=self.calculate_cost,
            latency=LatencyMetrics(total_time_ms=elapsed_ms(start)),
        )

    async def stream(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> AsyncIterator[StreamChunk]:
        """Stream a Messages API call as unified chunks."""
        client = self._get_client()
        payload = self.build_payload(request, stream=True)
        deadline = stream_deadline(timeout_s or self.stream_timeout_s)
        response_id = new_response_id(self.name)
        prompt_tokens = 0
        completion_tokens = 0
        finish: FinishReason = "stop"
        # index -> [id, name, argument fragments]
        pending_tools: dict[int, list[Any]] = {}

        def chunk(**kwargs: Any) -> StreamChunk:
            return StreamChunk(
                id=response_id, model=request.model, provider=self.name, **kwargs
            )

        try:
            async with asyncio.timeout_at(deadline):
                events = await client.messages.create(**payload)
            async for event in iter_until(
                events, deadline, provider=self.name, model=request.model
            ):
                kind = getattr(event, "type", None)
                index = int(getattr(event, "index", 0) or 0)
                if kind == "message_start":
                    message = getattr(event, "message", None)
                    response_id = getattr(message, "id", None) or response_id
                    usage = getattr(message, "usage", None)
                    prompt_tokens = int(getattr(usage, "input_tokens", 0) or 0)
                    completion_tokens = int(getattr(usage, "output_tokens", 0) or 0)
                elif kind == "content_block_start":
                    block = getattr(event, "content_block", None)
                    if getattr(block, "type", None) == "tool_use":
                        pending_tools[index] = [
                            getattr(block, "id", ""),
                            getattr(block, "name", ""),
                            [],
                        ]
                elif kind == "content_block_delta":
                    delta = getattr(event, "delta", None)
                    delta_type = getattr(delta, "type", None)
                    if delta_type == "text_delta" and getattr(delta, "text", None):
                        yield chunk(delta_content=delta.text)
                    elif delta_type == "input_json_delta":
                        entry = pending_tools.get(index)
                        if entry is not None:
                            entry[2].append(getattr(delta, "partial_json", "") or "")
                elif kind == "content_block_stop":
                    entry = pending_tools.pop(index, None)
                    if entry is not None:
                        arguments = "".join(entry[2]) or "{}"
                        call = ToolCall(id=entry[0], name=entry[1], arguments=arguments)
                        yield chunk(delta_tool_calls=(call,))
                elif kind == "message_delta":
                    delta = getattr(event, "delta", None)
                    finish = _normalize_stop_reason(getattr(delta, "stop_reason", None))
                    usage = getattr(event, "usage", None)
                    output_tokens = getattr(usage, "output_tokens", None)
                    if output_tokens is not None:
                        completion_tokens = int(output_tokens)
        except asyncio.CancelledError:
            raise
        except GatewayError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.name, model=request.model, phase="stream"
            ) from e

        yield chunk(
            finish_reason=finish,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens, completion_tokens=completion_tokens
            ),
        )

    def calculate_cost(self, usage: TokenUsage, model: str) -> CostBreakdown:
        return pricing.calculate_cost(usage, model)

    async def validate_api_key(self, key: str) -> bool:
        """List models with *key*; False for 401/403 or transport failure."""
        client = self._new_client(key, VALIDATION_TIMEOUT_S)
        try:
            async with asyncio.timeout(VALIDATION_TIMEOUT_S):
                await client.models.list(limit=1)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            status = extract_status_code(e)
            logger.debug("anthropic key validation failed (status=%s)", status)
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


# =============================================================================
# Translation helpers
# =============================================================================

def _map_tool_choice(tool_choice: Any) -> dict[str, str] | None:
    """Map tool_choice to Anthropic format."""
    if tool_choice is None:
        return None
    if isinstance(tool_choice, dict):
        return {"type": "tool", "name": tool_choice["name"]}
    if tool_choice == "required":
        return {"type": "any"}
    if tool_choice in ("auto", "none"):
        return {"type": tool_choice}
    return None


def _content_blocks(message: ChatMessage) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    for part in message.parts:
        if part.type == "text":
            if part.text:
                blocks.append({"type": "text", "text": part.text})
        elif part.is_inline_image:
            mime_type, data = part.split_data_url()
            blocks.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": mime_type, "data": data},
                }
            )
        else:
            blocks.append({"type": "text", "text": f"[Image: {part.image_url}]"})
    return blocks


def _append_message(messages: list[dict[str, Any]], msg: dict[str, Any]) -> None:
    """Append *msg*, merging into the previous message when roles match.

    Anthropic requires strict user/assistant alternation.
    """
    if messages and messages[-1]["role"] == msg["role"]:
        messages[-1]["content"] = messages[-1]["content"] + msg["content"]
    else:
        messages.append(msg)


def _build_messages(
    history: tuple[ChatMessage, ...],
) -> tuple[str | None, list[dict[str, Any]]]:
    """Split system text out and build alternating user/assistant turns."""
    system_parts: list[str] = []
    messages: list[dict[str, Any]] = []

    for item in history:
        if item.role == "system":
            if item.text:
                system_parts.append(item.text)
        elif item.role == "tool":
            _append_message(
                messages,
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": item.tool_call_id,
                            "content": item.text,
                        }
                    ],
                },
            )
        elif item.role == "assistant":
            blocks = _content_blocks(item)
            for tc in item.tool_calls or ():
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": loads_arguments(tc.arguments),
                    }
                )
            if blocks:
                _append_message(messages, {"role": "assistant", "content": blocks})
        else:
            blocks = _content_blocks(item)
            if blocks:
                _append_message(messages, {"role": "user", "content": blocks})

    if not messages:
        raise InvalidRequestError(
            "Anthropic requests need at least one user or assistant message",
            provider="anthropic",
        )
    system = "\n\n".join(system_parts) if system_parts else None
    return system, messages


def _normalize_stop_reason(stop_reason: Any) -> FinishReason:
    if stop_reason is None:
        return "stop"
    return _STOP_REASONS.get(str(stop_reason).lower(), "stop")


def _parse_response(
    message: Any,
    *,
    model: str,
    cost_fn: Any,
    latency: LatencyMetrics,
) -> UnifiedResponse:
    """Parse an SDK ``Message`` into a UnifiedResponse."""
    text_parts: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in getattr(message, "content", None) or []:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            text_parts.append(getattr(block, "text", "") or "")
        elif block_type == "tool_use":
            tool_calls.append(
                ToolCall(
                    id=getattr(block, "id", ""),
                    name=getattr(block, "name", ""),
                    arguments=json.dumps(getattr(block, "input", None) or {}),
                )
            )

    usage_raw = getattr(message, "usage", None)
    usage = TokenUsage(
        prompt_tokens=int(getattr(usage_raw, "input_tokens", 0) or 0),
        completion_tokens=int(getattr(usage_raw, "output_tokens", 0) or 0),
    )
    finish = _normalize_stop_reason(getattr(message, "stop_reason", None))
    if tool_calls and finish == "stop":
        finish = "tool_calls"

    reply = ChatMessage(
        role="assistant",
        content="".join(text_parts),
        tool_calls=tuple(tool_calls) if tool_calls else None,
    )
    return UnifiedResponse(
        id=getattr(message, "id", None) or new_response_id("anthropic"),
        model=model,
        provider="anthropic",
        choices=(Choice(index=0, message=reply, finish_reason=finish),),
        usage=usage,
        cost=cost_fn(usage, model),
        latency=latency,
    )
