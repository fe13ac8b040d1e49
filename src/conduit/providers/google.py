"""Google Gemini adapter (official ``google-genai`` SDK).

The SDK sends the API key in the ``x-goog-api-key`` header; a ``base_url``
carrying a ``?key=`` query parameter is rejected before a client is built.
"""

from __future__ import annotations

import asyncio
import base64
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

_FINISH_REASONS: dict[str, FinishReason] = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
}

_SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

DEFAULT_SAFETY_THRESHOLD = "BLOCK_ONLY_HIGH"

_TOOL_MODES = {"auto": "AUTO", "none": "NONE", "required": "ANY"}


class GoogleAdapter:
    """Gemini ``generate_content`` / ``generate_content_stream`` adapter."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://generativelanguage.googleapis.com",
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
        return "google"

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(
            streaming=True, tools=True, inline_images=True, image_urls=False
        )

    def models(self) -> tuple[str, ...]:
        return tuple(m.id for m in pricing.models_for_provider("google"))

    def _new_client(self, api_key: str, timeout_s: float) -> Any:
        from google import genai
        from google.genai import types

        ensure_no_credentials_in_url(self.base_url, provider=self.name)
        return genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(
                base_url=self.base_url, timeout=int(timeout_s * 1000)
            ),
        )

    def _get_client(self) -> Any:
        """Lazily initialize and return the Gemini client."""
        if self._client is None:
            self._client = self._new_client(self.api_key, self.timeout_s)
        return self._client

    def build_payload(self, request: UnifiedRequest) -> dict[str, Any]:
        """Translate a unified request into ``generate_content`` kwargs."""
        from google.genai import types

        system, contents = _build_contents(request.messages)
        config_kwargs: dict[str, Any] = {
            "safety_settings": [
                types.SafetySetting(category=c, threshold=DEFAULT_SAFETY_THRESHOLD)
                for c in _SAFETY_CATEGORIES
            ],
        }
        if system:
            config_kwargs["system_instruction"] = system
        if request.temperature is not None:
            config_kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            config_kwargs["max_output_tokens"] = request.max_tokens
        if request.top_p is not None:
            config_kwargs["top_p"] = request.top_p
        if request.top_k is not None:
            config_kwargs["top_k"] = request.top_k
        if request.stop:
            config_kwargs["stop_sequences"] = list(request.stop)
        if request.seed is not None:
            config_kwargs["seed"] = request.seed
        if request.presence_penalty is not None:
            config_kwargs["presence_penalty"] = request.presence_penalty
        if request.frequency_penalty is not None:
            config_kwargs["frequency_penalty"] = request.frequency_penalty

        if request.tools:
            config_kwargs["tools"] = [
                types.Tool(
                    function_declarations=[
                        types.FunctionDeclaration(
                            name=t.name,
                            description=t.description,
                            parameters_json_schema=dict(t.parameters),
                        )
                        for t in request.tools
                    ]
                )
            ]
            tool_config = _map_tool_choice(request.tool_choice)
            if tool_config is not None:
                config_kwargs["tool_config"] = tool_config

        return {
            "model": pricing.api_model_for(request.model),
            "contents": contents,
            "config": types.GenerateContentConfig(**config_kwargs),
        }

    async def execute(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> UnifiedResponse:
        """Run one ``generate_content`` call."""
        client = self._get_client()
        start = time.perf_counter()
        kwargs = self.build_payload(request)
        logger.debug("google execute model=%s", kwargs["model"])
        try:
            async with asyncio.timeout(timeout_s or self.timeout_s):
                response = await client.aio.models.generate_content(**kwargs)
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
        """Stream a ``generate_content_stream`` call as unified chunks."""
        client = self._get_client()
        kwargs = self.build_payload(request)
        deadline = stream_deadline(timeout_s or self.stream_timeout_s)
        response_id = new_response_id(self.name)
        usage: TokenUsage | None = None
        finish: FinishReason = "stop"
        saw_tool_call = False
        call_index = 0

        try:
            async with asyncio.timeout_at(deadline):
                events = await client.aio.models.generate_content_stream(**kwargs)
            async for event in iter_until(
                events, deadline, provider=self.name, model=request.model
            ):
                response_id = getattr(event, "response_id", None) or response_id
                meta = getattr(event, "usage_metadata", None)
                if meta is not None:
                    usage = _usage(meta)
                candidates = getattr(event, "candidates", None) or []
                if not candidates:
                    continue
                candidate = candidates[0]
                text, calls = _split_parts(candidate, first_index=call_index)
                call_index += len(calls)
                if text or calls:
                    yield StreamChunk(
                        id=response_id,
                        model=request.model,
                        provider=self.name,
                        delta_content=text or None,
                        delta_tool_calls=tuple(calls) if calls else None,
                    )
                saw_tool_call = saw_tool_call or bool(calls)
                reason = getattr(candidate, "finish_reason", None)
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

        if saw_tool_call and finish == "stop":
            finish = "tool_calls"
        yield StreamChunk(
            id=response_id,
            model=request.model,
            provider=self.name,
            finish_reason=finish,
            usage=usage,
        )

    def calculate_cost(self, usage: TokenUsage, model: str) -> CostBreakdown:
        return pricing.calculate_cost(usage, model)

    async def validate_api_key(self, key: str) -> bool:
        """List models with *key*; False for 401/403 or transport failure."""
        client = self._new_client(key, VALIDATION_TIMEOUT_S)
        try:
            async with asyncio.timeout(VALIDATION_TIMEOUT_S):
                await client.aio.models.list(config={"page_size": 1})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            status = extract_status_code(e)
            logger.debug("google key validation failed (status=%s)", status)
            # Gemini answers a bad key with 400 API_KEY_INVALID.
            return status not in (400, 401, 403) and status is not None
        finally:
            await client.aio.aclose()
        return True

    async def health_check(self) -> dict[str, Any]:
        return await timed_health_check(self.validate_api_key(self.api_key))

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        await client.aio.aclose()


# =============================================================================
# Translation helpers
# =============================================================================


def _map_tool_choice(tool_choice: Any) -> Any:
    from google.genai import types

    if tool_choice is None:
        return None
    if isinstance(tool_choice, dict):
        return types.ToolConfig(
            function_calling_config=types.FunctionCallingConfig(
                mode="ANY", allowed_function_names=[tool_choice["name"]]
            )
        )
    mode = _TOOL_MODES.get(tool_choice)
    if mode is None:
        return None
    return types.ToolConfig(
        function_calling_config=types.FunctionCallingConfig(mode=mode)
    )


def _parts(message: ChatMessage) -> list[Any]:
    from google.genai import types

    parts: list[Any] = []
    for part in message.parts:
        if part.type == "text":
            if part.text:
                parts.append(types.Part.from_text(text=part.text))
        elif part.is_inline_image:
            mime_type, data = part.split_data_url()
            parts.append(
                types.Part.from_bytes(data=base64.b64decode(data), mime_type=mime_type)
            )
        else:
            parts.append(types.Part.from_text(text=f"[Image: {part.image_url}]"))
    return parts


def _build_contents(
    history: tuple[ChatMessage, ...],
) -> tuple[str | None, list[Any]]:
    """Split system text out and map roles to ``user``/``model``."""
    from google.genai import types

    system_parts: list[str] = []
    contents: list[Any] = []
    call_names: dict[str, str] = {}

    for item in history:
        if item.role == "system":
            if item.text:
                system_parts.append(item.text)
            continue
        if item.role == "tool":
            name = call_names.get(item.tool_call_id or "", item.name or "")
            if not name:
                raise InvalidRequestError(
                    "Tool result does not match an earlier tool call",
                    provider="google",
                    hint="Google needs the function name for every tool result.",
                )
            contents.append(
                types.Content(
                    role="user",
                    parts=[
                        types.Part.from_function_response(
                            name=name, response={"content": item.text}
                        )
                    ],
                )
            )
            continue

        parts = _parts(item)
        if item.role == "assistant":
            for tc in item.tool_calls or ():
                call_names[tc.id] = tc.name
                args = loads_arguments(tc.arguments)
                parts.append(
                    types.Part.from_function_call(
                        name=tc.name, args=args if isinstance(args, dict) else {}
                    )
                )
        if parts:
            role = "model" if item.role == "assistant" else "user"
            contents.append(types.Content(role=role, parts=parts))

    if not contents:
        raise InvalidRequestError(
            "Google requests need at least one user or assistant message",
            provider="google",
        )
    system = "\n\n".join(system_parts) if system_parts else None
    return system, contents


def _split_parts(candidate: Any, *, first_index: int = 0) -> tuple[str, list[ToolCall]]:
    """Text and function calls from one candidate's content parts."""
    text_parts: list[str] = []
    calls: list[ToolCall] = []
    content = getattr(candidate, "content", None)
    for part in getattr(content, "parts", None) or []:
        call = getattr(part, "function_call", None)
        if call is not None:
            calls.append(
                ToolCall(
                    id=getattr(call, "id", None) or f"call_{first_index + len(calls)}",
                    name=getattr(call, "name", None) or "",
                    arguments=json.dumps(getattr(call, "args", None) or {}),
                )
            )
        elif getattr(part, "text", None):
            text_parts.append(part.text)
    return "".join(text_parts), calls


def _usage(meta: Any) -> TokenUsage:
    return TokenUsage(
        prompt_tokens=int(getattr(meta, "prompt_token_count", 0) or 0),
        completion_tokens=int(getattr(meta, "candidates_token_count", 0) or 0),
    )


def _normalize_finish_reason(reason: Any) -> FinishReason:
    # SDK enums expose the wire value as ``name``.
    name = getattr(reason, "name", None) or str(reason)
    return _FINISH_REASONS.get(name.upper(), "stop")


def _parse_response(
    response: Any,
    *,
    model: str,
    cost_fn: Any,
    latency: LatencyMetrics,
) -> UnifiedResponse:
    """Parse a ``GenerateContentResponse`` into a UnifiedResponse."""
    candidates = getattr(response, "candidates", None) or []
    meta = getattr(response, "usage_metadata", None)
    usage = _usage(meta) if meta is not None else TokenUsage()
    if not candidates:
        # Prompt blocked before generation.
        feedback = getattr(response, "prompt_feedback", None)
        logger.debug(
            "google returned no candidates (block_reason=%s)",
            getattr(feedback, "block_reason", None),
        )
        message = ChatMessage(role="assistant", content="")
        choices = (Choice(index=0, message=message, finish_reason="content_filter"),)
    else:
        choices_list: list[Choice] = []
        for idx, candidate in enumerate(candidates):
            text, calls = _split_parts(candidate)
            reason = getattr(candidate, "finish_reason", None)
            finish = _normalize_finish_reason(reason) if reason else "stop"
            if calls:
                finish = "tool_calls"
            message = ChatMessage(
                role="assistant",
                content=text,
                tool_calls=tuple(calls) if calls else None,
            )
            index = getattr(candidate, "index", None)
            choices_list.append(
                Choice(
                    index=idx if index is None else index,
                    message=message,
                    finish_reason=finish,
                )
            )
        choices = tuple(choices_list)

    return UnifiedResponse(
        id=getattr(response, "response_id", None) or new_response_id("google"),
        model=model,
        provider="google",
        choices=choices,
        usage=usage,
        cost=cost_fn(usage, model),
        latency=latency,
    )
