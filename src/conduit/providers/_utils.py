"""Shared utilities for provider implementations."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any, TypeVar
import uuid

from conduit.errors import GatewayError, GatewayTimeoutError

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Deadline for key validation calls.
VALIDATION_TIMEOUT_S = 5.0

_END = object()


def new_response_id(provider: str) -> str:
    return f"{provider}-{uuid.uuid4().hex[:24]}"


def elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def loads_arguments(arguments: str) -> Any:
    """Decode tool-call arguments, tolerating malformed JSON."""
    try:
        return json.loads(arguments) if arguments else {}
    except json.JSONDecodeError:
        return {}


def stream_deadline(timeout_s: float) -> float:
    """Absolute loop-clock deadline *timeout_s* seconds from now."""
    return asyncio.get_running_loop().time() + timeout_s


async def iter_until(
    events: AsyncIterable[T],
    deadline: float,
    *,
    provider: str,
    model: str | None,
) -> AsyncIterator[T]:
    """Yield from *events* until exhausted, failing once *deadline* passes.

    Every read is bounded by the time left, so an upstream that stops sending
    mid-stream cannot hold the caller past the deadline. The scope never spans
    a ``yield``; the consumer's own time between items still counts.
    """
    iterator = aiter(events)
    try:
        while True:
            try:
                async with asyncio.timeout_at(deadline):
                    item = await anext(iterator, _END)
            except TimeoutError as e:
                raise GatewayTimeoutError(
                    f"{provider} stream exceeded its deadline",
                    provider=provider,
                    model=model,
                ) from e
            if item is _END:
                return
            yield item
    finally:
        close = getattr(events, "close", None)
        if close is not None:
            await close()


async def timed_health_check(check: Any) -> dict[str, Any]:
    """Run *check* (an awaitable returning bool) and report health."""
    start = time.perf_counter()
    try:
        healthy = bool(await check)
    except asyncio.CancelledError:
        raise
    except GatewayError as e:
        return {"healthy": False, "latency_ms": elapsed_ms(start), "error": e.code}
    result: dict[str, Any] = {"healthy": healthy, "latency_ms": elapsed_ms(start)}
    if not healthy:
        result["error"] = "auth_error"
    return result
