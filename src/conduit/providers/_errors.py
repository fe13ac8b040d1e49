"""Shared provider-side error helpers.

Adapters classify failures here, at the point they are raised, so fallback
decisions match on ``GatewayError.type`` without brittle substring matching.
Raw provider bodies never reach exception messages; only the HTTP status and
the provider's own error *type* string are kept.
"""

from __future__ import annotations

import asyncio
from email.utils import parsedate_to_datetime
import re
import time
from typing import Any

import httpx

from conduit.errors import (
    ErrorType,
    GatewayError,
    _walk_exception_chain,
    error_class_for,
)

_RATE_LIMIT_TYPES = frozenset(
    {"rate_limit_error", "rate_limit_exceeded", "resource_exhausted"}
)
_OVERLOADED_TYPES = frozenset({"overloaded_error", "unavailable"})
_AUTH_TYPES = frozenset(
    {"authentication_error", "permission_error", "unauthenticated", "permission_denied"}
)

_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def classify_status(status: int | None, provider_type: str | None = None) -> ErrorType:
    """Map an HTTP status (and optional provider error type) to an ``ErrorType``."""
    ptype = (provider_type or "").lower()
    if ptype in _RATE_LIMIT_TYPES or status == 429:
        return ErrorType.RATE_LIMIT
    if ptype in _OVERLOADED_TYPES or status in (503, 529):
        return ErrorType.MODEL_UNAVAILABLE
    if ptype in _AUTH_TYPES or status in (401, 403):
        return ErrorType.AUTH_ERROR
    if status == 404:
        return ErrorType.MODEL_UNAVAILABLE
    if status == 408:
        return ErrorType.TIMEOUT
    if status is not None and 400 <= status < 500:
        return ErrorType.INVALID_REQUEST
    return ErrorType.SERVER_ERROR


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status", "code"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def parse_retry_after(raw: str | None) -> float | None:
    """Parse a ``Retry-After`` header (seconds or HTTP date)."""
    if raw is None or not raw.strip():
        return None
    raw = raw.strip()
    try:
        seconds = float(raw)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds >= 0 else None
    m = _PROTO_DURATION_RE.match(raw)
    if m:
        return float(m.group(1))
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - time.time())


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a retry-after delay in seconds."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)
        response = getattr(e, "response", None)
        headers: Any = getattr(response, "headers", None)
        if headers is not None and hasattr(headers, "get"):
            raw = headers.get("Retry-After")
            if isinstance(raw, str):
                seconds = parse_retry_after(raw)
                if seconds is not None:
                    return seconds
    return None


def error_type_from_body(body: Any) -> str | None:
    """Return the provider's error type string from a decoded error body.

    Anthropic: ``{"error": {"type": "rate_limit_error"}}``.
    Google: ``{"error": {"status": "RESOURCE_EXHAUSTED"}}``.
    OpenAI: ``{"error": {"type": ..., "code": ...}}``.
    """
    if not isinstance(body, dict):
        return None
    err = body.get("error")
    if not isinstance(err, dict):
        return None
    for key in ("type", "status", "code"):
        value = err.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _auth_hint(provider: str) -> str:
    env_var = {
        "anthropic": "ANTHROPIC_API_KEY",
        "openai": "OPENAI_API_KEY",
        "google": "GOOGLE_API_KEY",
    }.get(provider, "the provider API key")
    return f"Check credentials/permissions (try setting {env_var})."


def _provider_error_type(exc: BaseException) -> str | None:
    """Provider error type from an SDK exception.

    The Anthropic and OpenAI SDKs expose the decoded body as ``body``;
    google-genai exposes it as ``details`` and the gRPC status as ``status``.
    """
    status = getattr(exc, "status", None)
    if isinstance(status, str) and status:
        return status
    for attr in ("body", "details"):
        body = getattr(exc, attr, None)
        found = error_type_from_body(body) or error_type_from_body(
            {"error": body} if isinstance(body, dict) else None
        )
        if found:
            return found
    return None


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    model: str | None = None,
    phase: str = "execute",
) -> GatewayError:
    """Map transport and SDK exceptions into a classified ``GatewayError``."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already classified; fill in missing context only.
    if isinstance(exc, GatewayError):
        if exc.provider is None:
            exc.provider = provider
        if exc.model is None:
            exc.model = model
        return exc

    for e in _walk_exception_chain(exc):
        if isinstance(e, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
            return error_class_for(ErrorType.TIMEOUT)(
                f"{provider} {phase} timed out",
                type=ErrorType.TIMEOUT,
                provider=provider,
                model=model,
            )

    status_code = extract_status_code(exc)
    if status_code is None:
        # Transport failures with no response are upstream-side faults.
        kind = type(exc).__name__
        return error_class_for(ErrorType.SERVER_ERROR)(
            f"{provider} {phase} failed ({kind})",
            type=ErrorType.SERVER_ERROR,
            provider=provider,
            model=model,
        )

    provider_type = _provider_error_type(exc)
    error_type = classify_status(status_code, provider_type)
    return error_class_for(error_type)(
        f"{provider} {phase} failed (status={status_code})",
        type=error_type,
        status_code=status_code,
        retry_after_s=extract_retry_after_s(exc),
        provider=provider,
        model=model,
        hint=_auth_hint(provider) if error_type is ErrorType.AUTH_ERROR else None,
    )
