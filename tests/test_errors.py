from __future__ import annotations

import asyncio

import httpx
import pytest

from conduit._http import preview, sanitize
from conduit.errors import (
    AuthError,
    ConduitError,
    ErrorType,
    GatewayError,
    GatewayTimeoutError,
    InvalidRequestError,
    ModelUnavailableError,
    RateLimitError,
    ServerError,
    UnsupportedModelError,
    error_class_for,
)
from conduit.providers._errors import (
    classify_status,
    extract_retry_after_s,
    parse_retry_after,
    wrap_provider_error,
)

pytestmark = pytest.mark.unit


def test_gateway_error_structured_metadata() -> None:
    err = RateLimitError(
        "boom",
        hint="slow down",
        status_code=429,
        retry_after_s=2.5,
        provider="anthropic",
        model="claude-3-haiku",
    )

    assert str(err) == "boom"
    assert err.type is ErrorType.RATE_LIMIT
    assert err.code == "rate_limit"
    assert err.retryable is True
    assert err.hint == "slow down"
    assert err.status_code == 429
    assert err.provider == "anthropic"
    assert err.model == "claude-3-haiku"


def test_retryable_defaults_follow_the_error_type() -> None:
    assert InvalidRequestError("x").retryable is False
    assert AuthError("x").retryable is False
    assert UnsupportedModelError("x").retryable is False
    assert RateLimitError("x").retryable is True
    assert GatewayTimeoutError("x").retryable is True
    assert ModelUnavailableError("x").retryable is True
    assert ServerError("x").retryable is True


def test_explicit_retryable_overrides_default() -> None:
    assert ServerError("x", retryable=False).retryable is False


def test_subclass_hierarchy() -> None:
    for cls in (InvalidRequestError, AuthError, RateLimitError, UnsupportedModelError):
        err = cls("x")
        assert isinstance(err, GatewayError)
        assert isinstance(err, ConduitError)


def test_error_class_for_round_trips_every_type() -> None:
    for error_type in ErrorType:
        assert error_class_for(error_type)("x").type is error_type


def test_to_dict_exposes_only_generic_message_and_code() -> None:
    err = ServerError(
        "upstream said: sk-live-secret-value-123 exploded", provider="openai"
    )

    body = err.to_dict()["error"]

    assert body["code"] == "server_error"
    assert body["type"] == "server_error"
    assert body["provider"] == "openai"
    assert "sk-live" not in body["message"]
    assert body["message"] == err.public_message()


def test_to_dict_includes_retry_after_ms() -> None:
    err = RateLimitError("x", retry_after_s=1.5)
    assert err.to_dict()["error"]["retry_after_ms"] == 1500


# =============================================================================
# Status classification
# =============================================================================


@pytest.mark.parametrize(
    ("status", "provider_type", "expected"),
    [
        (401, None, ErrorType.AUTH_ERROR),
        (403, None, ErrorType.AUTH_ERROR),
        (404, None, ErrorType.MODEL_UNAVAILABLE),
        (408, None, ErrorType.TIMEOUT),
        (429, None, ErrorType.RATE_LIMIT),
        (400, "rate_limit_error", ErrorType.RATE_LIMIT),
        (400, "RESOURCE_EXHAUSTED", ErrorType.RATE_LIMIT),
        (529, None, ErrorType.MODEL_UNAVAILABLE),
        (500, "overloaded_error", ErrorType.MODEL_UNAVAILABLE),
        (503, None, ErrorType.MODEL_UNAVAILABLE),
        (400, None, ErrorType.INVALID_REQUEST),
        (422, None, ErrorType.INVALID_REQUEST),
        (500, None, ErrorType.SERVER_ERROR),
        (502, None, ErrorType.SERVER_ERROR),
    ],
)
def test_classify_status(
    status: int, provider_type: str | None, expected: ErrorType
) -> None:
    assert classify_status(status, provider_type) is expected


class _AnthropicStatusError(Exception):
    """Shape of ``anthropic.APIStatusError``: status, decoded body, response."""

    def __init__(
        self, status_code: int, body: dict, headers: dict | None = None
    ) -> None:
        super().__init__(f"Error code: {status_code} - {body}")
        self.status_code = status_code
        self.body = body
        self.response = httpx.Response(status_code, headers=headers or {})


class _GenaiAPIError(Exception):
    """Shape of ``google.genai.errors.APIError``: int code, gRPC status string."""

    def __init__(self, code: int, status: str, message: str) -> None:
        super().__init__(f"{code} {status}. {message}")
        self.code = code
        self.status = status
        self.message = message
        self.details = {"error": {"code": code, "status": status, "message": message}}


def test_sdk_status_error_keeps_status_and_type_but_not_body() -> None:
    exc = _AnthropicStatusError(
        429,
        {
            "type": "error",
            "error": {"type": "rate_limit_error", "message": "secret detail"},
        },
        headers={"Retry-After": "3"},
    )

    err = wrap_provider_error(exc, provider="anthropic", model="claude-3-haiku")

    assert isinstance(err, RateLimitError)
    assert err.status_code == 429
    assert err.retry_after_s == 3.0
    assert "secret detail" not in str(err)


def test_sdk_auth_error_carries_hint() -> None:
    exc = _AnthropicStatusError(401, {"error": {"type": "authentication_error"}})
    err = wrap_provider_error(exc, provider="openai")
    assert isinstance(err, AuthError)
    assert err.hint is not None
    assert "OPENAI_API_KEY" in err.hint


def test_genai_error_uses_code_and_grpc_status() -> None:
    exc = _GenaiAPIError(429, "RESOURCE_EXHAUSTED", "quota secret")

    err = wrap_provider_error(exc, provider="google", model="gemini-1.5-flash")

    assert isinstance(err, RateLimitError)
    assert err.status_code == 429
    assert "quota secret" not in str(err)


def test_genai_unavailable_status_is_model_unavailable() -> None:
    err = wrap_provider_error(
        _GenaiAPIError(500, "UNAVAILABLE", "try later"), provider="google"
    )
    assert isinstance(err, ModelUnavailableError)


# =============================================================================
# wrap_provider_error
# =============================================================================


def test_wrap_provider_error_extracts_status_and_retry_after() -> None:
    class _Resp:
        status_code = 429
        headers = {"Retry-After": "2"}

    class _SdkError(Exception):
        def __init__(self) -> None:
            super().__init__("rate limited")
            self.response = _Resp()

    err = wrap_provider_error(_SdkError(), provider="openai", model="gpt-4o")

    assert isinstance(err, RateLimitError)
    assert err.status_code == 429
    assert err.retry_after_s == 2.0
    assert err.provider == "openai"
    assert err.model == "gpt-4o"


def test_wrap_provider_error_enriches_existing_error_without_clobbering() -> None:
    base = InvalidRequestError("bad", status_code=400)
    wrapped = wrap_provider_error(base, provider="google", model="gemini-1.5-pro")

    assert wrapped is base
    assert wrapped.status_code == 400
    assert wrapped.provider == "google"
    assert wrapped.model == "gemini-1.5-pro"


def test_wrap_provider_error_classifies_timeouts() -> None:
    err = wrap_provider_error(httpx.ReadTimeout("slow"), provider="anthropic")
    assert isinstance(err, GatewayTimeoutError)
    assert err.retryable is True


def test_wrap_provider_error_maps_transport_failure_to_server_error() -> None:
    err = wrap_provider_error(httpx.ConnectError("refused"), provider="google")
    assert isinstance(err, ServerError)
    assert "ConnectError" in str(err)


def test_wrap_provider_error_uses_sdk_body_type() -> None:
    class _SdkError(Exception):
        status_code = 400
        body = {"type": "rate_limit_exceeded"}

    err = wrap_provider_error(_SdkError(), provider="openai")
    assert err.type is ErrorType.RATE_LIMIT


def test_wrap_provider_error_reraises_cancelled_error() -> None:
    with pytest.raises(asyncio.CancelledError):
        wrap_provider_error(asyncio.CancelledError(), provider="openai")


def test_parse_retry_after_formats() -> None:
    assert parse_retry_after("5") == 5.0
    assert parse_retry_after("1.5s") == 1.5
    assert parse_retry_after("") is None
    assert parse_retry_after("soon") is None
    assert parse_retry_after("-1") is None


def test_extract_retry_after_prefers_attribute() -> None:
    class _Err(Exception):
        retry_after = 7

    assert extract_retry_after_s(_Err()) == 7.0


# =============================================================================
# Log redaction
# =============================================================================


def test_sanitize_redacts_key_shaped_substrings() -> None:
    text = (
        "key=sk-proj-abcdefghijklmnop google=AIzaSyA1234567890abcdefghijklmn "
        "Authorization: Bearer abc.def.ghi x-api-key: sk-ant-zzzzzzzzzzzz"
    )

    cleaned = sanitize(text)

    assert "sk-proj" not in cleaned
    assert "AIzaSy" not in cleaned
    assert "abc.def.ghi" not in cleaned
    assert "sk-ant" not in cleaned
    assert cleaned.count("[REDACTED]") >= 4


def test_preview_truncates_and_flattens() -> None:
    text = "line one\nline two " + "x" * 100
    out = preview(text)
    assert "\n" not in out
    assert len(out) == 60
    assert out.endswith("...")
