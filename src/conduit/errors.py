"""Exception hierarchy for Conduit."""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator


class ErrorType(StrEnum):
    """Structural classification attached to every gateway failure."""

    INVALID_REQUEST = "invalid_request"
    AUTH_ERROR = "auth_error"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    MODEL_UNAVAILABLE = "model_unavailable"
    SERVER_ERROR = "server_error"
    UNSUPPORTED_MODEL = "unsupported_model"


RETRYABLE_TYPES: frozenset[ErrorType] = frozenset(
    {
        ErrorType.RATE_LIMIT,
        ErrorType.TIMEOUT,
        ErrorType.MODEL_UNAVAILABLE,
        ErrorType.SERVER_ERROR,
    }
)

# Safe, generic text surfaced to callers. Internal messages stay in logs.
_PUBLIC_MESSAGES: dict[ErrorType, str] = {
    ErrorType.INVALID_REQUEST: "The request was malformed or contained invalid parameters.",
    ErrorType.AUTH_ERROR: "Authentication with the upstream provider failed.",
    ErrorType.RATE_LIMIT: "The upstream provider is rate limiting requests. Try again later.",
    ErrorType.TIMEOUT: "The upstream provider did not respond in time.",
    ErrorType.MODEL_UNAVAILABLE: "The requested model is currently unavailable.",
    ErrorType.SERVER_ERROR: "The upstream provider returned an internal error.",
    ErrorType.UNSUPPORTED_MODEL: "The requested model is not supported by this gateway.",
}


class ConduitError(Exception):
    """Base exception for all Conduit errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(ConduitError):
    """Configuration validation or resolution failed."""


class PlanningError(ConduitError):
    """Execution planning failed."""


class GatewayError(ConduitError):
    """A classified failure of a gateway call.

    The classification is attached where the error is raised so fallback and
    retry decisions never depend on message text.
    """

    default_type: ErrorType = ErrorType.SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        type: ErrorType | None = None,  # noqa: A002
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.type = ErrorType(type) if type is not None else self.default_type
        self.retryable = (
            retryable if retryable is not None else self.type in RETRYABLE_TYPES
        )
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.model = model

    @property
    def code(self) -> str:
        """Machine-readable error code."""
        return self.type.value

    def public_message(self) -> str:
        """Return the sanitized message that is safe to show to callers."""
        return _PUBLIC_MESSAGES[self.type]

    def to_dict(self) -> dict[str, Any]:
        """Render the caller-facing error body."""
        body: dict[str, Any] = {
            "message": self.public_message(),
            "type": self.type.value,
            "code": self.code,
        }
        if self.provider is not None:
            body["provider"] = self.provider
        if self.retry_after_s is not None:
            body["retry_after_ms"] = int(self.retry_after_s * 1000)
        return {"error": body}


class InvalidRequestError(GatewayError):
    """Malformed input. Never retried."""

    default_type = ErrorType.INVALID_REQUEST


class AuthError(GatewayError):
    """Bad or missing credentials. Never retried."""

    default_type = ErrorType.AUTH_ERROR


class RateLimitError(GatewayError):
    """Rate limit exceeded (HTTP 429)."""

    default_type = ErrorType.RATE_LIMIT


class GatewayTimeoutError(GatewayError):
    """No response within the adapter's deadline."""

    default_type = ErrorType.TIMEOUT


class ModelUnavailableError(GatewayError):
    """The model is missing, overloaded or temporarily disabled."""

    default_type = ErrorType.MODEL_UNAVAILABLE


class ServerError(GatewayError):
    """Upstream 5xx or an unclassified transport failure."""

    default_type = ErrorType.SERVER_ERROR


class UnsupportedModelError(GatewayError):
    """Model is not in the pricing/capability tables. Never retried."""

    default_type = ErrorType.UNSUPPORTED_MODEL


_ERROR_CLASSES: dict[ErrorType, type[GatewayError]] = {
    ErrorType.INVALID_REQUEST: InvalidRequestError,
    ErrorType.AUTH_ERROR: AuthError,
    ErrorType.RATE_LIMIT: RateLimitError,
    ErrorType.TIMEOUT: GatewayTimeoutError,
    ErrorType.MODEL_UNAVAILABLE: ModelUnavailableError,
    ErrorType.SERVER_ERROR: ServerError,
    ErrorType.UNSUPPORTED_MODEL: UnsupportedModelError,
}


def error_class_for(error_type: ErrorType) -> type[GatewayError]:
    """Return the concrete GatewayError subclass for *error_type*."""
    return _ERROR_CLASSES[error_type]


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
