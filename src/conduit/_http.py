"""Small HTTP-related helpers shared across Conduit.

Kept free of package imports beyond ``errors`` to avoid circular imports.
"""

from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlsplit

from conduit.errors import ConfigurationError, InvalidRequestError

# Query parameters that would smuggle a credential into a URL.
CREDENTIAL_QUERY_PARAMS: frozenset[str] = frozenset(
    {"key", "api_key", "apikey", "token", "access_token"}
)

_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

_SECRET_PATTERNS = (
    re.compile(r"sk-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"AIza[0-9A-Za-z_\-]{20,}"),
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"),
    re.compile(r"(?i)(x-api-key|x-goog-api-key)[\"']?\s*[:=]\s*[\"']?[^\s,\"'}]+"),
)


def _credential_params(url: str) -> list[str]:
    query = urlsplit(url).query
    return [
        name
        for name, _ in parse_qsl(query, keep_blank_values=True)
        if name.lower() in CREDENTIAL_QUERY_PARAMS
    ]


def validate_base_url(url: str, *, field_name: str) -> None:
    """Reject base URLs that are not https or that embed credentials."""
    parts = urlsplit(url)
    if parts.scheme not in {"https", "http"} or not parts.netloc:
        raise ConfigurationError(
            f"{field_name} must be an absolute https URL",
            hint="Example: https://api.anthropic.com",
        )
    if parts.scheme == "http" and parts.hostname not in _LOCAL_HOSTS:
        raise ConfigurationError(
            f"{field_name} must use https",
            hint="Plain http is only allowed for localhost test servers.",
        )
    if _credential_params(url):
        raise ConfigurationError(
            f"{field_name} must not carry credentials in its query string",
            hint="API keys are sent in request headers only.",
        )


def ensure_no_credentials_in_url(url: str, *, provider: str) -> None:
    """Raise before sending if *url* carries a key-shaped query parameter."""
    if _credential_params(url):
        raise InvalidRequestError(
            f"{provider} request URL carries a credential query parameter",
            provider=provider,
            hint="Send API keys in headers, never in the URL.",
        )


def sanitize(text: str) -> str:
    """Redact key-shaped substrings from *text* before it is logged."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub("[REDACTED]", text)
    return text


def preview(text: str, limit: int = 60) -> str:
    """Return a sanitized, single-line preview of prompt text for logs."""
    flat = " ".join(text.split())
    if len(flat) > limit:
        flat = flat[: limit - 3] + "..."
    return sanitize(flat)
