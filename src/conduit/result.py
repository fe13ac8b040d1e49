"""Result type for single-call attempts.

A provider attempt returns ``Success`` or ``Failure`` instead of raising so the
fallback manager can match on the error's classification directly.
"""

from __future__ import annotations

import dataclasses
import typing

from conduit.errors import GatewayError

if typing.TYPE_CHECKING:
    from collections.abc import Awaitable

TSuccess = typing.TypeVar("TSuccess")
TFailure = typing.TypeVar("TFailure", bound=Exception)
T = typing.TypeVar("T")


@dataclasses.dataclass(frozen=True, slots=True)
class Success(typing.Generic[TSuccess]):
    """A successful attempt."""

    value: TSuccess


@dataclasses.dataclass(frozen=True, slots=True)
class Failure(typing.Generic[TFailure]):
    """A failed attempt, carrying the classified error."""

    error: TFailure


Result = Success[TSuccess] | Failure[TFailure]


async def capture(awaitable: Awaitable[T]) -> Result[T, GatewayError]:
    """Await *awaitable*, turning a raised ``GatewayError`` into ``Failure``."""
    try:
        return Success(await awaitable)
    except GatewayError as e:
        return Failure(e)
