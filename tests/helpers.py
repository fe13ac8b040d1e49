"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off adapter subclasses as coverage expands.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from conduit.types import UnifiedRequest, UnifiedResponse
from tests.conftest import FakeAdapter, make_response


@dataclass
class ScriptedAdapter(FakeAdapter):
    """FakeAdapter that fails for chosen models.

    ``failures`` maps a model id to the exception raised for it; ``script``
    is consumed first, one item per call (exception or reply text).
    """

    failures: dict[str, BaseException] = field(default_factory=dict)
    script: list[str | BaseException] = field(default_factory=list)

    async def execute(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> UnifiedResponse:
        if self.script:
            self.calls.append(request)
            self.timeouts.append(timeout_s)
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return make_response(request.model, self.provider, item)
        if request.model in self.failures:
            self.calls.append(request)
            self.timeouts.append(timeout_s)
            raise self.failures[request.model]
        return await super().execute(request, timeout_s=timeout_s)


@dataclass
class GateAdapter(FakeAdapter):
    """FakeAdapter that tracks how many calls are in flight at once.

    Each call waits on ``release`` so a test can observe concurrent dispatch.
    """

    release: asyncio.Event = field(default_factory=asyncio.Event)
    in_flight: int = 0
    max_in_flight: int = 0
    fail_on: set[str] = field(default_factory=set)
    error: BaseException | None = None

    async def execute(
        self, request: UnifiedRequest, *, timeout_s: float | None = None
    ) -> UnifiedResponse:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await self.release.wait()
            if self.error is not None and request.messages[-1].text in self.fail_on:
                self.calls.append(request)
                raise self.error
            return await super().execute(request, timeout_s=timeout_s)
        finally:
            self.in_flight -= 1


def user_texts(adapter: FakeAdapter) -> list[str]:
    """Last-message text of every request the adapter received."""
    return [r.messages[-1].text for r in adapter.calls]
