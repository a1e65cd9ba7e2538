"""Test doubles shared across the suite: a controllable clock and a scripted
reasoning client that records requests and tracks dispatch concurrency."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable

from deep_reason.domain.context import AnalysisContext, FocusArea
from deep_reason.reasoning.client import ReasoningRequest, ReasoningResponse, RequestPurpose

BASE_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

Outcome = ReasoningResponse | Exception
Handler = Callable[[ReasoningRequest], Outcome]


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeReasoningClient:
    """ReasoningClient double.

    Outcomes come from, in order of precedence: ``handler(request)``, the
    ``script`` queue, then ``default``.  An Exception outcome is raised.
    """

    def __init__(
        self,
        script: list[Outcome] | None = None,
        handler: Handler | None = None,
        default: ReasoningResponse | None = None,
        delay: float = 0.0,
    ) -> None:
        self.script: list[Outcome] = list(script or [])
        self.handler = handler
        self.default = default or ReasoningResponse(
            content="Looked at the trace.", findings=[], confidence=0.5,
        )
        self.delay = delay
        self.requests: list[ReasoningRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_dispatch: Callable[[], None] | None = None

    async def dispatch(self, request: ReasoningRequest, time_budget: float) -> ReasoningResponse:
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_dispatch is not None:
                self.on_dispatch()
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.handler is not None:
                outcome = self.handler(request)
            elif self.script:
                outcome = self.script.pop(0)
            else:
                outcome = self.default
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1

    def requests_for(self, purpose: RequestPurpose) -> list[ReasoningRequest]:
        return [r for r in self.requests if r.purpose == purpose]


def make_context(**overrides) -> AnalysisContext:
    data = {
        "attempted_approaches": ["added logging around the retry loop"],
        "partial_findings": [{"description": "retries double under load"}],
        "stuck_points": ["cannot reproduce locally"],
        "focus_area": FocusArea(files=["src/payments/retry.py"]),
    }
    data.update(overrides)
    return AnalysisContext.model_validate(data)
