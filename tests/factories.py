"""Shared test factories for events, runs and the studio's internal service."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from justflow.studio.api import InternalApi
from justflow.testing import FakeClock
from justflow.types import Event, Run, RunStatus, StepRecord, StepStatus

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_event(
    name: str = "hello",
    data: dict[str, Any] | None = None,
    *,
    id: str = "evt-1",
    occurred_at: datetime | None = None,
) -> Event:
    """Create an Event with sensible defaults for testing."""
    return Event(name=name, data=data or {}, id=id, occurred_at=occurred_at or T0)


def make_run(
    run_id: str = "run-1",
    function_id: str = "hello",
    status: RunStatus = RunStatus.PENDING,
    trigger: Event | None = None,
    created_at: datetime | None = None,
    **fields: Any,
) -> Run:
    """Create a Run with sensible defaults for testing."""
    created = created_at or T0
    return Run(
        run_id=run_id,
        function_id=function_id,
        trigger=trigger or make_event(),
        status=status,
        created_at=created,
        last_activity_at=created,
        **fields,
    )


def make_step(
    run_id: str = "run-1",
    step_name: str = "step-a",
    status: StepStatus = StepStatus.SUCCEEDED,
    result: Any = None,
    **fields: Any,
) -> StepRecord:
    return StepRecord(
        run_id=run_id, step_name=step_name, status=status, result=result, **fields
    )


@dataclass
class Call:
    """One request received by :class:`FakeService`."""

    method: str
    path: str
    params: dict[str, str]
    json: Any
    headers: httpx.Headers
    at: datetime | None = None


Responder = Callable[[Call], Any]


@dataclass
class FakeService:
    """Stands in for the studio's internal HTTP service.

    Routes are ``(METHOD, path)`` pairs; a path ending in ``*`` matches by
    prefix. A route answers with a JSON value, an ``httpx.Response`` or a
    callable taking the :class:`Call`. Unrouted requests get a 404.
    """

    clock: FakeClock | None = None
    routes: dict[tuple[str, str], Any] = field(default_factory=dict)
    calls: list[Call] = field(default_factory=list)

    def on(self, method: str, path: str, response: Any) -> FakeService:
        self.routes[(method.upper(), path)] = response
        return self

    def _route(self, method: str, path: str) -> Any:
        if (method, path) in self.routes:
            return self.routes[(method, path)]
        for (m, pattern), response in self.routes.items():
            if m == method and pattern.endswith("*") and path.startswith(pattern[:-1]):
                return response
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        call = Call(
            method=request.method,
            path=request.url.path,
            params=dict(request.url.params),
            json=body,
            headers=request.headers,
            at=self.clock.now() if self.clock is not None else None,
        )
        self.calls.append(call)
        response = self._route(call.method, call.path)
        if response is None:
            return httpx.Response(404, json={"error": f"no route for {call.path}"})
        if callable(response):
            response = response(call)
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    def api(self, **kwargs: Any) -> InternalApi:
        return InternalApi(
            "http://studio.test",
            signing_key="secret",
            transport=httpx.MockTransport(self.handler),
            **kwargs,
        )

    def requests(self, method: str | None = None, path: str | None = None) -> list[Call]:
        return [
            c
            for c in self.calls
            if (method is None or c.method == method)
            and (path is None or c.path == path)
        ]


def sequence(*responses: Any) -> Responder:
    """Answer successive calls with ``responses``; the last one repeats."""
    remaining = list(responses)

    def respond(call: Call) -> Any:
        if len(remaining) > 1:
            return remaining.pop(0)
        return remaining[0]

    return respond
