"""Tests for the internal service client."""

from datetime import timedelta
from pathlib import Path

import httpx
import pytest

from justflow.config import FlowConfig
from justflow.studio.api import InternalApi, idempotency_key
from justflow.types import (
    ErrorKind,
    ProviderFailure,
    TransientFailure,
    ValidationFailure,
)
from tests.factories import T0, FakeService


class TestIdempotencyKey:
    def test_stable_within_window(self) -> None:
        first = idempotency_key("ws1", "x", "text", window=86400, now=T0)
        later = idempotency_key(
            "ws1", "x", "text", window=86400, now=T0 + timedelta(hours=11)
        )
        assert first == later

    def test_changes_across_windows_and_parts(self) -> None:
        base = idempotency_key("ws1", "x", "text", window=86400, now=T0)
        assert base != idempotency_key(
            "ws1", "x", "text", window=86400, now=T0 + timedelta(days=1)
        )
        assert base != idempotency_key("ws1", "x", "other", window=86400, now=T0)
        assert base != idempotency_key("ws2", "x", "text", window=86400, now=T0)

    def test_window_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            idempotency_key("a", window=0, now=T0)


@pytest.mark.asyncio
async def test_request_sends_signing_and_idempotency_headers() -> None:
    service = FakeService().on("POST", "/api/studio/publish", {"success": True})
    async with service.api() as api:
        body = await api.post(
            "/api/studio/publish", json={"channel": "x"}, idempotency_key="k1"
        )
    assert body == {"success": True}
    [call] = service.calls
    assert call.json == {"channel": "x"}
    assert call.headers["x-justflow-internal"] == "secret"
    assert call.headers["Idempotency-Key"] == "k1"


@pytest.mark.asyncio
async def test_no_idempotency_header_by_default() -> None:
    service = FakeService().on("GET", "/api/content/c1", {"id": "c1"})
    async with service.api() as api:
        assert await api.get("/api/content/c1", params={"userId": "u1"}) == {"id": "c1"}
    [call] = service.calls
    assert "Idempotency-Key" not in call.headers
    assert call.params == {"userId": "u1"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error_type, kind",
    [
        (503, TransientFailure, ErrorKind.TRANSIENT),
        (429, TransientFailure, ErrorKind.TRANSIENT),
        (401, ProviderFailure, ErrorKind.PROVIDER_TERMINAL),
        (404, ValidationFailure, ErrorKind.VALIDATION),
        (422, ValidationFailure, ErrorKind.VALIDATION),
    ],
)
async def test_error_statuses_are_classified(
    status: int, error_type: type, kind: ErrorKind
) -> None:
    service = FakeService().on(
        "GET", "/x", httpx.Response(status, json={"error": "nope"})
    )
    async with service.api() as api:
        with pytest.raises(error_type) as exc_info:
            await api.get("/x")
    assert exc_info.value.kind is kind
    assert str(exc_info.value) == f"GET /x returned {status}: nope"


@pytest.mark.asyncio
async def test_error_message_falls_back_to_text() -> None:
    service = FakeService().on("GET", "/x", httpx.Response(500, text="upstream down"))
    async with service.api() as api:
        with pytest.raises(TransientFailure, match="upstream down"):
            await api.get("/x")


@pytest.mark.asyncio
async def test_transport_errors_are_transient() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    api = InternalApi("http://studio.test", transport=httpx.MockTransport(refuse))
    async with api:
        with pytest.raises(TransientFailure, match="connection refused"):
            await api.patch("/x", json={})


@pytest.mark.asyncio
async def test_empty_and_non_json_bodies() -> None:
    service = (
        FakeService()
        .on("PATCH", "/empty", httpx.Response(204))
        .on("GET", "/html", httpx.Response(200, text="<html>"))
    )
    async with service.api() as api:
        assert await api.patch("/empty", json={"a": 1}) is None
        with pytest.raises(TransientFailure, match="non-JSON"):
            await api.get("/html")


def test_from_config(tmp_path: Path) -> None:
    config = FlowConfig(
        storage_path=tmp_path,
        base_url="https://studio.example",
        signing_key="k",
        idempotency_window=60.0,
    )
    api = InternalApi.from_config(config)
    assert api.idempotency_window == 60.0
