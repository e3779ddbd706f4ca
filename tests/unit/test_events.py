"""Tests for typed event payloads and schema validation."""

from dataclasses import dataclass
from typing import ClassVar

import pytest

from justflow.events import (
    ContentFactcheckCompleted,
    EventPayload,
    EventSchemas,
    PublishContent,
    VideoRenderRequested,
    default_schemas,
    wire_key,
)
from justflow.types import EventValidationError
from tests.factories import make_event


def test_wire_key() -> None:
    assert wire_key("content_id") == "contentId"
    assert wire_key("call_to_action") == "callToAction"
    assert wire_key("score") == "score"


def test_validate_accepts_valid_payload() -> None:
    schemas = default_schemas()
    schemas.validate("publish.content", {"contentId": "c1", "channels": ["x"]})


def test_missing_required_field() -> None:
    schemas = default_schemas()
    with pytest.raises(EventValidationError) as exc_info:
        schemas.validate("publish.content", {"channels": ["x"]})
    assert exc_info.value.event_name == "publish.content"
    assert exc_info.value.problems == ["missing required field 'contentId'"]


def test_wrong_types_are_reported() -> None:
    schemas = default_schemas()
    problems = schemas.problems(
        "video.render.requested",
        {
            "taskId": "t1",
            "providerId": "p1",
            "userId": "u1",
            "estimatedCost": "cheap",
            "renderType": "draft",
            "prompt": "a cat",
            "durationSeconds": 6,
        },
    )
    assert problems == [
        "field 'estimatedCost' expected float, got str",
        "field 'renderType' expected Literal['test', 'full'], got str",
    ]


def test_bool_is_not_an_int() -> None:
    problems = default_schemas().problems(
        "content.factcheck.completed",
        {
            "userId": "u1",
            "contentId": "c1",
            "score": True,
            "verdict": "clean",
            "claims": [],
            "verifications": [],
            "checkedAt": "2025-01-01T00:00:00+00:00",
        },
    )
    assert problems == ["field 'score' expected int, got bool"]


def test_list_items_are_checked() -> None:
    problems = default_schemas().problems(
        "publish.content", {"contentId": "c1", "channels": ["x", 3]}
    )
    assert len(problems) == 1
    assert "channels" in problems[0]


def test_non_object_data() -> None:
    assert default_schemas().problems("hello", ["x"]) == [
        "data must be an object, got list"
    ]


def test_unknown_names_pass_unless_strict() -> None:
    assert default_schemas().problems("custom.thing", {"a": 1}) == []
    assert default_schemas(strict=True).problems("custom.thing", {}) == [
        "unknown event name"
    ]


def test_extra_keys_are_kept_and_parsed() -> None:
    event = make_event(
        "publish.content",
        {"contentId": "c1", "channels": ["x"], "traceId": "abc"},
    )
    payload = default_schemas().parse(event)
    assert isinstance(payload, PublishContent)
    assert payload.content_id == "c1"
    assert payload.scheduled_for is None
    assert payload.to_data() == {"contentId": "c1", "channels": ["x"]}


def test_parse_rejects_unregistered() -> None:
    with pytest.raises(EventValidationError):
        default_schemas().parse(make_event("custom.thing"))


def test_from_data_uses_wire_keys() -> None:
    payload = VideoRenderRequested.from_data(
        {
            "taskId": "t1",
            "providerId": "p1",
            "userId": "u1",
            "estimatedCost": 0.5,
            "renderType": "test",
            "prompt": "a cat",
            "durationSeconds": 6,
            "contentId": "c9",
        }
    )
    assert payload.task_id == "t1"
    assert payload.content_id == "c9"


def test_defaults_with_factory() -> None:
    payload = ContentFactcheckCompleted.from_data(
        {
            "userId": "u1",
            "contentId": "c1",
            "score": 100,
            "verdict": "clean",
            "claims": [],
            "verifications": [],
            "checkedAt": "now",
        }
    )
    assert payload.verified_count is None
    assert payload.total_claims is None


def test_register_custom_schema() -> None:
    @dataclass(frozen=True)
    class Ping(EventPayload):
        NAME: ClassVar[str] = "ping"

        count: int

    schemas = EventSchemas()
    schemas.register(Ping)
    assert "ping" in schemas
    assert schemas.names() == ["ping"]
    assert schemas.problems("ping", {"count": "1"}) == [
        "field 'count' expected int, got str"
    ]
    # same type twice is fine, a different one is not
    schemas.register(Ping)

    @dataclass(frozen=True)
    class OtherPing(EventPayload):
        NAME: ClassVar[str] = "ping"

    with pytest.raises(ValueError, match="already has a schema"):
        schemas.register(OtherPing)
