"""Typed event payloads, validated when an event is published.

Every event name maps to one frozen dataclass. Field names are snake_case
in Python and camelCase on the wire (``content_id`` ↔ ``contentId``).
Unknown extra keys are kept; missing required keys and wrong basic types
are rejected with :class:`EventValidationError` before anything is written.

Example::

    schemas = default_schemas()
    schemas.validate("publish.content", {"contentId": "c1", "channels": ["x"]})
    payload = schemas.parse(event)  # -> PublishContent(content_id="c1", ...)
"""

from __future__ import annotations

import dataclasses
import types
import typing
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal, TypeVar, Union, get_args, get_origin

from justflow.types import Event, EventValidationError


def wire_key(field_name: str) -> str:
    """``content_id`` -> ``contentId``."""
    head, *rest = field_name.split("_")
    return head + "".join(part.title() for part in rest)


P = TypeVar("P", bound="EventPayload")


class EventPayload:
    """Base for typed payloads. Subclasses are frozen dataclasses."""

    NAME: ClassVar[str]

    @classmethod
    def from_data(cls: type[P], data: Mapping[str, Any]) -> P:
        kwargs = {}
        for f in dataclasses.fields(cls):  # type: ignore[arg-type]
            key = wire_key(f.name)
            if key in data:
                kwargs[f.name] = data[key]
        return cls(**kwargs)

    def to_data(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in dataclasses.fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if value is not None:
                out[wire_key(f.name)] = value
        return out


def _check_type(value: Any, hint: Any) -> bool:
    origin = get_origin(hint)
    if hint is Any:
        return True
    if origin in (Union, types.UnionType):
        return any(_check_type(value, arg) for arg in get_args(hint))
    if hint is type(None):
        return value is None
    if origin is Literal:
        return value in get_args(hint)
    if origin in (list, tuple):
        if not isinstance(value, (list, tuple)):
            return False
        args = get_args(hint)
        if not args:
            return True
        return all(_check_type(item, args[0]) for item in value)
    if origin in (dict, Mapping) or hint in (dict, Mapping):
        return isinstance(value, Mapping)
    if hint is bool:
        return isinstance(value, bool)
    if hint is int:
        return isinstance(value, int) and not isinstance(value, bool)
    if hint is float:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if isinstance(hint, type):
        return isinstance(value, hint)
    return True


def _describe_hint(hint: Any) -> str:
    if isinstance(hint, type):
        return hint.__name__
    return str(hint).replace("typing.", "")


class EventSchemas:
    """Registry of event name -> payload dataclass.

    With ``strict=True`` publishing an unregistered event name is an error;
    otherwise unregistered names pass through unvalidated.
    """

    def __init__(self, strict: bool = False) -> None:
        self.strict = strict
        self._schemas: dict[str, type[EventPayload]] = {}

    def register(self, payload_type: type[EventPayload]) -> type[EventPayload]:
        name = payload_type.NAME
        if name in self._schemas and self._schemas[name] is not payload_type:
            raise ValueError(f"Event '{name}' already has a schema")
        self._schemas[name] = payload_type
        return payload_type

    def get(self, name: str) -> type[EventPayload] | None:
        return self._schemas.get(name)

    def names(self) -> list[str]:
        return sorted(self._schemas)

    def __contains__(self, name: object) -> bool:
        return name in self._schemas

    def problems(self, name: str, data: Any) -> list[str]:
        """Return validation problems for a payload; empty when valid."""
        if not isinstance(data, Mapping):
            return [f"data must be an object, got {type(data).__name__}"]
        payload_type = self._schemas.get(name)
        if payload_type is None:
            return ["unknown event name"] if self.strict else []

        hints = typing.get_type_hints(payload_type)
        problems: list[str] = []
        for f in dataclasses.fields(payload_type):  # type: ignore[arg-type]
            key = wire_key(f.name)
            required = (
                f.default is dataclasses.MISSING
                and f.default_factory is dataclasses.MISSING
            )
            value = data.get(key)
            if value is None:
                if required:
                    problems.append(f"missing required field '{key}'")
                continue
            hint = hints[f.name]
            if not _check_type(value, hint):
                problems.append(
                    f"field '{key}' expected {_describe_hint(hint)}, "
                    f"got {type(value).__name__}"
                )
        return problems

    def validate(self, name: str, data: Any) -> None:
        problems = self.problems(name, data)
        if problems:
            raise EventValidationError(name, problems)

    def parse(self, event: Event) -> EventPayload:
        """Validate ``event`` and return its typed payload."""
        payload_type = self._schemas.get(event.name)
        if payload_type is None:
            raise EventValidationError(event.name, ["unknown event name"])
        self.validate(event.name, event.data)
        return payload_type.from_data(event.data)


# ---------------------------------------------------------------------------
# Studio events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Hello(EventPayload):
    NAME: ClassVar[str] = "hello"

    message: str | None = None


@dataclass(frozen=True)
class PublishContent(EventPayload):
    NAME: ClassVar[str] = "publish.content"

    content_id: str
    channels: list[str]
    scheduled_for: str | None = None
    workspace_id: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class ContentScheduleRequested(EventPayload):
    NAME: ClassVar[str] = "content.schedule.requested"

    user_id: str
    content_id: str
    channels: list[str]
    scheduled_at: str
    title: str | None = None
    body: str | None = None
    hashtags: list[str] | None = None
    call_to_action: str | None = None
    video_url: str | None = None


@dataclass(frozen=True)
class ContentPublished(EventPayload):
    NAME: ClassVar[str] = "content.published"

    content_id: str
    channels: list[str]
    published_at: str
    results: list[dict[str, Any]] = field(default_factory=list)
    user_id: str | None = None


@dataclass(frozen=True)
class VideoRenderRequested(EventPayload):
    NAME: ClassVar[str] = "video.render.requested"

    task_id: str
    provider_id: str
    user_id: str
    estimated_cost: float
    render_type: Literal["test", "full"]
    prompt: str
    duration_seconds: float
    content_id: str | None = None


@dataclass(frozen=True)
class VideoRenderCompleted(EventPayload):
    NAME: ClassVar[str] = "video.render.completed"

    user_id: str
    task_id: str
    provider_id: str
    video_url: str
    render_type: str
    actual_cost: float
    render_time_ms: int
    content_id: str | None = None


@dataclass(frozen=True)
class VideoRenderFailed(EventPayload):
    NAME: ClassVar[str] = "video.render.failed"

    user_id: str
    task_id: str
    provider_id: str
    error: str
    render_type: str
    content_id: str | None = None


@dataclass(frozen=True)
class VideoGenerate(EventPayload):
    NAME: ClassVar[str] = "video.generate"

    job_id: str
    version_id: str
    workspace_id: str


@dataclass(frozen=True)
class SeoAnalyze(EventPayload):
    NAME: ClassVar[str] = "seo.analyze"

    topic: str
    keywords: list[str] | None = None
    competitors: list[str] | None = None
    workspace_id: str | None = None


@dataclass(frozen=True)
class ContentFactcheckRequested(EventPayload):
    NAME: ClassVar[str] = "content.factcheck.requested"

    user_id: str
    content_id: str
    title: str
    body: str


@dataclass(frozen=True)
class ContentFactcheckCompleted(EventPayload):
    NAME: ClassVar[str] = "content.factcheck.completed"

    user_id: str
    content_id: str
    score: int
    verdict: Literal["clean", "caution", "warning"]
    claims: list[dict[str, Any]]
    verifications: list[dict[str, Any]]
    checked_at: str
    verified_count: int | None = None
    total_claims: int | None = None


@dataclass(frozen=True)
class PublishToChannel(EventPayload):
    NAME: ClassVar[str] = "publish.to-channel"

    publication_id: str
    channel_id: str
    user_id: str
    content_id: str
    text: str
    variant_id: str | None = None


STUDIO_EVENTS: tuple[type[EventPayload], ...] = (
    Hello,
    PublishContent,
    ContentScheduleRequested,
    ContentPublished,
    VideoRenderRequested,
    VideoRenderCompleted,
    VideoRenderFailed,
    VideoGenerate,
    SeoAnalyze,
    ContentFactcheckRequested,
    ContentFactcheckCompleted,
    PublishToChannel,
)


def default_schemas(strict: bool = False) -> EventSchemas:
    """A fresh registry holding every studio event schema."""
    schemas = EventSchemas(strict=strict)
    for payload_type in STUDIO_EVENTS:
        schemas.register(payload_type)
    return schemas
