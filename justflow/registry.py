"""Function registry: declares event-triggered durable functions."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Iterator
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from justflow._internal.utils import suggest_similar
from justflow.types import (
    CancelOn,
    DefinitionError,
    FunctionDefinition,
    ParallelGroup,
    PlanNode,
    RetryPolicy,
    StepKind,
    StepSpec,
    Throttle,
)

if TYPE_CHECKING:
    from justflow.bus import EventBus
    from justflow.types import Event

ThenFn = Callable[[Any], list[PlanNode]]


def iter_step_names(nodes: Iterable[PlanNode]) -> Iterator[str]:
    for node in nodes:
        if isinstance(node, ParallelGroup):
            yield node.name
            for member in node.steps:
                yield member.name
        else:
            yield node.name


def check_unique_names(function_id: str, nodes: Iterable[PlanNode]) -> None:
    seen: set[str] = set()
    for name in iter_step_names(nodes):
        if name in seen:
            raise DefinitionError(
                f"Function '{function_id}' declares step '{name}' more than once. "
                "Step names are checkpoint keys and must be unique within a run."
            )
        seen.add(name)


def _validate_node(function_id: str, node: PlanNode) -> None:
    if isinstance(node, ParallelGroup):
        if not node.steps:
            raise DefinitionError(
                f"Parallel group '{node.name}' in '{function_id}' has no steps"
            )
        for member in node.steps:
            if member.kind is not StepKind.RUN:
                raise DefinitionError(
                    f"Parallel group '{node.name}' may only contain run steps, "
                    f"got {member.kind.value} step '{member.name}'"
                )
            _validate_node(function_id, member)
        return
    if not isinstance(node, StepSpec):
        raise DefinitionError(
            f"Function '{function_id}' has invalid plan node: {type(node).__name__}. "
            "Expected StepSpec or ParallelGroup."
        )
    if not node.name:
        raise DefinitionError(f"Function '{function_id}' has a step without a name")
    if not callable(node.fn):
        raise DefinitionError(f"Step '{node.name}' in '{function_id}' is not callable")
    if node.timeout is not None and node.timeout <= 0:
        raise DefinitionError(f"Step '{node.name}' timeout must be positive")


class FunctionBuilder:
    """Collects steps and policies for one function until the registry freezes.

    Example:
        fn = registry.function("hello-world", trigger="hello")

        @fn.step("generate-greeting")
        async def greet(ctx):
            return {"message": f"Hello {ctx.data.get('message', 'world')}"}
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        id: str,
        trigger: str,
        retry: RetryPolicy,
        concurrency: int | None,
        throttle: Throttle | None,
        cancel_on: tuple[CancelOn, ...],
        name: str | None,
    ) -> None:
        self._registry = registry
        self.id = id
        self.trigger = trigger
        self.retry = retry
        self.concurrency = concurrency
        self.throttle = throttle
        self.cancel_on = cancel_on
        self.name = name
        self.nodes: list[PlanNode] = []
        self.failure_hook: Callable[..., Awaitable[Any]] | None = None

    def _append(self, node: PlanNode) -> None:
        self._registry._assert_mutable(f"add step to '{self.id}'")
        _validate_node(self.id, node)
        self.nodes.append(node)

    def step(
        self,
        name: str,
        *,
        then: ThenFn | None = None,
        timeout: float | None = None,
        retry: RetryPolicy | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a checkpointed step; its result is memoized by ``name``."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self._append(
                StepSpec(name=name, fn=func, then=then, timeout=timeout, retry=retry)
            )
            return func

        return decorator

    def sleep_until(
        self, name: str, *, then: ThenFn | None = None
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a durable sleep.

        The decorated function returns the wake time (``datetime``, ISO-8601
        string, ``timedelta`` or seconds from now) or None to skip sleeping.
        It is evaluated once; the wake time is checkpointed.
        """

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self._append(StepSpec(name=name, fn=func, kind=StepKind.SLEEP, then=then))
            return func

        return decorator

    def sleep(self, name: str, seconds: float | timedelta) -> None:
        """Register a fixed-duration durable sleep."""
        self._append(sleep_step(name, seconds))

    def emit(self, name: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a step that publishes the event(s) the function returns."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self._append(StepSpec(name=name, fn=func, kind=StepKind.EMIT))
            return func

        return decorator

    def add(self, *nodes: PlanNode) -> FunctionBuilder:
        for node in nodes:
            self._append(node)
        return self

    def on_failure(self, func: Callable[..., Any]) -> Callable[..., Any]:
        """Register the hook invoked once a run fails terminally.

        The hook runs at least once per failed run and must be idempotent.
        """
        self._registry._assert_mutable(f"set failure hook on '{self.id}'")
        if not callable(func):
            raise DefinitionError(f"on_failure for '{self.id}' must be callable")
        self.failure_hook = func
        return func

    def build(self) -> FunctionDefinition:
        if not self.nodes:
            raise DefinitionError(f"Function '{self.id}' has no steps")
        check_unique_names(self.id, self.nodes)
        return FunctionDefinition(
            id=self.id,
            trigger=self.trigger,
            steps=tuple(self.nodes),
            retry=self.retry,
            concurrency_limit=self.concurrency,
            throttle=self.throttle,
            cancel_on=self.cancel_on,
            on_failure=self.failure_hook,
            name=self.name,
        )


def sleep_step(name: str, seconds: float | timedelta) -> StepSpec:
    """A SLEEP step with a fixed duration measured from its first execution."""
    duration = seconds if isinstance(seconds, timedelta) else timedelta(seconds=seconds)
    if duration.total_seconds() < 0:
        raise DefinitionError(f"Sleep '{name}' has a negative duration")

    def _duration(ctx: Any) -> timedelta:
        return duration

    return StepSpec(name=name, fn=_duration, kind=StepKind.SLEEP)


def parse_wake_time(value: Any, now: datetime) -> datetime | None:
    """Resolve what a sleep function returned into an absolute UTC time."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise ValueError("Wake time must be timezone-aware")
        return value
    if isinstance(value, timedelta):
        return now + value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return now + timedelta(seconds=value)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            raise ValueError(f"Wake time {value!r} has no timezone")
        return parsed
    raise TypeError(f"Cannot interpret {type(value).__name__} as a wake time")


class FunctionRegistry:
    """Holds function definitions; immutable after :meth:`freeze`.

    There is no module-level registry: create one, register functions on it
    and hand it to the worker.
    """

    def __init__(self) -> None:
        self._builders: dict[str, FunctionBuilder] = {}
        self._definitions: dict[str, FunctionDefinition] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _assert_mutable(self, action: str) -> None:
        if self._frozen:
            raise RuntimeError(f"Function registry is frozen; cannot {action}.")

    def function(
        self,
        id: str,
        *,
        trigger: str,
        retries: int | None = None,
        retry: RetryPolicy | None = None,
        concurrency: int | None = None,
        throttle: Throttle | None = None,
        cancel_on: CancelOn | Iterable[CancelOn] | None = None,
        name: str | None = None,
    ) -> FunctionBuilder:
        """Declare a function triggered by events named ``trigger``."""
        self._assert_mutable(f"register function '{id}'")
        if not id:
            raise DefinitionError("Function id must be a non-empty string")
        if id in self._builders:
            raise DefinitionError(f"Function '{id}' is already registered")
        if not trigger:
            raise DefinitionError(f"Function '{id}' needs a trigger event name")
        if retries is not None and retry is not None:
            raise DefinitionError(f"Function '{id}': pass either retries or retry")
        if retries is not None and retries < 0:
            raise DefinitionError(f"Function '{id}': retries must be >= 0")
        if concurrency is not None and concurrency < 1:
            raise DefinitionError(f"Function '{id}': concurrency must be >= 1")

        if retry is None:
            retry = RetryPolicy.from_retries(retries) if retries is not None else RetryPolicy()
        if cancel_on is None:
            cancel_rules: tuple[CancelOn, ...] = ()
        elif isinstance(cancel_on, CancelOn):
            cancel_rules = (cancel_on,)
        else:
            cancel_rules = tuple(cancel_on)

        builder = FunctionBuilder(
            self, id, trigger, retry, concurrency, throttle, cancel_rules, name
        )
        self._builders[id] = builder
        return builder

    def freeze(self) -> FunctionRegistry:
        """Validate every builder and produce immutable definitions."""
        if self._frozen:
            return self
        definitions = {fid: b.build() for fid, b in self._builders.items()}
        self._definitions = definitions
        self._frozen = True
        return self

    def _require_frozen(self) -> None:
        if not self._frozen:
            self.freeze()

    def get(self, function_id: str) -> FunctionDefinition:
        self._require_frozen()
        try:
            return self._definitions[function_id]
        except KeyError:
            hint = suggest_similar(function_id, self._definitions)
            suffix = f" Did you mean '{hint}'?" if hint else ""
            raise KeyError(f"Unknown function '{function_id}'.{suffix}") from None

    def functions(self) -> list[FunctionDefinition]:
        self._require_frozen()
        return list(self._definitions.values())

    def triggered_by(self, event_name: str) -> list[FunctionDefinition]:
        self._require_frozen()
        return [d for d in self._definitions.values() if d.trigger == event_name]

    def cancellable_by(self, event_name: str) -> list[FunctionDefinition]:
        self._require_frozen()
        return [
            d
            for d in self._definitions.values()
            if any(rule.event == event_name for rule in d.cancel_on)
        ]

    def event_names(self) -> set[str]:
        self._require_frozen()
        names = {d.trigger for d in self._definitions.values()}
        for d in self._definitions.values():
            names.update(rule.event for rule in d.cancel_on)
        return names

    def attach(
        self, bus: EventBus, handler: Callable[[Event], Awaitable[None]]
    ) -> None:
        """Subscribe ``handler`` to every trigger and cancel-on event name."""
        for name in sorted(self.event_names()):
            bus.subscribe(name, handler)
