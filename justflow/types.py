from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from collections.abc import Callable, Mapping
import asyncio
import uuid

from tenacity import RetryCallState, wait_exponential
from tenacity.wait import wait_base


class DefinitionError(Exception):
    """Raised when a function or step is defined incorrectly."""

    pass


class EventValidationError(ValueError):
    """Raised when an event payload does not match its registered schema."""

    def __init__(self, event_name: str, problems: list[str]):
        self.event_name = event_name
        self.problems = problems
        super().__init__(f"Invalid '{event_name}' event: {'; '.join(problems)}")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SLEEPING = "sleeping"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)
ACTIVE_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.PENDING, RunStatus.RUNNING, RunStatus.SLEEPING}
)


class StepStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepKind(str, Enum):
    RUN = "run"
    SLEEP = "sleep"
    EMIT = "emit"


class ErrorKind(str, Enum):
    """Failure taxonomy used to decide between retrying and failing a run."""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    PROVIDER_TERMINAL = "provider_terminal"
    TIMEOUT = "timeout"

    @property
    def retriable(self) -> bool:
        return self is ErrorKind.TRANSIENT


class SleepReason(str, Enum):
    SLEEP = "sleep"
    RETRY = "retry"


class DeferReason(str, Enum):
    CONCURRENCY = "concurrency"
    THROTTLE = "throttle"


# ---------------------------------------------------------------------------
# Errors raised by step functions
# ---------------------------------------------------------------------------


class StepError(Exception):
    """Base class for classified step failures."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, *, kind: ErrorKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ValidationFailure(StepError):
    """Bad or missing input. Never retried."""

    kind = ErrorKind.VALIDATION


class TransientFailure(StepError):
    """Network, 5xx or timeout. Retried up to the policy's max attempts."""

    kind = ErrorKind.TRANSIENT


class ProviderFailure(StepError):
    """External provider reported a permanent failure."""

    kind = ErrorKind.PROVIDER_TERMINAL


class PollTimeout(StepError):
    """Poll budget exhausted without a terminal provider status."""

    kind = ErrorKind.TIMEOUT


class RunCancelled(Exception):
    """Raised when a run is cancelled via its CancellationToken."""

    pass


class CancellationToken:
    """Token for cooperative cancellation of a live run.

    Example:
        @fn.step("long-task")
        async def long_task(ctx):
            for item in ctx.data["items"]:
                await ctx.cancel.checkpoint()  # Raises if cancelled
                await process(item)
    """

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "Cancelled") -> None:
        """Request cancellation. The first reason wins."""
        if not self._cancelled.is_set():
            self._reason = reason
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def checkpoint(self) -> None:
        """Raise RunCancelled if cancellation has been requested."""
        if self.is_cancelled():
            raise RunCancelled(self._reason or "Cancelled")

    @property
    def reason(self) -> str | None:
        return self._reason if self.is_cancelled() else None


# ---------------------------------------------------------------------------
# Events and policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Event:
    """A published, immutable event. ``name`` selects matching functions."""

    name: str
    data: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    occurred_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "data": dict(self.data),
            "id": self.id,
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Event:
        return cls(
            name=raw["name"],
            data=dict(raw.get("data") or {}),
            id=raw["id"],
            occurred_at=datetime.fromisoformat(raw["occurred_at"]),
        )


def resolve_path(obj: Any, path: str) -> Any:
    """Resolve a dotted path such as ``data.contentId`` against an event.

    Missing segments resolve to None.
    """
    current: Any = obj
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    return current


def _default_backoff() -> wait_base:
    return wait_exponential(multiplier=1, min=1, max=60)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times a step may run and how long to wait between attempts.

    ``backoff`` is any tenacity wait strategy; it is evaluated against the
    attempt number of the step that just failed.
    """

    max_attempts: int = 4
    backoff: wait_base = field(default_factory=_default_backoff)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise DefinitionError("RetryPolicy.max_attempts must be at least 1")

    @classmethod
    def from_retries(cls, retries: int, backoff: wait_base | None = None) -> RetryPolicy:
        """Build a policy from a retry count (attempts = retries + 1)."""
        if backoff is None:
            return cls(max_attempts=retries + 1)
        return cls(max_attempts=retries + 1, backoff=backoff)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after ``attempt`` failed."""
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        state.attempt_number = attempt
        return max(float(self.backoff(state)), 0.0)


@dataclass(frozen=True)
class Throttle:
    """Per-key admission rate limit: at most ``limit`` runs per ``period`` seconds."""

    key: str
    limit: int
    period: float

    def __post_init__(self) -> None:
        if self.limit < 1 or self.period <= 0:
            raise DefinitionError(
                f"Throttle on '{self.key}' needs limit >= 1 and period > 0"
            )


CancelCondition = Callable[[Event, Event], bool]


@dataclass(frozen=True)
class CancelOn:
    """Cancel in-flight runs when ``event`` arrives with a matching ``match`` value.

    ``condition`` receives (incoming event, run trigger event) and must also
    return True for the run to be cancelled.
    """

    event: str
    match: str
    condition: CancelCondition | None = None

    def matches(self, incoming: Event, trigger: Event) -> bool:
        if incoming.name != self.event or incoming.id == trigger.id:
            return False
        value = resolve_path(incoming, self.match)
        if value is None or value != resolve_path(trigger, self.match):
            return False
        if self.condition is not None and not self.condition(incoming, trigger):
            return False
        return True


# ---------------------------------------------------------------------------
# Step primitives
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Stop:
    """Returned by a step to complete the run early with ``output``."""

    output: Any = None


@dataclass(frozen=True)
class EmitEvent:
    """Returned by an emit step: the event to publish."""

    name: str
    data: Mapping[str, Any]


@dataclass(frozen=True)
class StepSpec:
    """A named, checkpointed unit of work inside a function's plan.

    ``then`` maps the step's (memoized) result to further plan nodes inserted
    right after this step. It must be pure: it runs again on every replay.
    """

    name: str
    fn: Callable[..., Any]
    kind: StepKind = StepKind.RUN
    then: Callable[[Any], list[Any]] | None = None
    timeout: float | None = None
    retry: RetryPolicy | None = None


@dataclass(frozen=True)
class ParallelGroup:
    """Plan node whose member steps execute concurrently."""

    name: str
    steps: tuple[StepSpec, ...]


PlanNode = StepSpec | ParallelGroup


FailureHook = Callable[..., Any]


@dataclass(frozen=True)
class FunctionDefinition:
    """Immutable description of an event-triggered durable function."""

    id: str
    trigger: str
    steps: tuple[PlanNode, ...]
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    concurrency_limit: int | None = None
    throttle: Throttle | None = None
    cancel_on: tuple[CancelOn, ...] = ()
    on_failure: FailureHook | None = None
    name: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


@dataclass
class Run:
    """One execution of a FunctionDefinition against one triggering Event."""

    run_id: str
    function_id: str
    trigger: Event
    status: RunStatus = RunStatus.PENDING
    current_step_index: int = 0
    attempt: int = 0
    output: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    created_at: datetime = field(default_factory=utc_now)
    last_activity_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None


@dataclass
class StepRecord:
    """Checkpoint of one step. Write-once per (run_id, step_name) on success."""

    run_id: str
    step_name: str
    status: StepStatus
    result: Any = None
    error: str | None = None
    attempt: int = 1
    control: str | None = None
    wake_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class SleepMarker:
    run_id: str
    wake_at: datetime
    resume_step_index: int
    reason: SleepReason = SleepReason.SLEEP


@dataclass(frozen=True)
class DeferredAdmission:
    function_id: str
    event_id: str
    not_before: datetime
    reason: DeferReason
    created_at: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Admission results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Slot:
    function_id: str
    run_id: str
    expires_at: datetime | None = None


@dataclass(frozen=True)
class Allowed:
    pass


@dataclass(frozen=True)
class Rejected:
    backoff_hint: float


@dataclass(frozen=True)
class Admitted:
    slot: Slot | None


@dataclass(frozen=True)
class Deferred:
    reason: DeferReason
    retry_after: float = 0.0


ThrottleResult = Allowed | Rejected
Admission = Admitted | Deferred


# ---------------------------------------------------------------------------
# Contexts handed to user code
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepContext:
    """What a step function sees: its run, trigger and earlier results."""

    run_id: str
    function_id: str
    step_name: str
    event: Event
    attempt: int
    now: datetime
    results: Mapping[str, Any] = field(default_factory=dict)
    cancel: CancellationToken = field(default_factory=CancellationToken)

    @property
    def data(self) -> Mapping[str, Any]:
        return self.event.data

    def result(self, step_name: str, default: Any = None) -> Any:
        return self.results.get(step_name, default)


@dataclass(frozen=True)
class FailureContext:
    """Passed to ``on_failure`` hooks after a run failed terminally."""

    run_id: str
    function_id: str
    event: Event
    error: str
    error_kind: ErrorKind
    failed_step: str | None
    now: datetime
    results: Mapping[str, Any] = field(default_factory=dict)
    emit: Callable[..., Any] | None = None

    @property
    def data(self) -> Mapping[str, Any]:
        return self.event.data
