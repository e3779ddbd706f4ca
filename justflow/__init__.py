from .bus import EventBus
from .config import FlowConfig
from .events import EventPayload, EventSchemas, default_schemas
from .patterns import poll_loop, tiered_backoff
from .registry import FunctionRegistry, sleep_step
from .testing import FakeClock, TestFlow
from .types import (
    CancelOn,
    DefinitionError,
    EmitEvent,
    ErrorKind,
    Event,
    EventValidationError,
    FailureContext,
    ParallelGroup,
    PollTimeout,
    ProviderFailure,
    RetryPolicy,
    RunStatus,
    StepContext,
    StepError,
    StepSpec,
    Stop,
    Throttle,
    TransientFailure,
    ValidationFailure,
)
from .worker import Worker

__all__ = [
    "FunctionRegistry",
    "Worker",
    "EventBus",
    "FlowConfig",
    "EventPayload",
    "EventSchemas",
    "default_schemas",
    "poll_loop",
    "tiered_backoff",
    "sleep_step",
    "Event",
    "EmitEvent",
    "Stop",
    "StepSpec",
    "ParallelGroup",
    "StepContext",
    "FailureContext",
    "RetryPolicy",
    "Throttle",
    "CancelOn",
    "RunStatus",
    "ErrorKind",
    "StepError",
    "ValidationFailure",
    "TransientFailure",
    "ProviderFailure",
    "PollTimeout",
    "DefinitionError",
    "EventValidationError",
    "FakeClock",
    "TestFlow",
]
