"""Composed step patterns built from the run/sleep primitives.

``poll_loop`` unrolls "submit, then poll until terminal" into ordinary
checkpointed steps::

    initial-wait -> poll-1 -> wait-1 -> poll-2 -> ... -> poll-N

Each ``poll-N`` step's ``then`` looks at its own memoized result and either
appends the next ``wait-N``/``poll-N+1`` pair or the completion steps, so a
replay rebuilds exactly the same plan from the checkpoints.
"""

from __future__ import annotations

import functools
import inspect
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

from justflow.registry import sleep_step
from justflow.types import (
    DefinitionError,
    PlanNode,
    PollTimeout,
    ProviderFailure,
    StepContext,
    StepSpec,
)

COMPLETE_STATUSES = frozenset({"complete", "completed", "succeeded", "success"})
FAILED_STATUSES = frozenset({"failed", "error", "cancelled", "canceled"})

Backoff = Callable[[int], float]


def tiered_backoff(tiers: Sequence[tuple[int, float]], default: float) -> Backoff:
    """Delay after poll ``n``: the first tier whose bound covers ``n``.

    ``tiered_backoff([(10, 10), (20, 20)], 30)`` waits 10s after polls 1-10,
    20s after polls 11-20 and 30s after that. Delays must not decrease.
    """
    bounds = [bound for bound, _ in tiers]
    delays = [delay for _, delay in tiers] + [default]
    if any(b <= a for a, b in zip(bounds, bounds[1:])):
        raise DefinitionError("Backoff tier bounds must be strictly increasing")
    if any(d < 0 for d in delays):
        raise DefinitionError("Backoff delays must not be negative")
    if any(b < a for a, b in zip(delays, delays[1:])):
        raise DefinitionError("Backoff delays must be monotonically non-decreasing")

    def backoff(n: int) -> float:
        for bound, delay in tiers:
            if n <= bound:
                return delay
        return default

    return backoff


def poll_status(result: Mapping[str, Any]) -> str:
    return str(result.get("status") or "").lower()


def default_is_complete(result: Mapping[str, Any]) -> bool:
    return poll_status(result) in COMPLETE_STATUSES


def default_is_failed(result: Mapping[str, Any]) -> bool:
    return poll_status(result) in FAILED_STATUSES


def default_timeout_message(polls: int, elapsed: float) -> str:
    return f"Timed out after {polls} polls ({round(elapsed)}s)"


def latest_poll(results: Mapping[str, Any], poll_name: str = "poll") -> Any:
    """The most recent ``poll-N`` result among a run's memoized results."""
    prefix = f"{poll_name}-"
    best: tuple[int, Any] | None = None
    for name, value in results.items():
        if not name.startswith(prefix):
            continue
        suffix = name[len(prefix) :]
        if suffix.isdigit() and (best is None or int(suffix) > best[0]):
            best = (int(suffix), value)
    return best[1] if best else None


def poll_loop(
    poll: Callable[[StepContext, int], Any],
    *,
    backoff: Backoff,
    max_polls: int | None = None,
    max_duration: float | None = None,
    submit: StepSpec | None = None,
    initial_delay: float = 0,
    initial_wait_name: str = "initial-wait",
    poll_name: str = "poll",
    wait_name: str = "wait",
    is_complete: Callable[[Mapping[str, Any]], bool] = default_is_complete,
    is_failed: Callable[[Mapping[str, Any]], bool] = default_is_failed,
    on_complete: Callable[[Mapping[str, Any]], Iterable[PlanNode]] | None = None,
    timeout_message: Callable[[int, float], str] = default_timeout_message,
    poll_timeout: float | None = None,
    since: Callable[[StepContext], datetime] | None = None,
) -> list[PlanNode]:
    """Plan nodes that poll an external job until it reaches a terminal status.

    ``poll(ctx, n)`` returns a mapping with at least ``status``. A failed
    status raises :class:`ProviderFailure`; running out of polls or of the
    ``max_duration`` budget raises :class:`PollTimeout`. Both are terminal.
    Each stored poll result carries ``poll`` (its number) and
    ``elapsedSeconds``.

    Elapsed time is measured from ``since(ctx)``, by default the trigger
    event's ``occurred_at``. Pass a function that reads a memoized step
    result to start the budget after submission instead.
    """
    if max_polls is None and max_duration is None:
        raise DefinitionError("poll_loop needs max_polls or max_duration")
    if max_polls is not None and max_polls < 1:
        raise DefinitionError("poll_loop max_polls must be at least 1")
    if max_duration is not None and max_duration <= 0:
        raise DefinitionError("poll_loop max_duration must be positive")

    async def run_poll(ctx: StepContext, n: int) -> dict[str, Any]:
        outcome = poll(ctx, n)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if not isinstance(outcome, Mapping):
            raise TypeError(f"Poll {n} returned {type(outcome).__name__}, expected a mapping")
        started = since(ctx) if since is not None else ctx.event.occurred_at
        elapsed = max((ctx.now - started).total_seconds(), 0.0)
        if is_failed(outcome):
            raise ProviderFailure(
                str(outcome.get("error") or "Provider reported failure")
            )
        if not is_complete(outcome):
            out_of_polls = max_polls is not None and n >= max_polls
            out_of_time = max_duration is not None and elapsed >= max_duration
            if out_of_polls or out_of_time:
                raise PollTimeout(timeout_message(n, elapsed))
        return {**outcome, "poll": n, "elapsedSeconds": elapsed}

    def after(n: int, result: Mapping[str, Any]) -> list[PlanNode]:
        if is_complete(result):
            return list(on_complete(result)) if on_complete is not None else []
        return [sleep_step(f"{wait_name}-{n}", backoff(n)), poll_node(n + 1)]

    def poll_node(n: int) -> StepSpec:
        return StepSpec(
            name=f"{poll_name}-{n}",
            fn=functools.partial(run_poll, n=n),
            then=functools.partial(after, n),
            timeout=poll_timeout,
        )

    nodes: list[PlanNode] = []
    if submit is not None:
        nodes.append(submit)
    if initial_delay > 0:
        nodes.append(sleep_step(initial_wait_name, initial_delay))
    nodes.append(poll_node(1))
    return nodes
