"""Retry decisions and terminal failure handling for runs."""

from __future__ import annotations

import inspect
import logging
import traceback
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from tenacity import AsyncRetrying, stop_after_attempt

from justflow._internal.clock import Clock, SystemClock
from justflow._internal.utils import derive_event_id
from justflow.checkpoint import CheckpointStore
from justflow.failures import classify, describe
from justflow.types import (
    ErrorKind,
    FailureContext,
    FunctionDefinition,
    RetryPolicy,
    Run,
    RunStatus,
    StepRecord,
    StepStatus,
)

if TYPE_CHECKING:
    from justflow.bus import EventBus

logger = logging.getLogger("justflow.retry")

FAILURE_HOOK_STEP = "on-failure"


@dataclass(frozen=True)
class RetryDecision:
    """Run the step again after ``delay`` seconds as attempt ``next_attempt``."""

    delay: float
    next_attempt: int
    kind: ErrorKind


@dataclass(frozen=True)
class FailDecision:
    """Stop retrying: the run fails terminally."""

    kind: ErrorKind
    reason: str


class RetryHandler:
    """Decides between retrying a step and failing its run.

    Retries are not performed here: the scheduler turns a RetryDecision into
    a durable sleep so no task is held while waiting. Terminal failures move
    the run to Failed and invoke the function's ``on_failure`` hook.
    """

    def __init__(
        self,
        store: CheckpointStore,
        bus: EventBus,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._clock = clock or SystemClock()
        self._hooks_in_flight: set[str] = set()

    def decide(
        self, policy: RetryPolicy, error: BaseException, attempt: int
    ) -> RetryDecision | FailDecision:
        kind = classify(error)
        if not kind.retriable:
            return FailDecision(kind, f"{kind.value} error is not retried")
        if attempt >= policy.max_attempts:
            return FailDecision(
                kind, f"gave up after {attempt} of {policy.max_attempts} attempts"
            )
        return RetryDecision(
            delay=policy.delay_for(attempt), next_attempt=attempt + 1, kind=kind
        )

    def log_step_error(
        self, run: Run, step_name: str, error: BaseException, attempt: int
    ) -> None:
        stack = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
        logger.error(
            "Step '%s' of run %s failed on attempt %d with %s: %s\nStack trace:\n%s",
            step_name,
            run.run_id,
            attempt,
            type(error).__name__,
            error,
            stack,
            extra={
                "run_id": run.run_id,
                "function_id": run.function_id,
                "step_name": step_name,
                "error_type": type(error).__name__,
                "error_kind": classify(error).value,
                "attempt": attempt,
            },
        )

    async def fail_run(
        self,
        run: Run,
        fn: FunctionDefinition,
        error: BaseException | str,
        kind: ErrorKind,
        failed_step: str | None = None,
        on_terminal: Callable[[], Awaitable[None]] | None = None,
    ) -> bool:
        """Transition ``run`` to Failed and run its failure hook.

        ``on_terminal`` runs right after the transition, before the hook, so
        resources held by the run are freed without waiting on the hook.
        Returns False when the run was already terminal (e.g. cancelled
        while the step was in flight); the hook is not invoked then.
        """
        message = describe(error) if isinstance(error, BaseException) else error[:500]
        now = self._clock.now()
        moved = await self._store.transition_run(
            run.run_id,
            RunStatus.FAILED,
            now,
            error=message,
            error_kind=kind,
        )
        if not moved:
            logger.debug("Run %s already terminal, not failing it", run.run_id)
            return False
        logger.warning(
            "Run %s of %s failed (%s) at step %s: %s",
            run.run_id,
            fn.id,
            kind.value,
            failed_step,
            message,
            extra={
                "run_id": run.run_id,
                "function_id": fn.id,
                "step_name": failed_step,
                "error_kind": kind.value,
            },
        )
        if on_terminal is not None:
            await on_terminal()
        if fn.on_failure is not None:
            await self.run_failure_hook(
                run, fn, message=message, kind=kind, failed_step=failed_step
            )
        return True

    async def run_failure_hook(
        self,
        run: Run,
        fn: FunctionDefinition,
        *,
        message: str | None = None,
        kind: ErrorKind | None = None,
        failed_step: str | None = None,
    ) -> bool:
        """Invoke ``fn.on_failure`` for a failed run, at least once.

        Completion is checkpointed under the ``on-failure`` step name; a hook
        that already succeeded is not called again. Hook errors are retried
        with the function's policy, then logged and recorded.
        """
        if fn.on_failure is None or run.run_id in self._hooks_in_flight:
            return False
        done = await self._store.get_step(run.run_id, FAILURE_HOOK_STEP)
        if done is not None and done.status == StepStatus.SUCCEEDED:
            return False

        results = {
            rec.step_name: rec.result
            for rec in await self._store.list_steps(run.run_id)
            if rec.status == StepStatus.SUCCEEDED
        }
        ctx = FailureContext(
            run_id=run.run_id,
            function_id=fn.id,
            event=run.trigger,
            error=message if message is not None else (run.error or ""),
            error_kind=kind or run.error_kind or ErrorKind.TRANSIENT,
            failed_step=failed_step,
            now=self._clock.now(),
            results=results,
            emit=self._emitter(run.run_id),
        )

        self._hooks_in_flight.add(run.run_id)
        attempt = 0
        try:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(fn.retry.max_attempts),
                wait=fn.retry.backoff,
                sleep=self._clock.sleep,
                reraise=True,
            )
            async for attempt_state in retrying:
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    outcome = fn.on_failure(ctx, ctx.error)
                    if inspect.isawaitable(outcome):
                        outcome = await outcome
        except Exception as exc:
            logger.error(
                "Failure hook of %s for run %s failed: %s",
                fn.id,
                run.run_id,
                exc,
                extra={
                    "run_id": run.run_id,
                    "function_id": fn.id,
                    "step_name": FAILURE_HOOK_STEP,
                    "error_type": type(exc).__name__,
                },
                exc_info=True,
            )
            await self._store.save_step_attempt(
                StepRecord(
                    run_id=run.run_id,
                    step_name=FAILURE_HOOK_STEP,
                    status=StepStatus.FAILED,
                    error=describe(exc),
                    attempt=attempt,
                )
            )
            return False
        finally:
            self._hooks_in_flight.discard(run.run_id)

        await self._store.complete_step(
            StepRecord(
                run_id=run.run_id,
                step_name=FAILURE_HOOK_STEP,
                status=StepStatus.SUCCEEDED,
                result=outcome,
                attempt=attempt,
            ),
            None,
            self._clock.now(),
        )
        return True

    def _emitter(self, run_id: str) -> Any:
        bus = self._bus

        async def emit(
            name: str, data: Mapping[str, Any], key: str | None = None
        ) -> str:
            """Publish with an id derived from the run, so re-invocations dedupe."""
            suffix = f"{FAILURE_HOOK_STEP}:{name}" + (f":{key}" if key else "")
            return await bus.publish(name, data, id=derive_event_id(run_id, suffix))

        return emit

    async def pending_failure_hooks(
        self, fns: Mapping[str, FunctionDefinition], limit: int = 50
    ) -> int:
        """Re-run hooks for failed runs whose hook never completed."""
        ran = 0
        with_hooks = [fid for fid, fn in fns.items() if fn.on_failure is not None]
        for function_id in with_hooks:
            fn = fns[function_id]
            for run in await self._store.list_runs(
                function_id, statuses=[RunStatus.FAILED], limit=limit
            ):
                if run.run_id in self._hooks_in_flight:
                    continue
                record = await self._store.get_step(run.run_id, FAILURE_HOOK_STEP)
                if record is not None and record.status == StepStatus.SUCCEEDED:
                    continue
                if record is not None and record.attempt >= fn.retry.max_attempts:
                    continue
                if await self.run_failure_hook(run, fn):
                    ran += 1
        return ran
