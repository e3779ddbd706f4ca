"""Run scheduler: admits runs and drives their step plans with memoization.

A run's plan is its function's static step list plus whatever each step's
``then`` expansion returns for the step's checkpointed result. Driving a run
walks that plan from the top on every resume: steps with a SUCCEEDED record
return the stored result without executing, so only new work runs. Sleeps
and retry waits are persisted as SleepMarkers and the driving task exits;
the reaper resumes the run when the marker is due.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any

from justflow._internal.clock import Clock, SystemClock
from justflow._internal.utils import derive_event_id, derive_run_id
from justflow.bus import EventBus
from justflow.checkpoint import CheckpointStore
from justflow.controller import ConcurrencyController
from justflow.failures import classify, describe
from justflow.registry import FunctionRegistry, check_unique_names, parse_wake_time
from justflow.retry import FailDecision, RetryHandler
from justflow.types import (
    ACTIVE_STATUSES,
    CancellationToken,
    Deferred,
    DeferredAdmission,
    EmitEvent,
    ErrorKind,
    Event,
    FunctionDefinition,
    ParallelGroup,
    PlanNode,
    Run,
    RunCancelled,
    RunStatus,
    SleepMarker,
    SleepReason,
    StepContext,
    StepKind,
    StepRecord,
    StepSpec,
    StepStatus,
    Stop,
)

logger = logging.getLogger("justflow.scheduler")


@dataclass(frozen=True)
class StepDone:
    result: Any
    stop: bool = False


@dataclass(frozen=True)
class StepSleep:
    wake_at: datetime
    reason: SleepReason


@dataclass(frozen=True)
class StepFailed:
    error: BaseException | str
    kind: ErrorKind
    step_name: str


@dataclass(frozen=True)
class StepCancelled:
    reason: str


StepOutcome = StepDone | StepSleep | StepFailed | StepCancelled


class RunScheduler:
    """Starts, drives, suspends, resumes and cancels runs."""

    def __init__(
        self,
        store: CheckpointStore,
        registry: FunctionRegistry,
        bus: EventBus,
        controller: ConcurrencyController,
        retry_handler: RetryHandler,
        *,
        clock: Clock | None = None,
        supersession_scan: int = 200,
        page_size: int = 500,
    ) -> None:
        self._store = store
        self._registry = registry
        self._bus = bus
        self._controller = controller
        self._retry = retry_handler
        self._clock = clock or SystemClock()
        self._supersession_scan = supersession_scan
        self._page_size = page_size
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._owners: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Event entry point
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> list[str]:
        """Apply cancel-on rules for ``event``, then start triggered runs."""
        for fn in self._registry.cancellable_by(event.name):
            await self.cancel_matching(fn, event)
        run_ids = []
        for fn in self._registry.triggered_by(event.name):
            run_ids.append(await self.start_run(fn, event))
        return run_ids

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def start_run(self, fn: FunctionDefinition, event: Event) -> str:
        """Create (or find) the run for ``event`` and try to admit it.

        The run id is derived from the function and event ids, so delivering
        the same event twice reaches the same run. A deferred run stays
        Pending and queued; its id is returned all the same.
        """
        await self._start(fn, event)
        return derive_run_id(fn.id, event.id)

    async def _start(self, fn: FunctionDefinition, event: Event) -> bool:
        run_id = derive_run_id(fn.id, event.id)
        run = await self._store.get_run(run_id)
        if run is None:
            now = self._clock.now()
            newer = await self._find_superseding(fn, event)
            if newer is not None:
                await self._store.create_run(
                    Run(
                        run_id=run_id,
                        function_id=fn.id,
                        trigger=event,
                        status=RunStatus.CANCELLED,
                        error=f"Superseded by {newer.name} ({newer.id})",
                        created_at=now,
                        last_activity_at=now,
                        ended_at=now,
                    )
                )
                logger.info(
                    "Run %s of %s superseded before start by event %s",
                    run_id,
                    fn.id,
                    newer.id,
                )
                return True
            created = await self._store.create_run(
                Run(
                    run_id=run_id,
                    function_id=fn.id,
                    trigger=event,
                    created_at=now,
                    last_activity_at=now,
                )
            )
            if created:
                logger.info("Run %s of %s created for event %s", run_id, fn.id, event.id)
            run = await self._store.get_run(run_id)
            if run is None:
                return True
        if run.status is not RunStatus.PENDING:
            return True
        return await self._admit(fn, event, run_id)

    async def _admit(self, fn: FunctionDefinition, event: Event, run_id: str) -> bool:
        admission = await self._controller.admit(fn, event, run_id)
        if isinstance(admission, Deferred):
            await self._controller.defer(fn, event, admission)
            logger.info(
                "Run %s of %s deferred (%s)", run_id, fn.id, admission.reason.value
            )
            return False
        moved = await self._store.transition_run(
            run_id,
            RunStatus.RUNNING,
            self._clock.now(),
            from_statuses=[RunStatus.PENDING],
        )
        if not moved:
            # Another admission of this run won; its lease shares our slot key.
            if admission.slot is not None:
                current = await self._store.get_run(run_id)
                if current is None or current.status.is_terminal:
                    await self._release(fn.id, run_id)
            return True
        self._spawn(fn, run_id)
        return True

    async def _find_superseding(
        self, fn: FunctionDefinition, event: Event
    ) -> Event | None:
        """A logged event that would have cancelled a run for ``event``.

        Covers out-of-order delivery: the newer request was handled first,
        so this older one must not start.
        """
        for rule in fn.cancel_on:
            for stored in await self._store.list_events(
                rule.event, limit=self._supersession_scan
            ):
                other = stored.event
                if other.occurred_at > event.occurred_at and rule.matches(other, event):
                    return other
        return None

    async def _start_deferred(self, entry: DeferredAdmission) -> bool:
        try:
            fn = self._registry.get(entry.function_id)
        except KeyError:
            logger.warning(
                "Dropping queued admission for unknown function %s", entry.function_id
            )
            return True
        event = await self._store.get_event(entry.event_id)
        if event is None:
            logger.warning(
                "Dropping queued admission of %s: event %s not found",
                entry.function_id,
                entry.event_id,
            )
            return True
        return await self._start(fn, event)

    async def drain(self, function_id: str | None = None) -> int:
        """Admit queued runs that can now start."""
        return await self._controller.drain(self._start_deferred, function_id)

    async def _release(self, function_id: str, run_id: str) -> None:
        if await self._controller.release(function_id, run_id):
            await self.drain(function_id)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_matching(self, fn: FunctionDefinition, incoming: Event) -> list[str]:
        """Cancel strictly older non-terminal runs that ``incoming`` supersedes."""
        rules = [rule for rule in fn.cancel_on if rule.event == incoming.name]
        if not rules:
            return []
        cancelled = []
        for run in await self._active_runs(fn.id):
            if run.trigger.occurred_at >= incoming.occurred_at:
                continue
            if any(rule.matches(incoming, run.trigger) for rule in rules):
                reason = f"Cancelled by {incoming.name} ({incoming.id})"
                if await self.cancel_run(run.run_id, reason):
                    cancelled.append(run.run_id)
        return cancelled

    async def _active_runs(self, function_id: str) -> list[Run]:
        """Every non-terminal run of ``function_id``, read page by page.

        All pages are read before anything is cancelled, since cancelling
        shifts the offsets of the remaining active runs.
        """
        runs: dict[str, Run] = {}
        offset = 0
        while True:
            batch = await self._store.list_runs(
                function_id,
                statuses=ACTIVE_STATUSES,
                limit=self._page_size,
                offset=offset,
            )
            for run in batch:
                runs.setdefault(run.run_id, run)
            if len(batch) < self._page_size:
                return list(runs.values())
            offset += self._page_size

    async def cancel_run(self, run_id: str, reason: str = "Cancelled") -> bool:
        """Move a non-terminal run to Cancelled and free what it holds.

        Steps that already succeeded are not rolled back.
        """
        run = await self._store.get_run(run_id)
        if run is None:
            return False
        moved = await self._store.transition_run(
            run_id, RunStatus.CANCELLED, self._clock.now(), error=reason
        )
        if not moved:
            return False
        await self._store.delete_sleep_marker(run_id)
        await self._controller.dequeue(run.function_id, run.trigger.id)
        token = self._tokens.get(run_id)
        if token is not None:
            token.cancel(reason)
        logger.info("Run %s of %s cancelled: %s", run_id, run.function_id, reason)
        await self._release(run.function_id, run_id)
        return True

    # ------------------------------------------------------------------
    # Sleeping and resuming
    # ------------------------------------------------------------------

    async def sleep_until(
        self,
        run: Run,
        fn: FunctionDefinition,
        wake_at: datetime,
        index: int,
        reason: SleepReason = SleepReason.SLEEP,
    ) -> bool:
        """Persist a SleepMarker and hand control back; no task waits."""
        await self._store.put_sleep_marker(
            SleepMarker(
                run_id=run.run_id,
                wake_at=wake_at,
                resume_step_index=index,
                reason=reason,
            )
        )
        moved = await self._store.transition_run(
            run.run_id,
            RunStatus.SLEEPING,
            self._clock.now(),
            from_statuses=[RunStatus.RUNNING],
        )
        if not moved:
            await self._store.delete_sleep_marker(run.run_id)
            return False
        if fn.concurrency_limit is not None:
            await self._controller.renew(fn.id, run.run_id, until=wake_at)
        logger.info(
            "Run %s sleeping until %s (%s)",
            run.run_id,
            wake_at.isoformat(),
            reason.value,
        )
        return True

    async def resume_run(self, run_id: str) -> bool:
        """Wake a Sleeping run and continue driving it."""
        run = await self._store.get_run(run_id)
        if run is None or run.status.is_terminal:
            await self._store.delete_sleep_marker(run_id)
            return False
        if run.status is not RunStatus.SLEEPING:
            return False
        fn = self._registry.get(run.function_id)
        if fn.concurrency_limit is not None:
            held = await self._controller.acquire(fn, run_id)
            if isinstance(held, Deferred):
                logger.warning("Run %s cannot resume: its slot was lost", run_id)
                return False
        moved = await self._store.transition_run(
            run_id,
            RunStatus.RUNNING,
            self._clock.now(),
            from_statuses=[RunStatus.SLEEPING],
        )
        if not moved:
            return False
        await self._store.delete_sleep_marker(run_id)
        logger.debug("Run %s resumed", run_id)
        self._spawn(fn, run_id)
        return True

    async def wake_run(self, run_id: str) -> bool:
        """Finish a Sleeping run's pending sleep now and resume it."""
        run = await self._store.get_run(run_id)
        if run is None or run.status is not RunStatus.SLEEPING:
            return False
        now = self._clock.now()
        for record in await self._store.list_steps(run_id):
            if record.status is StepStatus.PENDING and record.wake_at is not None:
                await self._store.save_step_attempt(
                    dataclasses.replace(record, wake_at=min(record.wake_at, now))
                )
        marker = await self._store.get_sleep_marker(run_id)
        if marker is not None:
            await self._store.put_sleep_marker(dataclasses.replace(marker, wake_at=now))
        return await self.resume_run(run_id)

    async def recover_run(self, run_id: str) -> bool:
        """Restart driving a Running run whose task was lost (crash)."""
        if self.is_live(run_id):
            return False
        run = await self._store.get_run(run_id)
        if run is None or run.status is not RunStatus.RUNNING:
            return False
        fn = self._registry.get(run.function_id)
        if fn.concurrency_limit is not None:
            held = await self._controller.acquire(fn, run_id)
            if isinstance(held, Deferred):
                return False
        await self._store.touch_run(run_id, self._clock.now())
        logger.warning("Recovering run %s of %s", run_id, fn.id)
        self._spawn(fn, run_id)
        return True

    # ------------------------------------------------------------------
    # Live task bookkeeping
    # ------------------------------------------------------------------

    def is_live(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    def live_runs(self) -> list[tuple[str, str]]:
        """(function_id, run_id) for every run driven by this process."""
        return [
            (self._owners[run_id], run_id)
            for run_id in list(self._tasks)
            if self.is_live(run_id)
        ]

    def _spawn(self, fn: FunctionDefinition, run_id: str) -> None:
        if self.is_live(run_id):
            return
        token = CancellationToken()
        task = asyncio.create_task(
            self._drive(fn, run_id, token), name=f"justflow-run-{run_id[:8]}"
        )
        self._tasks[run_id] = task
        self._tokens[run_id] = token
        self._owners[run_id] = fn.id
        task.add_done_callback(lambda _t, rid=run_id: self._forget(rid, _t))

    def _forget(self, run_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(run_id) is task:
            self._tasks.pop(run_id, None)
            self._tokens.pop(run_id, None)
            self._owners.pop(run_id, None)

    async def wait_idle(self) -> None:
        """Wait until no run is being driven by this process."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop driving runs. Running runs are picked up again on recovery."""
        for token in self._tokens.values():
            token.cancel("Worker shutting down")
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Driving a run
    # ------------------------------------------------------------------

    async def _drive(
        self, fn: FunctionDefinition, run_id: str, token: CancellationToken
    ) -> None:
        try:
            await self._drive_plan(fn, run_id, token)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Storage or engine failure: the run stays Running and the reaper
            # recovers it once it goes stale.
            logger.exception("Driving run %s of %s crashed", run_id, fn.id)

    async def _drive_plan(
        self, fn: FunctionDefinition, run_id: str, token: CancellationToken
    ) -> None:
        plan: list[PlanNode] = list(fn.steps)
        results: dict[str, Any] = {}
        last: Any = None
        index = 0
        while index < len(plan):
            run = await self._store.get_run(run_id)
            if run is None or run.status is not RunStatus.RUNNING:
                return
            if token.is_cancelled():
                return

            node = plan[index]
            if isinstance(node, ParallelGroup):
                outcome = await self._execute_group(run, fn, node, index, results, token)
            else:
                outcome = await self.execute_step(run, fn, node, index, results, token)

            if isinstance(outcome, StepSleep):
                await self.sleep_until(run, fn, outcome.wake_at, index, outcome.reason)
                return
            if isinstance(outcome, StepFailed):
                await self._fail(run, fn, outcome)
                return
            if isinstance(outcome, StepCancelled):
                logger.info("Run %s stopped at '%s': %s", run_id, node.name, outcome.reason)
                return

            results[node.name] = outcome.result
            if isinstance(node, ParallelGroup) and isinstance(outcome.result, dict):
                results.update(outcome.result)
            last = outcome.result
            if outcome.stop:
                await self._complete(run, fn, outcome.result)
                return

            if isinstance(node, StepSpec) and node.then is not None:
                try:
                    expansion = list(node.then(outcome.result) or [])
                    candidate = plan[: index + 1] + expansion + plan[index + 1 :]
                    check_unique_names(fn.id, candidate)
                except Exception as exc:
                    await self._fail(
                        run, fn, StepFailed(exc, classify(exc), node.name)
                    )
                    return
                plan = candidate
            index += 1

        run = await self._store.get_run(run_id)
        if run is not None and run.status is RunStatus.RUNNING:
            await self._complete(run, fn, last)

    async def execute_step(
        self,
        run: Run,
        fn: FunctionDefinition,
        spec: StepSpec,
        index: int,
        results: dict[str, Any],
        token: CancellationToken,
        *,
        advance: bool = True,
    ) -> StepOutcome:
        """Execute one step, or return its memoized result."""
        record = await self._store.get_step(run.run_id, spec.name)
        if record is not None and record.status is StepStatus.SUCCEEDED:
            return StepDone(record.result, stop=record.control == "stop")

        if spec.kind is StepKind.SLEEP:
            return await self._execute_sleep(run, fn, spec, index, record, results, token)

        attempt = 1
        if record is not None and record.status is StepStatus.FAILED:
            attempt = record.attempt + 1
        now = self._clock.now()
        ctx = StepContext(
            run_id=run.run_id,
            function_id=fn.id,
            step_name=spec.name,
            event=run.trigger,
            attempt=attempt,
            now=now,
            results=MappingProxyType(dict(results)),
            cancel=token,
        )
        await self._store.touch_run(run.run_id, now, attempt=attempt)

        start = time.perf_counter()
        try:
            value = await self._invoke(spec, ctx)
            if spec.kind is StepKind.EMIT:
                value = await self._publish(run, spec, value)
        except RunCancelled as exc:
            return StepCancelled(str(exc))
        except Exception as exc:
            return await self._step_error(run, fn, spec, exc, attempt)
        finally:
            elapsed = time.perf_counter() - start
            logger.debug("Step '%s' took %.4fs", spec.name, elapsed)

        stop = isinstance(value, Stop)
        stored = await self._store.complete_step(
            StepRecord(
                run_id=run.run_id,
                step_name=spec.name,
                status=StepStatus.SUCCEEDED,
                result=value.output if stop else value,
                attempt=attempt,
                control="stop" if stop else None,
            ),
            index + 1 if advance else None,
            self._clock.now(),
        )
        return StepDone(stored.result, stop=stored.control == "stop")

    async def _execute_sleep(
        self,
        run: Run,
        fn: FunctionDefinition,
        spec: StepSpec,
        index: int,
        record: StepRecord | None,
        results: dict[str, Any],
        token: CancellationToken,
    ) -> StepOutcome:
        now = self._clock.now()
        if record is not None and record.status is StepStatus.PENDING:
            wake_at = record.wake_at
            attempt = record.attempt
        else:
            attempt = record.attempt + 1 if record is not None else 1
            ctx = StepContext(
                run_id=run.run_id,
                function_id=fn.id,
                step_name=spec.name,
                event=run.trigger,
                attempt=attempt,
                now=now,
                results=MappingProxyType(dict(results)),
                cancel=token,
            )
            try:
                wake_at = parse_wake_time(await self._invoke(spec, ctx), now)
            except RunCancelled as exc:
                return StepCancelled(str(exc))
            except Exception as exc:
                return await self._step_error(run, fn, spec, exc, attempt)
            if wake_at is not None and wake_at > now:
                await self._store.save_step_attempt(
                    StepRecord(
                        run_id=run.run_id,
                        step_name=spec.name,
                        status=StepStatus.PENDING,
                        attempt=attempt,
                        wake_at=wake_at,
                    )
                )

        if wake_at is not None and wake_at > now:
            return StepSleep(wake_at, SleepReason.SLEEP)

        stored = await self._store.complete_step(
            StepRecord(
                run_id=run.run_id,
                step_name=spec.name,
                status=StepStatus.SUCCEEDED,
                result=wake_at.isoformat() if wake_at is not None else None,
                attempt=attempt,
                wake_at=wake_at,
            ),
            index + 1,
            now,
        )
        return StepDone(stored.result)

    async def _execute_group(
        self,
        run: Run,
        fn: FunctionDefinition,
        group: ParallelGroup,
        index: int,
        results: dict[str, Any],
        token: CancellationToken,
    ) -> StepOutcome:
        record = await self._store.get_step(run.run_id, group.name)
        if record is not None and record.status is StepStatus.SUCCEEDED:
            return StepDone(record.result)

        outcomes = await asyncio.gather(
            *(
                self.execute_step(run, fn, member, index, results, token, advance=False)
                for member in group.steps
            )
        )
        for outcome in outcomes:
            if isinstance(outcome, (StepFailed, StepCancelled)):
                return outcome
        sleeps = [o for o in outcomes if isinstance(o, StepSleep)]
        if sleeps:
            return StepSleep(max(s.wake_at for s in sleeps), SleepReason.RETRY)

        group_result = {
            member.name: outcome.result
            for member, outcome in zip(group.steps, outcomes)
            if isinstance(outcome, StepDone)
        }
        stored = await self._store.complete_step(
            StepRecord(
                run_id=run.run_id,
                step_name=group.name,
                status=StepStatus.SUCCEEDED,
                result=group_result,
            ),
            index + 1,
            self._clock.now(),
        )
        return StepDone(stored.result)

    async def _invoke(self, spec: StepSpec, ctx: StepContext) -> Any:
        async def _exec() -> Any:
            out = spec.fn(ctx)
            if inspect.isawaitable(out):
                out = await out
            return out

        if spec.timeout:
            try:
                return await asyncio.wait_for(_exec(), timeout=spec.timeout)
            except (asyncio.TimeoutError, TimeoutError):
                raise TimeoutError(
                    f"Step '{spec.name}' timed out after {spec.timeout}s"
                ) from None
        return await _exec()

    async def _publish(self, run: Run, spec: StepSpec, value: Any) -> Any:
        """Publish what an emit step returned; ids are derived from the step."""
        if value is None:
            return None
        items = list(value) if isinstance(value, (list, tuple)) else [value]
        ids: list[str] = []
        for n, item in enumerate(items):
            if isinstance(item, (EmitEvent, Event)):
                name, data = item.name, item.data
            elif isinstance(item, dict) and "name" in item:
                name, data = item["name"], item.get("data") or {}
            else:
                raise TypeError(
                    f"Emit step '{spec.name}' returned {type(item).__name__}; "
                    "expected EmitEvent"
                )
            key = spec.name if len(items) == 1 else f"{spec.name}:{n}"
            ids.append(
                await self._bus.publish(
                    name, data, id=derive_event_id(run.run_id, key)
                )
            )
        return ids[0] if len(ids) == 1 else ids

    async def _step_error(
        self,
        run: Run,
        fn: FunctionDefinition,
        spec: StepSpec,
        error: Exception,
        attempt: int,
    ) -> StepOutcome:
        self._retry.log_step_error(run, spec.name, error, attempt)
        policy = spec.retry or fn.retry
        decision = self._retry.decide(policy, error, attempt)
        await self._store.save_step_attempt(
            StepRecord(
                run_id=run.run_id,
                step_name=spec.name,
                status=StepStatus.FAILED,
                error=describe(error),
                attempt=attempt,
            )
        )
        if isinstance(decision, FailDecision):
            return StepFailed(error, decision.kind, spec.name)
        wake_at = self._clock.now() + timedelta(seconds=decision.delay)
        logger.info(
            "Retrying step '%s' of run %s as attempt %d in %.1fs",
            spec.name,
            run.run_id,
            decision.next_attempt,
            decision.delay,
        )
        return StepSleep(wake_at, SleepReason.RETRY)

    async def _complete(self, run: Run, fn: FunctionDefinition, output: Any) -> None:
        moved = await self._store.transition_run(
            run.run_id,
            RunStatus.COMPLETED,
            self._clock.now(),
            from_statuses=[RunStatus.RUNNING],
            output=output,
        )
        if moved:
            logger.info("Run %s of %s completed", run.run_id, fn.id)
        await self._release(fn.id, run.run_id)

    async def _fail(self, run: Run, fn: FunctionDefinition, outcome: StepFailed) -> None:
        async def release() -> None:
            await self._release(fn.id, run.run_id)

        moved = await self._retry.fail_run(
            run,
            fn,
            outcome.error,
            outcome.kind,
            failed_step=outcome.step_name,
            on_terminal=release,
        )
        if not moved:
            await release()
