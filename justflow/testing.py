import asyncio
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from justflow.checkpoint import CheckpointStore
from justflow.config import FlowConfig
from justflow.events import EventSchemas
from justflow.registry import FunctionRegistry
from justflow.scheduler import RunScheduler
from justflow.storage.interface import StoredEvent
from justflow.storage.memory import InMemoryBackend
from justflow.types import Run, RunStatus, StepRecord, StepStatus
from justflow.worker import Worker


class FakeClock:
    """Manually advanced clock. ``sleep`` moves time instead of waiting."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float | timedelta) -> datetime:
        delta = seconds if isinstance(seconds, timedelta) else timedelta(seconds=seconds)
        self._now += delta
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when

    async def sleep(self, seconds: float) -> None:
        self.advance(max(seconds, 0.0))
        await asyncio.sleep(0)


class TestFlow:
    """
    A testing harness for justflow functions.
    Runs a worker over in-memory storage with a fake clock, so durable
    sleeps, retries and throttle windows can be driven step by step.
    """

    __test__ = False

    def __init__(
        self,
        registry: FunctionRegistry,
        *,
        clock: FakeClock | None = None,
        schemas: EventSchemas | None = None,
        config: FlowConfig | None = None,
    ) -> None:
        self.clock = clock or FakeClock()
        self.backend = InMemoryBackend()
        self.worker = Worker(
            registry,
            backend=self.backend,
            config=config or FlowConfig(),
            clock=self.clock,
            schemas=schemas,
        )

    @property
    def store(self) -> CheckpointStore:
        return self.worker.store

    @property
    def scheduler(self) -> RunScheduler:
        return self.worker.scheduler

    async def send(
        self, name: str, data: Mapping[str, Any] | None = None, **kwargs: Any
    ) -> str:
        """Publish an event and process everything it triggers."""
        event_id = await self.worker.publish(name, data, **kwargs)
        await self.worker.drain()
        return event_id

    async def advance(self, seconds: float | timedelta) -> None:
        """Move the clock forward and process whatever became due."""
        self.clock.advance(seconds)
        await self.worker.drain()

    async def next_due(self, after: datetime | None = None) -> datetime | None:
        """Earliest wake-up or queued admission time, optionally after ``after``."""
        horizon = datetime.max.replace(tzinfo=timezone.utc)
        markers = await self.store.due_sleep_markers(horizon, 10_000)
        times = [m.wake_at for m in markers]
        times += [d.not_before for d in await self.store.list_deferred()]
        if after is not None:
            times = [t for t in times if t > after]
        return min(times) if times else None

    async def advance_until_settled(
        self, limit: float = 7 * 24 * 3600.0, max_jumps: int = 10_000
    ) -> None:
        """Jump the clock from one due time to the next until runs settle."""
        await self.worker.drain()
        deadline = self.clock.now() + timedelta(seconds=limit)
        for _ in range(max_jumps):
            active = await self.store.list_runs(
                statuses=[RunStatus.SLEEPING, RunStatus.PENDING, RunStatus.RUNNING]
            )
            if not active:
                return
            due = await self.next_due(after=self.clock.now())
            if due is None or due > deadline:
                return
            self.clock.set(due)
            await self.worker.drain()

    async def drain(self) -> None:
        await self.worker.drain()

    async def runs(self, function_id: str | None = None) -> list[Run]:
        runs = await self.store.list_runs(function_id, limit=10_000)
        return sorted(runs, key=lambda r: r.created_at)

    async def run_for(self, function_id: str, event_id: str) -> Run:
        from justflow._internal.utils import derive_run_id

        run = await self.store.get_run(derive_run_id(function_id, event_id))
        if run is None:
            raise LookupError(f"No run of {function_id} for event {event_id}")
        return run

    async def steps(self, run_id: str) -> list[StepRecord]:
        return await self.store.list_steps(run_id)

    async def succeeded_steps(self, run_id: str) -> list[str]:
        return [
            r.step_name
            for r in await self.store.list_steps(run_id)
            if r.status is StepStatus.SUCCEEDED
        ]

    async def events(self, name: str | None = None) -> list[StoredEvent]:
        stored = await self.store.list_events(name, limit=10_000)
        return sorted(stored, key=lambda e: e.seq)
