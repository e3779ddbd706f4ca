"""Time-based reaper: wakes sleeping runs and recovers from crashes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from justflow._internal.clock import Clock, SystemClock
from justflow.bus import EventBus
from justflow.checkpoint import CheckpointStore
from justflow.controller import ConcurrencyController
from justflow.registry import FunctionRegistry
from justflow.retry import RetryHandler
from justflow.scheduler import RunScheduler

logger = logging.getLogger("justflow.reaper")


@dataclass(frozen=True)
class ReaperStats:
    resumed: int = 0
    reclaimed: int = 0
    recovered: int = 0
    admitted: int = 0
    redelivered: int = 0
    hooks: int = 0

    @property
    def total(self) -> int:
        return (
            self.resumed
            + self.reclaimed
            + self.recovered
            + self.admitted
            + self.redelivered
            + self.hooks
        )


class Reaper:
    """One ``tick`` performs every time-driven duty of the engine:

    - resume runs whose SleepMarker is due
    - reclaim slot leases that were not renewed in time
    - restart Running runs that went stale (their worker died)
    - admit queued runs whose deferral elapsed
    - re-enqueue events that were never marked delivered
    - re-run failure hooks that never completed
    """

    def __init__(
        self,
        store: CheckpointStore,
        bus: EventBus,
        registry: FunctionRegistry,
        controller: ConcurrencyController,
        scheduler: RunScheduler,
        retry_handler: RetryHandler,
        *,
        clock: Clock | None = None,
        liveness_window: float = 300.0,
        batch_size: int = 100,
    ) -> None:
        self._store = store
        self._bus = bus
        self._registry = registry
        self._controller = controller
        self._scheduler = scheduler
        self._retry = retry_handler
        self._clock = clock or SystemClock()
        self._liveness_window = liveness_window
        self._batch_size = batch_size

    async def resume_due(self) -> int:
        resumed = 0
        for marker in await self._store.due_sleep_markers(
            self._clock.now(), self._batch_size
        ):
            if await self._scheduler.resume_run(marker.run_id):
                resumed += 1
        return resumed

    async def reclaim_slots(self) -> int:
        reclaimed = await self._controller.reclaim_expired()
        for function_id in sorted({fid for fid, _ in reclaimed}):
            await self._scheduler.drain(function_id)
        return len(reclaimed)

    async def recover_stale(self) -> int:
        cutoff = self._clock.now() - timedelta(seconds=self._liveness_window)
        recovered = 0
        for run in await self._store.stale_runs(cutoff, self._batch_size):
            if self._scheduler.is_live(run.run_id):
                continue
            if await self._scheduler.recover_run(run.run_id):
                recovered += 1
        return recovered

    async def tick(self) -> ReaperStats:
        stats = ReaperStats(
            resumed=await self.resume_due(),
            reclaimed=await self.reclaim_slots(),
            recovered=await self.recover_stale(),
            admitted=await self._scheduler.drain(),
            redelivered=await self._bus.recover(self._batch_size),
            hooks=await self._retry.pending_failure_hooks(
                {fn.id: fn for fn in self._registry.functions()}
            ),
        )
        if stats.total:
            logger.debug("Reaper tick: %s", stats)
        return stats
