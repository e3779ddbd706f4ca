"""Worker process: wires the engine together and drives it."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from justflow._internal.clock import Clock, SystemClock
from justflow.bus import EventBus
from justflow.checkpoint import CheckpointStore
from justflow.config import FlowConfig
from justflow.controller import ConcurrencyController
from justflow.events import EventSchemas
from justflow.reaper import Reaper, ReaperStats
from justflow.registry import FunctionRegistry
from justflow.retry import RetryHandler
from justflow.scheduler import RunScheduler
from justflow.storage.interface import StorageBackend
from justflow.storage.sqlite import SQLiteBackend

logger = logging.getLogger("justflow.worker")


class Worker:
    """Runs the functions of one registry against one checkpoint store.

    Example:
        registry = FunctionRegistry()
        ...  # declare functions
        worker = Worker(registry)
        await worker.publish("hello", {"message": "hi"})
        await worker.run_forever()
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        *,
        backend: StorageBackend | None = None,
        config: FlowConfig | None = None,
        clock: Clock | None = None,
        schemas: EventSchemas | None = None,
    ) -> None:
        self.config = config or FlowConfig.from_env()
        self.clock = clock or SystemClock()
        self.registry = registry.freeze()
        self.store = CheckpointStore(
            backend if backend is not None else SQLiteBackend(self.config.db_path)
        )
        self.bus = EventBus(self.store, schemas=schemas, clock=self.clock)
        self.controller = ConcurrencyController(
            self.store,
            clock=self.clock,
            liveness_window=self.config.liveness_window,
        )
        self.retry = RetryHandler(self.store, self.bus, clock=self.clock)
        self.scheduler = RunScheduler(
            self.store,
            self.registry,
            self.bus,
            self.controller,
            self.retry,
            clock=self.clock,
        )
        self.reaper = Reaper(
            self.store,
            self.bus,
            self.registry,
            self.controller,
            self.scheduler,
            self.retry,
            clock=self.clock,
            liveness_window=self.config.liveness_window,
        )
        self.registry.attach(self.bus, self.scheduler.handle_event)
        self._loop_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def publish(
        self, name: str, data: Mapping[str, Any] | None = None, **kwargs: Any
    ) -> str:
        """Publish an event; returns immediately with its id."""
        return await self.bus.publish(name, data, **kwargs)

    async def heartbeat(self) -> int:
        """Renew slot leases and activity of runs driven by this process."""
        now = self.clock.now()
        renewed = 0
        for function_id, run_id in self.scheduler.live_runs():
            await self.controller.renew(function_id, run_id)
            await self.store.touch_run(run_id, now)
            renewed += 1
        return renewed

    async def tick(self) -> ReaperStats:
        await self.heartbeat()
        return await self.reaper.tick()

    async def drain(self, max_rounds: int = 1000) -> None:
        """Process until quiescent: deliver events, finish live runs, reap.

        Used by tests and one-shot tooling; time does not advance here.
        """
        for _ in range(max_rounds):
            delivered = await self.bus.dispatch_pending()
            had_live = bool(self.scheduler.live_runs())
            await self.scheduler.wait_idle()
            stats = await self.reaper.tick()
            if not delivered and not had_live and not stats.total and not self.bus.pending_count:
                return
        logger.warning("drain() stopped after %d rounds without settling", max_rounds)

    async def start(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._stopping.clear()
        requeued = await self.bus.recover()
        logger.info(
            "Worker started with %d function(s), %d event(s) recovered",
            len(self.registry.functions()),
            requeued,
        )
        self._loop_task = asyncio.create_task(self._loop(), name="justflow-worker")

    async def _loop(self) -> None:
        interval = self.config.reaper_interval
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while not self._stopping.is_set():
            try:
                await self.bus.dispatch_pending()
                if loop.time() >= next_tick:
                    await self.tick()
                    next_tick = loop.time() + interval
            except Exception:
                logger.exception("Worker loop iteration failed")
            await self.bus.wait_for_events(timeout=max(next_tick - loop.time(), 0.0))

    async def stop(self) -> None:
        self._stopping.set()
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        await self.scheduler.shutdown()
        logger.info("Worker stopped")

    async def run_forever(self) -> None:
        await self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop()
