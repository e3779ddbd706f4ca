"""Async checkpoint store over a synchronous StorageBackend.

Backends are plain blocking code (sqlite3, dicts under a lock); every call
is pushed to a worker thread with ``asyncio.to_thread`` so the event loop
keeps driving other runs while a write is in flight.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Collection
from datetime import datetime
from typing import Any, Callable, TypeVar

from justflow.storage.interface import StorageBackend, StoredEvent
from justflow.types import (
    DeferredAdmission,
    Event,
    Run,
    RunStatus,
    SleepMarker,
    StepRecord,
)

T = TypeVar("T")


class CheckpointStore:
    """Durable state for runs, steps, sleeps, slots and the event log."""

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if kwargs:
            return await asyncio.to_thread(functools.partial(fn, *args, **kwargs))
        return await asyncio.to_thread(fn, *args)

    # -- event log ---------------------------------------------------------

    async def append_event(self, event: Event, now: datetime) -> bool:
        return await self._call(self._backend.append_event, event, now)

    async def get_event(self, event_id: str) -> Event | None:
        return await self._call(self._backend.get_event, event_id)

    async def list_events(
        self, name: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[StoredEvent]:
        return await self._call(self._backend.list_events, name, limit, offset)

    async def mark_delivered(self, event_id: str) -> None:
        await self._call(self._backend.mark_delivered, event_id)

    async def undelivered_events(self, limit: int = 100) -> list[Event]:
        return await self._call(self._backend.undelivered_events, limit)

    # -- runs --------------------------------------------------------------

    async def create_run(self, run: Run) -> bool:
        return await self._call(self._backend.create_run, run)

    async def get_run(self, run_id: str) -> Run | None:
        return await self._call(self._backend.get_run, run_id)

    async def list_runs(
        self,
        function_id: str | None = None,
        statuses: Collection[RunStatus] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Run]:
        return await self._call(
            self._backend.list_runs, function_id, statuses, limit, offset
        )

    async def find_runs_by_prefix(self, prefix: str, limit: int = 10) -> list[Run]:
        return await self._call(self._backend.find_runs_by_prefix, prefix, limit)

    async def transition_run(
        self,
        run_id: str,
        to: RunStatus,
        now: datetime,
        *,
        from_statuses: Collection[RunStatus] | None = None,
        **fields: Any,
    ) -> bool:
        """Compare-and-set the run status.

        Returns False when the run is missing or not in ``from_statuses``
        (by default any non-terminal status), so a terminal status is never
        overwritten.
        """
        return await self._call(
            self._backend.transition_run,
            run_id,
            to,
            now,
            from_statuses=from_statuses,
            fields=fields or None,
        )

    async def touch_run(
        self, run_id: str, now: datetime, attempt: int | None = None
    ) -> None:
        await self._call(self._backend.touch_run, run_id, now, attempt)

    async def stale_runs(self, older_than: datetime, limit: int = 100) -> list[Run]:
        return await self._call(self._backend.stale_runs, older_than, limit)

    # -- step checkpoints --------------------------------------------------

    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        return await self._call(self._backend.get_step, run_id, step_name)

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        return await self._call(self._backend.list_steps, run_id)

    async def save_step_attempt(self, record: StepRecord) -> bool:
        """Record a non-final attempt (failure or pending sleep)."""
        return await self._call(self._backend.save_step, record)

    async def complete_step(
        self, record: StepRecord, next_index: int | None, now: datetime
    ) -> StepRecord:
        """Persist a SUCCEEDED record and advance the run in one transaction.

        A record that already succeeded is returned unchanged.
        """
        return await self._call(self._backend.complete_step, record, next_index, now)

    # -- sleep markers -----------------------------------------------------

    async def put_sleep_marker(self, marker: SleepMarker) -> None:
        await self._call(self._backend.put_sleep_marker, marker)

    async def get_sleep_marker(self, run_id: str) -> SleepMarker | None:
        return await self._call(self._backend.get_sleep_marker, run_id)

    async def delete_sleep_marker(self, run_id: str) -> bool:
        return await self._call(self._backend.delete_sleep_marker, run_id)

    async def due_sleep_markers(
        self, now: datetime, limit: int = 100
    ) -> list[SleepMarker]:
        return await self._call(self._backend.due_sleep_markers, now, limit)

    # -- concurrency slots -------------------------------------------------

    async def acquire_slot(
        self,
        function_id: str,
        run_id: str,
        limit: int | None,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        return await self._call(
            self._backend.acquire_slot, function_id, run_id, limit, expires_at, now
        )

    async def renew_slot(
        self, function_id: str, run_id: str, expires_at: datetime
    ) -> bool:
        return await self._call(
            self._backend.renew_slot, function_id, run_id, expires_at
        )

    async def release_slot(self, function_id: str, run_id: str) -> bool:
        return await self._call(self._backend.release_slot, function_id, run_id)

    async def count_slots(self, function_id: str, now: datetime) -> int:
        return await self._call(self._backend.count_slots, function_id, now)

    async def reclaim_expired_slots(self, now: datetime) -> list[tuple[str, str]]:
        return await self._call(self._backend.reclaim_expired_slots, now)

    # -- throttle ----------------------------------------------------------

    async def throttle_hit(
        self, key: str, limit: int, period: float, now: datetime
    ) -> float | None:
        return await self._call(self._backend.throttle_hit, key, limit, period, now)

    # -- deferred admissions -----------------------------------------------

    async def defer(self, admission: DeferredAdmission) -> bool:
        return await self._call(self._backend.defer, admission)

    async def due_deferred(
        self, now: datetime, function_id: str | None = None, limit: int = 100
    ) -> list[DeferredAdmission]:
        return await self._call(self._backend.due_deferred, now, function_id, limit)

    async def remove_deferred(self, function_id: str, event_id: str) -> bool:
        return await self._call(self._backend.remove_deferred, function_id, event_id)

    async def list_deferred(
        self, function_id: str | None = None
    ) -> list[DeferredAdmission]:
        return await self._call(self._backend.list_deferred, function_id)
