"""Concurrency and throttle admission control."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from justflow._internal.clock import Clock, SystemClock
from justflow.checkpoint import CheckpointStore
from justflow.types import (
    Admission,
    Admitted,
    Allowed,
    DeferReason,
    Deferred,
    DeferredAdmission,
    Event,
    FunctionDefinition,
    Rejected,
    Slot,
    ThrottleResult,
    resolve_path,
)

logger = logging.getLogger("justflow.controller")


def throttle_key(fn: FunctionDefinition, event: Event) -> str | None:
    """Bucket key for ``event`` under ``fn``'s throttle, or None if unthrottled."""
    if fn.throttle is None:
        return None
    value = resolve_path(event, fn.throttle.key)
    return f"{fn.id}:{'' if value is None else value}"


class ConcurrencyController:
    """Grants slot leases and enforces per-key throttle windows.

    A slot is a lease that expires ``liveness_window`` seconds after it was
    last renewed, so a crashed worker cannot hold a slot forever. Admissions
    that are rejected are queued durably, never dropped, and do not consume
    a retry attempt.
    """

    def __init__(
        self,
        store: CheckpointStore,
        *,
        clock: Clock | None = None,
        liveness_window: float = 300.0,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self.liveness_window = liveness_window

    def lease_until(self, at: datetime | None = None) -> datetime:
        base = at if at is not None else self._clock.now()
        return base + timedelta(seconds=self.liveness_window)

    async def acquire(self, fn: FunctionDefinition, run_id: str) -> Slot | Deferred:
        """Take a slot for ``run_id``. Re-acquiring a held slot renews it."""
        now = self._clock.now()
        expires_at = self.lease_until(now)
        granted = await self._store.acquire_slot(
            fn.id, run_id, fn.concurrency_limit, expires_at, now
        )
        if not granted:
            logger.debug(
                "No slot for %s (limit %s), run %s deferred",
                fn.id,
                fn.concurrency_limit,
                run_id,
            )
            return Deferred(DeferReason.CONCURRENCY)
        return Slot(fn.id, run_id, expires_at)

    async def release(self, function_id: str, run_id: str) -> bool:
        released = await self._store.release_slot(function_id, run_id)
        if released:
            logger.debug("Released slot %s/%s", function_id, run_id)
        return released

    async def renew(
        self, function_id: str, run_id: str, until: datetime | None = None
    ) -> bool:
        """Extend a lease to ``until`` plus the liveness window."""
        return await self._store.renew_slot(
            function_id, run_id, self.lease_until(until)
        )

    async def active_count(self, function_id: str) -> int:
        return await self._store.count_slots(function_id, self._clock.now())

    async def throttle_check(self, key: str, limit: int, period: float) -> ThrottleResult:
        """Sliding-window check; records a hit when allowed."""
        hint = await self._store.throttle_hit(key, limit, period, self._clock.now())
        if hint is None:
            return Allowed()
        return Rejected(backoff_hint=hint)

    async def admit(self, fn: FunctionDefinition, event: Event, run_id: str) -> Admission:
        """Combine the concurrency and throttle checks for a new run.

        The slot is taken first; if the throttle then rejects, the slot is
        handed back so a throttled run never blocks other keys.
        """
        slot: Slot | None = None
        if fn.concurrency_limit is not None:
            acquired = await self.acquire(fn, run_id)
            if isinstance(acquired, Deferred):
                return acquired
            slot = acquired

        key = throttle_key(fn, event)
        if key is not None and fn.throttle is not None:
            verdict = await self.throttle_check(key, fn.throttle.limit, fn.throttle.period)
            if isinstance(verdict, Rejected):
                if slot is not None:
                    await self.release(fn.id, run_id)
                logger.info(
                    "Throttled %s for key %s, retry in %.1fs",
                    fn.id,
                    key,
                    verdict.backoff_hint,
                )
                return Deferred(DeferReason.THROTTLE, verdict.backoff_hint)

        return Admitted(slot)

    async def defer(self, fn: FunctionDefinition, event: Event, deferred: Deferred) -> bool:
        """Queue an admission to be retried once capacity allows."""
        now = self._clock.now()
        return await self._store.defer(
            DeferredAdmission(
                function_id=fn.id,
                event_id=event.id,
                not_before=now + timedelta(seconds=deferred.retry_after),
                reason=deferred.reason,
                created_at=now,
            )
        )

    async def due(
        self, function_id: str | None = None, limit: int = 100
    ) -> list[DeferredAdmission]:
        """Queued admissions whose ``not_before`` has passed, oldest first."""
        return await self._store.due_deferred(self._clock.now(), function_id, limit)

    async def dequeue(self, function_id: str, event_id: str) -> bool:
        return await self._store.remove_deferred(function_id, event_id)

    async def queued(self, function_id: str | None = None) -> list[DeferredAdmission]:
        return await self._store.list_deferred(function_id)

    async def drain(
        self,
        start: Callable[[DeferredAdmission], Awaitable[bool]],
        function_id: str | None = None,
        limit: int = 100,
    ) -> int:
        """Retry due queued admissions in FIFO order.

        ``start`` re-runs admission for one entry and returns True when the
        run was admitted (or no longer needs admitting). A concurrency
        deferral stops draining that function, since no slot is free; a
        throttle deferral only skips its own entry.
        """
        started = 0
        blocked: set[str] = set()
        for entry in await self.due(function_id, limit):
            if entry.function_id in blocked:
                continue
            if await start(entry):
                await self.dequeue(entry.function_id, entry.event_id)
                started += 1
                continue
            refreshed = [
                q
                for q in await self.queued(entry.function_id)
                if q.event_id == entry.event_id
            ]
            if refreshed and refreshed[0].reason is DeferReason.CONCURRENCY:
                blocked.add(entry.function_id)
        return started

    async def reclaim_expired(self) -> list[tuple[str, str]]:
        reclaimed = await self._store.reclaim_expired_slots(self._clock.now())
        for function_id, run_id in reclaimed:
            logger.warning("Reclaimed expired slot %s/%s", function_id, run_id)
        return reclaimed
