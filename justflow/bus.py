"""Durable, at-least-once event bus."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from tenacity import RetryCallState, wait_exponential
from tenacity.wait import wait_base

from justflow._internal.clock import Clock, SystemClock
from justflow.checkpoint import CheckpointStore
from justflow.events import EventSchemas, default_schemas
from justflow.types import Event, new_id

logger = logging.getLogger("justflow.bus")

EventHandler = Callable[[Event], Awaitable[None]]


def _redelivery_backoff() -> wait_base:
    return wait_exponential(multiplier=1, min=1, max=60)


class EventBus:
    """Publishes events durably and delivers them to subscribed handlers.

    ``publish`` validates the payload, appends the event to the durable log
    and queues it for delivery. Delivery happens in :meth:`dispatch_pending`
    (driven by the worker): an event is marked delivered only after every
    handler returned, so a crash or handler failure leaves it in the log for
    redelivery. Publishing an id that is already logged is a no-op.
    """

    def __init__(
        self,
        store: CheckpointStore,
        *,
        schemas: EventSchemas | None = None,
        clock: Clock | None = None,
        redelivery_backoff: wait_base | None = None,
    ) -> None:
        self._store = store
        self._schemas = schemas if schemas is not None else default_schemas()
        self._clock = clock or SystemClock()
        self._backoff = redelivery_backoff or _redelivery_backoff()
        self._subscribers: dict[str, list[EventHandler]] = {}
        self._queue: deque[Event] = deque()
        self._queued_ids: set[str] = set()
        self._failures: dict[str, int] = {}
        self._retry_at: dict[str, datetime] = {}
        self._wakeup = asyncio.Event()

    @property
    def schemas(self) -> EventSchemas:
        return self._schemas

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.setdefault(event_name, [])
        if handler not in handlers:
            handlers.append(handler)

    def subscribers(self, event_name: str) -> list[EventHandler]:
        return list(self._subscribers.get(event_name, ()))

    async def publish(
        self,
        name: str,
        data: Mapping[str, Any] | None = None,
        *,
        id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> str:
        """Validate, persist and enqueue an event. Returns the event id."""
        event = Event(
            name=name,
            data=dict(data or {}),
            id=id or new_id(),
            occurred_at=occurred_at or self._clock.now(),
        )
        return await self.publish_event(event)

    async def publish_event(self, event: Event) -> str:
        self._schemas.validate(event.name, event.data)
        created = await self._store.append_event(event, self._clock.now())
        if not created:
            logger.debug("Event %s (%s) already published", event.id, event.name)
            return event.id
        logger.info("Published %s (%s)", event.name, event.id)
        self._enqueue(event)
        return event.id

    def _enqueue(self, event: Event) -> None:
        if event.id in self._queued_ids:
            return
        self._queued_ids.add(event.id)
        self._queue.append(event)
        self._wakeup.set()

    async def wait_for_events(self, timeout: float | None = None) -> bool:
        """Block until something is queued. Returns False on timeout."""
        if self._queue:
            return True
        self._wakeup.clear()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def dispatch_pending(self) -> int:
        """Deliver every queued event. Returns the number delivered."""
        delivered = 0
        while self._queue:
            event = self._queue.popleft()
            self._queued_ids.discard(event.id)
            if await self._deliver(event):
                delivered += 1
        return delivered

    async def _deliver(self, event: Event) -> bool:
        for handler in self.subscribers(event.name):
            try:
                await handler(event)
            except Exception as exc:
                attempt = self._failures.get(event.id, 0) + 1
                self._failures[event.id] = attempt
                state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
                state.attempt_number = attempt
                delay = float(self._backoff(state))
                self._retry_at[event.id] = self._clock.now() + timedelta(seconds=delay)
                logger.error(
                    "Delivery of %s (%s) failed, retrying in %.1fs",
                    event.name,
                    event.id,
                    delay,
                    extra={
                        "event_id": event.id,
                        "event_name": event.name,
                        "error_type": type(exc).__name__,
                        "attempt": attempt,
                    },
                    exc_info=True,
                )
                return False
        await self._store.mark_delivered(event.id)
        self._failures.pop(event.id, None)
        self._retry_at.pop(event.id, None)
        return True

    async def recover(self, limit: int = 100) -> int:
        """Re-enqueue logged events that were never marked delivered.

        Events whose delivery failed recently are held back until their
        redelivery backoff has elapsed.
        """
        now = self._clock.now()
        requeued = 0
        for event in await self._store.undelivered_events(limit):
            retry_at = self._retry_at.get(event.id)
            if retry_at is not None and retry_at > now:
                continue
            if event.id in self._queued_ids:
                continue
            self._enqueue(event)
            requeued += 1
        if requeued:
            logger.info("Re-enqueued %d undelivered event(s)", requeued)
        return requeued
