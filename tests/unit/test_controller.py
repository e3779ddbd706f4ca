"""Tests for concurrency slots, throttling and the deferred admission queue."""

from typing import Any

import pytest

from justflow.checkpoint import CheckpointStore
from justflow.controller import ConcurrencyController, throttle_key
from justflow.registry import FunctionRegistry
from justflow.storage.memory import InMemoryBackend
from justflow.testing import FakeClock
from justflow.types import (
    Admitted,
    DeferReason,
    Deferred,
    DeferredAdmission,
    FunctionDefinition,
    Slot,
    StepSpec,
    Throttle,
)
from tests.factories import make_event


def define(**options: Any) -> FunctionDefinition:
    registry = FunctionRegistry()
    registry.function("fn", trigger="t", **options).add(StepSpec("a", lambda ctx: 1))
    return registry.get("fn")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def controller(clock: FakeClock) -> ConcurrencyController:
    return ConcurrencyController(
        CheckpointStore(InMemoryBackend()), clock=clock, liveness_window=60.0
    )


def test_throttle_key() -> None:
    fn = define(throttle=Throttle(key="data.userId", limit=1, period=10))
    assert throttle_key(fn, make_event(data={"userId": "u1"})) == "fn:u1"
    assert throttle_key(fn, make_event(data={})) == "fn:"
    assert throttle_key(define(), make_event()) is None


@pytest.mark.asyncio
async def test_unlimited_function_admits_without_slot(
    controller: ConcurrencyController,
) -> None:
    admission = await controller.admit(define(), make_event(), "r1")
    assert admission == Admitted(slot=None)


@pytest.mark.asyncio
async def test_concurrency_limit(controller: ConcurrencyController) -> None:
    fn = define(concurrency=1)
    first = await controller.admit(fn, make_event(id="e1"), "r1")
    assert isinstance(first, Admitted) and isinstance(first.slot, Slot)
    second = await controller.admit(fn, make_event(id="e2"), "r2")
    assert second == Deferred(DeferReason.CONCURRENCY)
    assert await controller.active_count("fn") == 1

    assert await controller.release("fn", "r1")
    assert isinstance(await controller.admit(fn, make_event(id="e2"), "r2"), Admitted)


@pytest.mark.asyncio
async def test_throttle_rejection_hands_back_slot(
    controller: ConcurrencyController,
) -> None:
    fn = define(concurrency=5, throttle=Throttle(key="data.userId", limit=1, period=30))
    user = {"userId": "u1"}
    assert isinstance(await controller.admit(fn, make_event(data=user), "r1"), Admitted)
    rejected = await controller.admit(fn, make_event(id="e2", data=user), "r2")
    assert isinstance(rejected, Deferred)
    assert rejected.reason is DeferReason.THROTTLE
    assert rejected.retry_after == pytest.approx(30.0)
    assert await controller.active_count("fn") == 1

    other = await controller.admit(fn, make_event(id="e3", data={"userId": "u2"}), "r3")
    assert isinstance(other, Admitted)


@pytest.mark.asyncio
async def test_leases_expire_and_are_reclaimed(
    controller: ConcurrencyController, clock: FakeClock
) -> None:
    fn = define(concurrency=1)
    await controller.acquire(fn, "r1")
    clock.advance(30)
    assert await controller.renew("fn", "r1")
    clock.advance(45)
    assert await controller.reclaim_expired() == []
    clock.advance(30)
    assert await controller.reclaim_expired() == [("fn", "r1")]
    assert isinstance(await controller.acquire(fn, "r2"), Slot)


@pytest.mark.asyncio
async def test_renew_until_future_time(
    controller: ConcurrencyController, clock: FakeClock
) -> None:
    fn = define(concurrency=1)
    await controller.acquire(fn, "r1")
    wake = clock.now().replace(hour=18)
    await controller.renew("fn", "r1", until=wake)
    clock.set(wake)
    assert await controller.active_count("fn") == 1


@pytest.mark.asyncio
async def test_defer_and_drain_fifo(
    controller: ConcurrencyController, clock: FakeClock
) -> None:
    fn = define(concurrency=1)
    for n in range(3):
        await controller.defer(
            fn, make_event(id=f"e{n}"), Deferred(DeferReason.CONCURRENCY)
        )
    started: list[str] = []

    async def start(entry: DeferredAdmission) -> bool:
        if started:
            return False
        started.append(entry.event_id)
        return True

    assert await controller.drain(start) == 1
    assert started == ["e0"]
    assert [q.event_id for q in await controller.queued("fn")] == ["e1", "e2"]


@pytest.mark.asyncio
async def test_throttled_entry_does_not_block_others(
    controller: ConcurrencyController, clock: FakeClock
) -> None:
    fn = define(throttle=Throttle(key="data.userId", limit=1, period=30))
    await controller.defer(fn, make_event(id="e0"), Deferred(DeferReason.THROTTLE))
    await controller.defer(fn, make_event(id="e1"), Deferred(DeferReason.THROTTLE))
    attempted: list[str] = []

    async def start(entry: DeferredAdmission) -> bool:
        attempted.append(entry.event_id)
        return entry.event_id == "e1"

    assert await controller.drain(start) == 1
    assert attempted == ["e0", "e1"]
    assert [q.event_id for q in await controller.queued()] == ["e0"]


@pytest.mark.asyncio
async def test_deferral_waits_for_backoff(
    controller: ConcurrencyController, clock: FakeClock
) -> None:
    fn = define()
    await controller.defer(fn, make_event(), Deferred(DeferReason.THROTTLE, 20.0))
    assert await controller.due() == []
    clock.advance(20)
    assert [d.event_id for d in await controller.due()] == ["evt-1"]
    assert await controller.dequeue("fn", "evt-1")
    assert await controller.queued() == []
