"""Tests for retry decisions, failure classification and failure hooks."""

import asyncio
from typing import Any

import httpx
import pytest
from tenacity import wait_fixed

from justflow.bus import EventBus
from justflow.checkpoint import CheckpointStore
from justflow.failures import classify, classify_status, describe
from justflow.registry import FunctionRegistry
from justflow.retry import FAILURE_HOOK_STEP, FailDecision, RetryDecision, RetryHandler
from justflow.storage.memory import InMemoryBackend
from justflow.testing import FakeClock
from justflow.types import (
    ErrorKind,
    FailureContext,
    PollTimeout,
    ProviderFailure,
    RetryPolicy,
    RunStatus,
    StepError,
    StepSpec,
    StepStatus,
    TransientFailure,
    ValidationFailure,
)
from tests.factories import make_run


class TestClassify:
    @pytest.mark.parametrize(
        "error, kind",
        [
            (TransientFailure("503"), ErrorKind.TRANSIENT),
            (ValidationFailure("bad"), ErrorKind.VALIDATION),
            (ProviderFailure("nope"), ErrorKind.PROVIDER_TERMINAL),
            (PollTimeout("slow"), ErrorKind.TIMEOUT),
            (StepError("x", kind=ErrorKind.VALIDATION), ErrorKind.VALIDATION),
            (asyncio.TimeoutError(), ErrorKind.TRANSIENT),
            (httpx.ConnectError("refused"), ErrorKind.TRANSIENT),
            (KeyError("userId"), ErrorKind.VALIDATION),
            (ValueError("bad"), ErrorKind.VALIDATION),
            (RuntimeError("?"), ErrorKind.TRANSIENT),
        ],
    )
    def test_classify(self, error: BaseException, kind: ErrorKind) -> None:
        assert classify(error) is kind

    def test_http_status_error(self) -> None:
        request = httpx.Request("GET", "http://studio.test/x")
        response = httpx.Response(403, request=request)
        error = httpx.HTTPStatusError("forbidden", request=request, response=response)
        assert classify(error) is ErrorKind.PROVIDER_TERMINAL

    @pytest.mark.parametrize(
        "status, kind",
        [
            (400, ErrorKind.VALIDATION),
            (401, ErrorKind.PROVIDER_TERMINAL),
            (403, ErrorKind.PROVIDER_TERMINAL),
            (404, ErrorKind.VALIDATION),
            (408, ErrorKind.TRANSIENT),
            (422, ErrorKind.VALIDATION),
            (425, ErrorKind.TRANSIENT),
            (429, ErrorKind.TRANSIENT),
            (500, ErrorKind.TRANSIENT),
            (503, ErrorKind.TRANSIENT),
        ],
    )
    def test_classify_status(self, status: int, kind: ErrorKind) -> None:
        assert classify_status(status) is kind

    def test_only_transient_is_retriable(self) -> None:
        assert [k for k in ErrorKind if k.retriable] == [ErrorKind.TRANSIENT]

    def test_describe(self) -> None:
        assert describe(RuntimeError()) == "RuntimeError"
        assert describe(ValueError("x" * 600)) == "x" * 500


class TestRetryPolicy:
    def test_from_retries(self) -> None:
        assert RetryPolicy.from_retries(0).max_attempts == 1
        assert RetryPolicy.from_retries(3).max_attempts == 4

    def test_default_backoff_is_exponential_and_capped(self) -> None:
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 8]
        assert policy.delay_for(20) == 60

    def test_custom_backoff(self) -> None:
        policy = RetryPolicy.from_retries(2, wait_fixed(7))
        assert policy.delay_for(1) == 7


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> CheckpointStore:
    return CheckpointStore(InMemoryBackend())


@pytest.fixture
def handler(store: CheckpointStore, clock: FakeClock) -> RetryHandler:
    return RetryHandler(store, EventBus(store, clock=clock), clock=clock)


class TestDecide:
    def test_transient_is_retried_with_backoff(self, handler: RetryHandler) -> None:
        decision = handler.decide(RetryPolicy(max_attempts=3), TransientFailure("x"), 1)
        assert decision == RetryDecision(delay=1, next_attempt=2, kind=ErrorKind.TRANSIENT)

    def test_gives_up_after_max_attempts(self, handler: RetryHandler) -> None:
        decision = handler.decide(RetryPolicy(max_attempts=3), TransientFailure("x"), 3)
        assert isinstance(decision, FailDecision)
        assert decision.kind is ErrorKind.TRANSIENT
        assert "3 of 3" in decision.reason

    @pytest.mark.parametrize(
        "error",
        [ValidationFailure("x"), ProviderFailure("x"), PollTimeout("x")],
    )
    def test_terminal_kinds_fail_at_once(
        self, handler: RetryHandler, error: StepError
    ) -> None:
        decision = handler.decide(RetryPolicy(max_attempts=5), error, 1)
        assert isinstance(decision, FailDecision)
        assert decision.kind is error.kind


def define_with_hook(hook: Any, retries: int = 2) -> Any:
    registry = FunctionRegistry()
    fn = registry.function(
        "fn", trigger="t", retry=RetryPolicy.from_retries(retries, wait_fixed(1))
    )
    fn.add(StepSpec("a", lambda ctx: 1))
    fn.on_failure(hook)
    return registry.get("fn")


class TestFailRun:
    @pytest.mark.asyncio
    async def test_fail_run_records_error_and_calls_hook(
        self, handler: RetryHandler, store: CheckpointStore
    ) -> None:
        seen: list[tuple[FailureContext, str]] = []

        async def hook(ctx: FailureContext, error: str) -> str:
            seen.append((ctx, error))
            return "notified"

        fn = define_with_hook(hook)
        run = make_run(function_id="fn", status=RunStatus.RUNNING)
        await store.create_run(run)
        released: list[bool] = []

        async def on_terminal() -> None:
            released.append(True)

        moved = await handler.fail_run(
            run,
            fn,
            ValidationFailure("Content not found"),
            ErrorKind.VALIDATION,
            failed_step="load-content",
            on_terminal=on_terminal,
        )
        assert moved and released == [True]
        stored = await store.get_run(run.run_id)
        assert stored is not None
        assert stored.status is RunStatus.FAILED
        assert stored.error == "Content not found"
        assert stored.error_kind is ErrorKind.VALIDATION

        [(ctx, error)] = seen
        assert error == "Content not found"
        assert ctx.failed_step == "load-content"
        assert ctx.error_kind is ErrorKind.VALIDATION
        record = await store.get_step(run.run_id, FAILURE_HOOK_STEP)
        assert record is not None
        assert record.status is StepStatus.SUCCEEDED
        assert record.result == "notified"

    @pytest.mark.asyncio
    async def test_terminal_run_is_not_failed_again(
        self, handler: RetryHandler, store: CheckpointStore
    ) -> None:
        calls: list[str] = []
        fn = define_with_hook(lambda ctx, error: calls.append(error))
        run = make_run(function_id="fn", status=RunStatus.CANCELLED)
        await store.create_run(run)
        assert not await handler.fail_run(run, fn, "late", ErrorKind.TRANSIENT)
        assert calls == []

    @pytest.mark.asyncio
    async def test_hook_is_retried_then_recorded_once(
        self, handler: RetryHandler, store: CheckpointStore, clock: FakeClock
    ) -> None:
        attempts: list[int] = []

        def hook(ctx: FailureContext, error: str) -> None:
            attempts.append(1)
            if len(attempts) < 2:
                raise TransientFailure("webhook down")

        fn = define_with_hook(hook)
        run = make_run(function_id="fn", status=RunStatus.FAILED, error="boom")
        await store.create_run(run)
        start = clock.now()

        assert await handler.run_failure_hook(run, fn)
        assert len(attempts) == 2
        assert (clock.now() - start).total_seconds() == 1
        # a completed hook is never invoked again
        assert not await handler.run_failure_hook(run, fn)
        assert await handler.pending_failure_hooks({"fn": fn}) == 0
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_exhausted_hook_is_recorded_as_failed(
        self, handler: RetryHandler, store: CheckpointStore
    ) -> None:
        def hook(ctx: FailureContext, error: str) -> None:
            raise TransientFailure("webhook down")

        fn = define_with_hook(hook, retries=1)
        run = make_run(function_id="fn", status=RunStatus.FAILED, error="boom")
        await store.create_run(run)

        assert not await handler.run_failure_hook(run, fn)
        record = await store.get_step(run.run_id, FAILURE_HOOK_STEP)
        assert record is not None
        assert record.status is StepStatus.FAILED
        assert record.attempt == 2
        assert await handler.pending_failure_hooks({"fn": fn}) == 0

    @pytest.mark.asyncio
    async def test_hook_emits_with_deterministic_ids(
        self, handler: RetryHandler, store: CheckpointStore
    ) -> None:
        async def hook(ctx: FailureContext, error: str) -> None:
            assert ctx.emit is not None
            await ctx.emit("thing.failed", {"error": error})
            await ctx.emit("thing.failed", {"error": error})

        fn = define_with_hook(hook)
        run = make_run(function_id="fn", status=RunStatus.FAILED, error="boom")
        await store.create_run(run)
        await handler.run_failure_hook(run, fn)

        events = await store.list_events("thing.failed")
        assert len(events) == 1
        assert events[0].event.data == {"error": "boom"}
