"""Consolidated tests for storage backends."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import pytest

from justflow.storage.interface import StorageBackend, dumps, normalize
from justflow.storage.memory import InMemoryBackend
from justflow.storage.sqlite import SQLiteBackend
from justflow.types import (
    DeferReason,
    DeferredAdmission,
    ErrorKind,
    RunStatus,
    SleepMarker,
    SleepReason,
    StepStatus,
)
from tests.factories import T0, make_event, make_run, make_step


@pytest.fixture(params=["memory", "sqlite"])
def backend(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[StorageBackend]:
    if request.param == "memory":
        yield InMemoryBackend()
    else:
        yield SQLiteBackend(tmp_path / "flow.db")


class TestEventLog:
    def test_append_is_idempotent_by_id(self, backend: StorageBackend) -> None:
        event = make_event("hello", {"message": "hi"})
        assert backend.append_event(event, T0) is True
        assert backend.append_event(event, T0) is False
        stored = backend.get_event(event.id)
        assert stored is not None
        assert stored.data == {"message": "hi"}
        assert stored.occurred_at == T0

    def test_get_event_not_found(self, backend: StorageBackend) -> None:
        assert backend.get_event("missing") is None

    def test_list_events_newest_first_with_filter(self, backend: StorageBackend) -> None:
        backend.append_event(make_event("a", id="e1"), T0)
        backend.append_event(make_event("b", id="e2"), T0)
        backend.append_event(make_event("a", id="e3"), T0)

        assert [s.event.id for s in backend.list_events()] == ["e3", "e2", "e1"]
        assert [s.event.id for s in backend.list_events("a")] == ["e3", "e1"]
        assert [s.event.id for s in backend.list_events(limit=1, offset=1)] == ["e2"]

    def test_undelivered_until_marked(self, backend: StorageBackend) -> None:
        backend.append_event(make_event(id="e1"), T0)
        backend.append_event(make_event(id="e2"), T0)
        backend.mark_delivered("e1")
        assert [e.id for e in backend.undelivered_events()] == ["e2"]
        delivered = {s.event.id: s.delivered for s in backend.list_events()}
        assert delivered == {"e1": True, "e2": False}


class TestRuns:
    def test_create_and_get_run(self, backend: StorageBackend) -> None:
        trigger = make_event("publish.content", {"contentId": "c1"})
        assert backend.create_run(make_run(trigger=trigger)) is True
        assert backend.create_run(make_run(trigger=trigger)) is False

        run = backend.get_run("run-1")
        assert run is not None
        assert run.status is RunStatus.PENDING
        assert run.trigger.data == {"contentId": "c1"}
        assert run.created_at == T0

    def test_get_run_not_found(self, backend: StorageBackend) -> None:
        assert backend.get_run("missing") is None

    def test_list_runs_filters(self, backend: StorageBackend) -> None:
        backend.create_run(make_run("r1", "fn-a", created_at=T0))
        backend.create_run(
            make_run("r2", "fn-a", RunStatus.FAILED, created_at=T0 + timedelta(1))
        )
        backend.create_run(make_run("r3", "fn-b", created_at=T0 + timedelta(2)))

        assert [r.run_id for r in backend.list_runs()] == ["r3", "r2", "r1"]
        assert [r.run_id for r in backend.list_runs("fn-a")] == ["r2", "r1"]
        failed = backend.list_runs(statuses=[RunStatus.FAILED])
        assert [r.run_id for r in failed] == ["r2"]
        assert len(backend.list_runs(limit=2, offset=2)) == 1

    def test_find_runs_by_prefix(self, backend: StorageBackend) -> None:
        backend.create_run(make_run("abc-123"))
        backend.create_run(make_run("abc-456"))
        backend.create_run(make_run("xyz-789"))
        matches = backend.find_runs_by_prefix("abc")
        assert sorted(r.run_id for r in matches) == ["abc-123", "abc-456"]
        assert backend.find_runs_by_prefix("abc", limit=1)[0].run_id.startswith("abc")
        assert backend.find_runs_by_prefix("nope") == []

    def test_find_runs_by_prefix_is_literal(self, backend: StorageBackend) -> None:
        backend.create_run(make_run("a_b-1"))
        backend.create_run(make_run("axb-2"))
        assert [r.run_id for r in backend.find_runs_by_prefix("a_b")] == ["a_b-1"]

    def test_transition_is_compare_and_set(self, backend: StorageBackend) -> None:
        backend.create_run(make_run())
        later = T0 + timedelta(seconds=5)
        assert backend.transition_run(
            "run-1", RunStatus.RUNNING, later, from_statuses=[RunStatus.PENDING]
        )
        assert not backend.transition_run(
            "run-1", RunStatus.RUNNING, later, from_statuses=[RunStatus.PENDING]
        )
        assert backend.transition_run(
            "run-1",
            RunStatus.FAILED,
            later,
            fields={"error": "boom", "error_kind": ErrorKind.VALIDATION},
        )
        run = backend.get_run("run-1")
        assert run is not None
        assert run.status is RunStatus.FAILED
        assert run.error == "boom"
        assert run.error_kind is ErrorKind.VALIDATION
        assert run.ended_at == later

    def test_terminal_status_is_never_overwritten(self, backend: StorageBackend) -> None:
        backend.create_run(make_run(status=RunStatus.CANCELLED))
        assert not backend.transition_run("run-1", RunStatus.COMPLETED, T0)
        assert not backend.transition_run("missing", RunStatus.COMPLETED, T0)

    def test_transition_rejects_unknown_fields(self, backend: StorageBackend) -> None:
        backend.create_run(make_run())
        with pytest.raises(ValueError, match="Cannot update run fields"):
            backend.transition_run(
                "run-1", RunStatus.RUNNING, T0, fields={"status": "x"}
            )

    def test_output_is_normalized(self, backend: StorageBackend) -> None:
        backend.create_run(make_run(status=RunStatus.RUNNING))
        backend.transition_run(
            "run-1", RunStatus.COMPLETED, T0, fields={"output": {"at": T0, "n": (1, 2)}}
        )
        run = backend.get_run("run-1")
        assert run is not None
        assert run.output == {"at": T0.isoformat(), "n": [1, 2]}

    def test_stale_runs_only_running(self, backend: StorageBackend) -> None:
        backend.create_run(make_run("r1", status=RunStatus.RUNNING))
        backend.create_run(make_run("r2", status=RunStatus.SLEEPING))
        stale = backend.stale_runs(T0 + timedelta(seconds=1))
        assert [r.run_id for r in stale] == ["r1"]
        backend.touch_run("r1", T0 + timedelta(seconds=2), attempt=3)
        assert backend.stale_runs(T0 + timedelta(seconds=1)) == []
        run = backend.get_run("r1")
        assert run is not None and run.attempt == 3


class TestSteps:
    def test_complete_step_is_write_once(self, backend: StorageBackend) -> None:
        backend.create_run(make_run(status=RunStatus.RUNNING))
        first = backend.complete_step(make_step(result={"n": 1}), 1, T0)
        second = backend.complete_step(make_step(result={"n": 2}), 2, T0)
        assert first.result == {"n": 1}
        assert second.result == {"n": 1}
        run = backend.get_run("run-1")
        assert run is not None and run.current_step_index == 2

    def test_failed_attempts_do_not_replace_success(
        self, backend: StorageBackend
    ) -> None:
        backend.create_run(make_run(status=RunStatus.RUNNING))
        failed = make_step(status=StepStatus.FAILED, error="503", attempt=1)
        assert backend.save_step(failed) is True
        record = backend.get_step("run-1", "step-a")
        assert record is not None and record.status is StepStatus.FAILED

        backend.complete_step(make_step(result="ok", attempt=2), 1, T0)
        assert backend.save_step(failed) is False
        record = backend.get_step("run-1", "step-a")
        assert record is not None
        assert record.status is StepStatus.SUCCEEDED
        assert record.attempt == 2

    def test_list_steps(self, backend: StorageBackend) -> None:
        backend.create_run(make_run(status=RunStatus.RUNNING))
        backend.complete_step(make_step(step_name="a"), 1, T0)
        backend.save_step(
            make_step(
                step_name="b",
                status=StepStatus.PENDING,
                wake_at=T0 + timedelta(hours=1),
            )
        )
        steps = {s.step_name: s for s in backend.list_steps("run-1")}
        assert set(steps) == {"a", "b"}
        assert steps["b"].wake_at == T0 + timedelta(hours=1)
        assert backend.list_steps("other") == []


class TestSleepMarkers:
    def test_markers_come_due_in_order(self, backend: StorageBackend) -> None:
        late = SleepMarker("r1", T0 + timedelta(minutes=10), 2)
        early = SleepMarker("r2", T0 + timedelta(minutes=5), 0, SleepReason.RETRY)
        backend.put_sleep_marker(late)
        backend.put_sleep_marker(early)

        assert backend.due_sleep_markers(T0) == []
        due = backend.due_sleep_markers(T0 + timedelta(hours=1))
        assert [m.run_id for m in due] == ["r2", "r1"]
        assert due[0].reason is SleepReason.RETRY

    def test_put_replaces_and_delete_reports(self, backend: StorageBackend) -> None:
        backend.put_sleep_marker(SleepMarker("r1", T0, 0))
        backend.put_sleep_marker(SleepMarker("r1", T0 + timedelta(seconds=30), 1))
        marker = backend.get_sleep_marker("r1")
        assert marker is not None and marker.resume_step_index == 1
        assert backend.delete_sleep_marker("r1") is True
        assert backend.delete_sleep_marker("r1") is False


class TestSlots:
    def test_limit_is_enforced(self, backend: StorageBackend) -> None:
        expires = T0 + timedelta(minutes=5)
        assert backend.acquire_slot("fn", "r1", 2, expires, T0)
        assert backend.acquire_slot("fn", "r2", 2, expires, T0)
        assert not backend.acquire_slot("fn", "r3", 2, expires, T0)
        # re-acquiring a held slot renews it
        assert backend.acquire_slot("fn", "r1", 2, expires, T0)
        assert backend.acquire_slot("other", "r3", 2, expires, T0)
        assert backend.count_slots("fn", T0) == 2

        assert backend.release_slot("fn", "r1") is True
        assert backend.release_slot("fn", "r1") is False
        assert backend.acquire_slot("fn", "r3", 2, expires, T0)

    def test_expired_slots_are_reclaimed(self, backend: StorageBackend) -> None:
        backend.acquire_slot("fn", "r1", 1, T0 + timedelta(seconds=10), T0)
        later = T0 + timedelta(seconds=11)
        assert backend.count_slots("fn", later) == 0
        assert backend.reclaim_expired_slots(later) == [("fn", "r1")]
        assert backend.release_slot("fn", "r1") is False

    def test_renew_extends_lease(self, backend: StorageBackend) -> None:
        backend.acquire_slot("fn", "r1", 1, T0 + timedelta(seconds=10), T0)
        assert backend.renew_slot("fn", "r1", T0 + timedelta(hours=1))
        assert backend.count_slots("fn", T0 + timedelta(minutes=30)) == 1
        assert not backend.renew_slot("fn", "missing", T0)


class TestThrottleAndDeferral:
    def test_sliding_window(self, backend: StorageBackend) -> None:
        for _ in range(3):
            assert backend.throttle_hit("fn:u1", 3, 60.0, T0) is None
        hint = backend.throttle_hit("fn:u1", 3, 60.0, T0 + timedelta(seconds=20))
        assert hint == pytest.approx(40.0)
        assert backend.throttle_hit("fn:u2", 3, 60.0, T0) is None
        assert backend.throttle_hit("fn:u1", 3, 60.0, T0 + timedelta(seconds=60)) is None

    def test_idle_keys_are_forgotten_in_memory(self) -> None:
        backend = InMemoryBackend()
        for n in range(50):
            assert backend.throttle_hit(f"fn:u{n}", 1, 60.0, T0) is None
        assert backend.throttle_hit("fn:u0", 1, 60.0, T0 + timedelta(seconds=30))

        assert backend.throttle_hit("fn:late", 1, 60.0, T0 + timedelta(seconds=61)) is None
        assert backend._hits.keys() == {"fn:late"}

    def test_idle_keys_are_forgotten_in_sqlite(self, tmp_path: Path) -> None:
        backend = SQLiteBackend(tmp_path / "flow.db")
        for n in range(50):
            assert backend.throttle_hit(f"fn:u{n}", 1, 60.0, T0) is None

        assert backend.throttle_hit("fn:late", 1, 60.0, T0 + timedelta(seconds=61)) is None
        with sqlite3.connect(backend.db_path) as conn:
            keys = [row[0] for row in conn.execute("SELECT key FROM throttle_hits")]
        assert keys == ["fn:late"]

    def test_deferred_queue_is_fifo_and_deduplicated(
        self, backend: StorageBackend
    ) -> None:
        first = DeferredAdmission("fn", "e1", T0, DeferReason.CONCURRENCY, T0)
        second = DeferredAdmission("fn", "e2", T0, DeferReason.CONCURRENCY, T0)
        assert backend.defer(first) is True
        assert backend.defer(second) is True
        later = DeferredAdmission(
            "fn", "e1", T0 + timedelta(seconds=30), DeferReason.THROTTLE, T0
        )
        assert backend.defer(later) is False

        queued = backend.list_deferred("fn")
        assert [d.event_id for d in queued] == ["e1", "e2"]
        assert queued[0].reason is DeferReason.THROTTLE
        assert [d.event_id for d in backend.due_deferred(T0)] == ["e2"]
        assert backend.remove_deferred("fn", "e2") is True
        assert backend.remove_deferred("fn", "e2") is False
        assert backend.list_deferred("other") == []


def test_normalize_matches_json_round_trip() -> None:
    assert normalize({"b": (1, 2), "a": RunStatus.FAILED}) == {
        "a": "failed",
        "b": [1, 2],
    }
    assert dumps({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'
