"""In-memory storage backend for testing."""

from __future__ import annotations

import dataclasses
import threading
from collections.abc import Collection
from datetime import datetime
from typing import Any

from justflow.storage.interface import StoredEvent, normalize
from justflow.types import (
    ACTIVE_STATUSES,
    DeferredAdmission,
    Event,
    Run,
    RunStatus,
    SleepMarker,
    StepRecord,
    StepStatus,
)

_RUN_FIELDS = frozenset(
    {"output", "error", "error_kind", "current_step_index", "attempt"}
)


class InMemoryBackend:
    """In-memory storage backend matching the StorageBackend protocol.

    All data is stored in memory and lost when the process exits.
    Useful for tests and temporary debugging. A single lock makes every
    method atomic, which is all the engine relies on.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._seq = 0
        self._events: dict[str, StoredEvent] = {}
        self._runs: dict[str, Run] = {}
        self._steps: dict[tuple[str, str], StepRecord] = {}
        self._markers: dict[str, SleepMarker] = {}
        self._slots: dict[tuple[str, str], datetime] = {}
        self._hits: dict[str, list[float]] = {}
        self._deferred: dict[tuple[str, str], DeferredAdmission] = {}

    # -- event log ---------------------------------------------------------

    def append_event(self, event: Event, now: datetime) -> bool:
        with self._lock:
            if event.id in self._events:
                return False
            self._seq += 1
            stored = dataclasses.replace(event, data=normalize(dict(event.data)))
            self._events[event.id] = StoredEvent(
                seq=self._seq, event=stored, delivered=False, recorded_at=now
            )
            return True

    def get_event(self, event_id: str) -> Event | None:
        with self._lock:
            stored = self._events.get(event_id)
            return stored.event if stored else None

    def list_events(
        self, name: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[StoredEvent]:
        with self._lock:
            events = [
                e for e in self._events.values() if name is None or e.event.name == name
            ]
        events.sort(key=lambda e: e.seq, reverse=True)
        return events[offset : offset + limit]

    def mark_delivered(self, event_id: str) -> None:
        with self._lock:
            stored = self._events.get(event_id)
            if stored is not None:
                self._events[event_id] = dataclasses.replace(stored, delivered=True)

    def undelivered_events(self, limit: int = 100) -> list[Event]:
        with self._lock:
            pending = [e for e in self._events.values() if not e.delivered]
        pending.sort(key=lambda e: e.seq)
        return [e.event for e in pending[:limit]]

    # -- runs --------------------------------------------------------------

    def create_run(self, run: Run) -> bool:
        with self._lock:
            if run.run_id in self._runs:
                return False
            self._runs[run.run_id] = dataclasses.replace(
                run, output=normalize(run.output)
            )
            return True

    def get_run(self, run_id: str) -> Run | None:
        with self._lock:
            run = self._runs.get(run_id)
            return dataclasses.replace(run) if run else None

    def list_runs(
        self,
        function_id: str | None = None,
        statuses: Collection[RunStatus] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Run]:
        with self._lock:
            runs = [dataclasses.replace(r) for r in self._runs.values()]
        if function_id is not None:
            runs = [r for r in runs if r.function_id == function_id]
        if statuses is not None:
            runs = [r for r in runs if r.status in statuses]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[offset : offset + limit]

    def find_runs_by_prefix(self, run_id_prefix: str, limit: int = 10) -> list[Run]:
        with self._lock:
            matches = [
                dataclasses.replace(r)
                for r in self._runs.values()
                if r.run_id.startswith(run_id_prefix)
            ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return matches[:limit]

    def transition_run(
        self,
        run_id: str,
        to: RunStatus,
        now: datetime,
        *,
        from_statuses: Collection[RunStatus] | None = None,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        allowed = ACTIVE_STATUSES if from_statuses is None else from_statuses
        fields = fields or {}
        unknown = set(fields) - _RUN_FIELDS
        if unknown:
            raise ValueError(f"Cannot update run fields: {sorted(unknown)}")
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status not in allowed:
                return False
            run.status = to
            run.last_activity_at = now
            if to.is_terminal:
                run.ended_at = now
            for key, value in fields.items():
                setattr(run, key, normalize(value) if key == "output" else value)
            return True

    def touch_run(self, run_id: str, now: datetime, attempt: int | None = None) -> None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return
            run.last_activity_at = now
            if attempt is not None:
                run.attempt = attempt

    def stale_runs(self, older_than: datetime, limit: int = 100) -> list[Run]:
        with self._lock:
            stale = [
                dataclasses.replace(r)
                for r in self._runs.values()
                if r.status == RunStatus.RUNNING and r.last_activity_at < older_than
            ]
        stale.sort(key=lambda r: r.last_activity_at)
        return stale[:limit]

    # -- step checkpoints --------------------------------------------------

    def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        with self._lock:
            record = self._steps.get((run_id, step_name))
            return dataclasses.replace(record) if record else None

    def list_steps(self, run_id: str) -> list[StepRecord]:
        with self._lock:
            return [
                dataclasses.replace(rec)
                for (rid, _), rec in self._steps.items()
                if rid == run_id
            ]

    def save_step(self, record: StepRecord) -> bool:
        key = (record.run_id, record.step_name)
        with self._lock:
            existing = self._steps.get(key)
            if existing is not None and existing.status == StepStatus.SUCCEEDED:
                return False
            self._steps[key] = dataclasses.replace(
                record, result=normalize(record.result)
            )
            return True

    def complete_step(
        self, record: StepRecord, next_index: int | None, now: datetime
    ) -> StepRecord:
        key = (record.run_id, record.step_name)
        with self._lock:
            existing = self._steps.get(key)
            if existing is not None and existing.status == StepStatus.SUCCEEDED:
                stored = existing
            else:
                stored = dataclasses.replace(
                    record,
                    status=StepStatus.SUCCEEDED,
                    result=normalize(record.result),
                    completed_at=record.completed_at or now,
                )
                self._steps[key] = stored
            run = self._runs.get(record.run_id)
            if run is not None:
                run.last_activity_at = now
                if next_index is not None and next_index > run.current_step_index:
                    run.current_step_index = next_index
            return dataclasses.replace(stored)

    # -- sleep markers -----------------------------------------------------

    def put_sleep_marker(self, marker: SleepMarker) -> None:
        with self._lock:
            self._markers[marker.run_id] = marker

    def get_sleep_marker(self, run_id: str) -> SleepMarker | None:
        with self._lock:
            return self._markers.get(run_id)

    def delete_sleep_marker(self, run_id: str) -> bool:
        with self._lock:
            return self._markers.pop(run_id, None) is not None

    def due_sleep_markers(self, now: datetime, limit: int = 100) -> list[SleepMarker]:
        with self._lock:
            due = [m for m in self._markers.values() if m.wake_at <= now]
        due.sort(key=lambda m: m.wake_at)
        return due[:limit]

    # -- concurrency slots -------------------------------------------------

    def acquire_slot(
        self,
        function_id: str,
        run_id: str,
        limit: int | None,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        key = (function_id, run_id)
        with self._lock:
            if key in self._slots:
                self._slots[key] = expires_at
                return True
            if limit is not None:
                held = sum(
                    1
                    for (fid, _), exp in self._slots.items()
                    if fid == function_id and exp > now
                )
                if held >= limit:
                    return False
            self._slots[key] = expires_at
            return True

    def renew_slot(self, function_id: str, run_id: str, expires_at: datetime) -> bool:
        key = (function_id, run_id)
        with self._lock:
            if key not in self._slots:
                return False
            self._slots[key] = max(self._slots[key], expires_at)
            return True

    def release_slot(self, function_id: str, run_id: str) -> bool:
        with self._lock:
            return self._slots.pop((function_id, run_id), None) is not None

    def count_slots(self, function_id: str, now: datetime) -> int:
        with self._lock:
            return sum(
                1
                for (fid, _), exp in self._slots.items()
                if fid == function_id and exp > now
            )

    def reclaim_expired_slots(self, now: datetime) -> list[tuple[str, str]]:
        with self._lock:
            expired = [key for key, exp in self._slots.items() if exp <= now]
            for key in expired:
                del self._slots[key]
            return expired

    # -- throttle buckets --------------------------------------------------

    def throttle_hit(
        self, key: str, limit: int, period: float, now: datetime
    ) -> float | None:
        ts = now.timestamp()
        with self._lock:
            # Hits are stored as the time they leave their window, ascending.
            for idle in [k for k, exp in self._hits.items() if exp[-1] <= ts]:
                del self._hits[idle]
            hits = [exp for exp in self._hits.get(key, []) if exp > ts]
            if len(hits) < limit:
                hits.append(ts + period)
                self._hits[key] = hits
                return None
            self._hits[key] = hits
            return max(hits[0] - ts, 0.001)

    # -- deferred admissions -----------------------------------------------

    def defer(self, admission: DeferredAdmission) -> bool:
        key = (admission.function_id, admission.event_id)
        with self._lock:
            if key in self._deferred:
                existing = self._deferred[key]
                self._deferred[key] = dataclasses.replace(
                    existing, not_before=admission.not_before, reason=admission.reason
                )
                return False
            self._deferred[key] = admission
            return True

    def due_deferred(
        self, now: datetime, function_id: str | None = None, limit: int = 100
    ) -> list[DeferredAdmission]:
        with self._lock:
            due = [
                d
                for d in self._deferred.values()
                if d.not_before <= now
                and (function_id is None or d.function_id == function_id)
            ]
        return due[:limit]

    def remove_deferred(self, function_id: str, event_id: str) -> bool:
        with self._lock:
            return self._deferred.pop((function_id, event_id), None) is not None

    def list_deferred(self, function_id: str | None = None) -> list[DeferredAdmission]:
        with self._lock:
            return [
                d
                for d in self._deferred.values()
                if function_id is None or d.function_id == function_id
            ]
