"""Storage backend interface for durable runs, checkpoints and the event log."""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from justflow.types import (
    DeferredAdmission,
    Event,
    Run,
    RunStatus,
    SleepMarker,
    StepRecord,
)


@dataclass(frozen=True)
class StoredEvent:
    """An event as recorded in the durable event log."""

    seq: int
    event: Event
    delivered: bool
    recorded_at: datetime


def _default(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def dumps(value: Any) -> str:
    """Serialize a step result or payload to JSON.

    Conversion rules:
    - dataclasses → dicts
    - Enums → .value
    - datetimes → ISO-8601 strings
    - tuples/sets → lists
    """
    return json.dumps(value, default=_default, sort_keys=True)


def loads(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def normalize(value: Any) -> Any:
    """Return ``value`` exactly as it will read back from a checkpoint."""
    return loads(dumps(value))


def to_ts(dt: datetime | None) -> float | None:
    return dt.timestamp() if dt is not None else None


def from_ts(ts: float | None) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class StorageBackend(Protocol):
    """Synchronous persistence primitives used by the checkpoint store.

    Implementations must make every method atomic: concurrent workers call
    them from a thread pool.
    """

    # -- event log ---------------------------------------------------------
    def append_event(self, event: Event, now: datetime) -> bool: ...

    def get_event(self, event_id: str) -> Event | None: ...

    def list_events(
        self, name: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[StoredEvent]: ...

    def mark_delivered(self, event_id: str) -> None: ...

    def undelivered_events(self, limit: int = 100) -> list[Event]: ...

    # -- runs --------------------------------------------------------------
    def create_run(self, run: Run) -> bool: ...

    def get_run(self, run_id: str) -> Run | None: ...

    def list_runs(
        self,
        function_id: str | None = None,
        statuses: Collection[RunStatus] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Run]: ...

    def find_runs_by_prefix(self, run_id_prefix: str, limit: int = 10) -> list[Run]: ...

    def transition_run(
        self,
        run_id: str,
        to: RunStatus,
        now: datetime,
        *,
        from_statuses: Collection[RunStatus] | None = None,
        fields: dict[str, Any] | None = None,
    ) -> bool: ...

    def touch_run(self, run_id: str, now: datetime, attempt: int | None = None) -> None: ...

    def stale_runs(self, older_than: datetime, limit: int = 100) -> list[Run]: ...

    # -- step checkpoints --------------------------------------------------
    def get_step(self, run_id: str, step_name: str) -> StepRecord | None: ...

    def list_steps(self, run_id: str) -> list[StepRecord]: ...

    def save_step(self, record: StepRecord) -> bool: ...

    def complete_step(
        self, record: StepRecord, next_index: int | None, now: datetime
    ) -> StepRecord: ...

    # -- sleep markers -----------------------------------------------------
    def put_sleep_marker(self, marker: SleepMarker) -> None: ...

    def get_sleep_marker(self, run_id: str) -> SleepMarker | None: ...

    def delete_sleep_marker(self, run_id: str) -> bool: ...

    def due_sleep_markers(self, now: datetime, limit: int = 100) -> list[SleepMarker]: ...

    # -- concurrency slots -------------------------------------------------
    def acquire_slot(
        self,
        function_id: str,
        run_id: str,
        limit: int | None,
        expires_at: datetime,
        now: datetime,
    ) -> bool: ...

    def renew_slot(self, function_id: str, run_id: str, expires_at: datetime) -> bool: ...

    def release_slot(self, function_id: str, run_id: str) -> bool: ...

    def count_slots(self, function_id: str, now: datetime) -> int: ...

    def reclaim_expired_slots(self, now: datetime) -> list[tuple[str, str]]: ...

    # -- throttle buckets --------------------------------------------------
    def throttle_hit(
        self, key: str, limit: int, period: float, now: datetime
    ) -> float | None: ...

    # -- deferred admissions -----------------------------------------------
    def defer(self, admission: DeferredAdmission) -> bool: ...

    def due_deferred(
        self, now: datetime, function_id: str | None = None, limit: int = 100
    ) -> list[DeferredAdmission]: ...

    def remove_deferred(self, function_id: str, event_id: str) -> bool: ...

    def list_deferred(self, function_id: str | None = None) -> list[DeferredAdmission]: ...
