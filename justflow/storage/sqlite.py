"""SQLite storage backend using stdlib sqlite3 (zero dependencies)."""

from __future__ import annotations

import re
import sqlite3
from collections.abc import Collection, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from justflow.storage.interface import StoredEvent, dumps, from_ts, loads, to_ts
from justflow.types import (
    ACTIVE_STATUSES,
    DeferReason,
    DeferredAdmission,
    ErrorKind,
    Event,
    Run,
    RunStatus,
    SleepMarker,
    SleepReason,
    StepRecord,
    StepStatus,
)

_SCHEMA = """\
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    data TEXT NOT NULL,
    occurred_at REAL NOT NULL,
    recorded_at REAL NOT NULL,
    delivered INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    function_id TEXT NOT NULL,
    trigger TEXT NOT NULL,
    status TEXT NOT NULL,
    current_step_index INTEGER NOT NULL DEFAULT 0,
    attempt INTEGER NOT NULL DEFAULT 0,
    output TEXT,
    error TEXT,
    error_kind TEXT,
    created_at REAL NOT NULL,
    last_activity_at REAL NOT NULL,
    ended_at REAL
);

CREATE TABLE IF NOT EXISTS steps (
    run_id TEXT NOT NULL,
    step_name TEXT NOT NULL,
    status TEXT NOT NULL,
    result TEXT,
    error TEXT,
    attempt INTEGER NOT NULL DEFAULT 1,
    control TEXT,
    wake_at REAL,
    completed_at REAL,
    PRIMARY KEY (run_id, step_name)
);

CREATE TABLE IF NOT EXISTS sleep_markers (
    run_id TEXT PRIMARY KEY,
    wake_at REAL NOT NULL,
    resume_step_index INTEGER NOT NULL,
    reason TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS slots (
    function_id TEXT NOT NULL,
    run_id TEXT NOT NULL,
    expires_at REAL NOT NULL,
    PRIMARY KEY (function_id, run_id)
);

CREATE TABLE IF NOT EXISTS throttle_hits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT NOT NULL,
    expires_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS deferred (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    function_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    not_before REAL NOT NULL,
    reason TEXT NOT NULL,
    created_at REAL NOT NULL,
    UNIQUE (function_id, event_id)
);

CREATE INDEX IF NOT EXISTS idx_events_name ON events(name, seq DESC);
CREATE INDEX IF NOT EXISTS idx_events_pending ON events(delivered, seq);
CREATE INDEX IF NOT EXISTS idx_runs_fn ON runs(function_id, status, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status, last_activity_at);
CREATE INDEX IF NOT EXISTS idx_markers_wake ON sleep_markers(wake_at);
CREATE INDEX IF NOT EXISTS idx_hits_key ON throttle_hits(key, expires_at);
CREATE INDEX IF NOT EXISTS idx_hits_expiry ON throttle_hits(expires_at);
CREATE INDEX IF NOT EXISTS idx_deferred_due ON deferred(not_before, id);
"""

_RUN_COLUMNS = {
    "output": lambda v: dumps(v),
    "error": lambda v: v,
    "error_kind": lambda v: v.value if v is not None else None,
    "current_step_index": lambda v: int(v),
    "attempt": lambda v: int(v),
}


class SQLiteBackend:
    """SQLite-based storage backend using stdlib sqlite3.

    One database file holds the event log, runs, step checkpoints, sleep
    markers, slot leases, throttle hits and the deferred admission queue.
    Every write runs inside ``BEGIN IMMEDIATE`` so read-modify-write
    sequences (slot counting, throttle windows, CAS transitions) are
    serialized across processes.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _init_schema(self) -> None:
        conn = sqlite3.connect(self._db_path)
        try:
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    # -- event log ---------------------------------------------------------

    def append_event(self, event: Event, now: datetime) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO events
                   (id, name, data, occurred_at, recorded_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    event.id,
                    event.name,
                    dumps(dict(event.data)),
                    to_ts(event.occurred_at),
                    to_ts(now),
                ),
            )
            return cursor.rowcount > 0

    def get_event(self, event_id: str) -> Event | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM events WHERE id = ?", (event_id,)
            ).fetchone()
            return self._row_to_event(row) if row else None

    def list_events(
        self, name: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[StoredEvent]:
        with self._conn() as conn:
            query = "SELECT * FROM events"
            params: list[Any] = []
            if name is not None:
                query += " WHERE name = ?"
                params.append(name)
            query += " ORDER BY seq DESC LIMIT ? OFFSET ?"
            params.extend([limit, offset])
            return [
                StoredEvent(
                    seq=r["seq"],
                    event=self._row_to_event(r),
                    delivered=bool(r["delivered"]),
                    recorded_at=from_ts(r["recorded_at"]),  # type: ignore[arg-type]
                )
                for r in conn.execute(query, params).fetchall()
            ]

    def mark_delivered(self, event_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("UPDATE events SET delivered = 1 WHERE id = ?", (event_id,))

    def undelivered_events(self, limit: int = 100) -> list[Event]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE delivered = 0 ORDER BY seq ASC LIMIT ?",
                (limit,),
            ).fetchall()
            return [self._row_to_event(r) for r in rows]

    # -- runs --------------------------------------------------------------

    def create_run(self, run: Run) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO runs
                   (run_id, function_id, trigger, status, current_step_index,
                    attempt, output, error, error_kind, created_at,
                    last_activity_at, ended_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    run.run_id,
                    run.function_id,
                    dumps(run.trigger.to_dict()),
                    run.status.value,
                    run.current_step_index,
                    run.attempt,
                    dumps(run.output),
                    run.error,
                    run.error_kind.value if run.error_kind else None,
                    to_ts(run.created_at),
                    to_ts(run.last_activity_at),
                    to_ts(run.ended_at),
                ),
            )
            return cursor.rowcount > 0

    def get_run(self, run_id: str) -> Run | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM runs WHERE run_id = ?", (run_id,)
            ).fetchone()
            return self._row_to_run(row) if row else None

    def list_runs(
        self,
        function_id: str | None = None,
        statuses: Collection[RunStatus] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Run]:
        with self._conn() as conn:
            clauses: list[str] = []
            params: list[Any] = []
            if function_id is not None:
                clauses.append("function_id = ?")
                params.append(function_id)
            if statuses is not None:
                if not statuses:
                    return []
                marks = ", ".join("?" for _ in statuses)
                clauses.append(f"status IN ({marks})")
                params.extend(s.value for s in statuses)
            query = "SELECT * FROM runs"
            if clauses:
                query += " WHERE " + " AND ".join(clauses)
            query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
            params.extend([limit, offset])
            return [self._row_to_run(r) for r in conn.execute(query, params).fetchall()]

    _RUN_ID_SAFE = re.compile(r"^[a-zA-Z0-9\-_]+$")

    def find_runs_by_prefix(self, run_id_prefix: str, limit: int = 10) -> list[Run]:
        if not run_id_prefix or not self._RUN_ID_SAFE.match(run_id_prefix):
            return []
        with self._conn() as conn:
            escaped = (
                run_id_prefix.replace("\\", "\\\\")
                .replace("%", "\\%")
                .replace("_", "\\_")
            )
            rows = conn.execute(
                "SELECT * FROM runs WHERE run_id LIKE ? ESCAPE '\\' "
                "ORDER BY created_at DESC LIMIT ?",
                (escaped + "%", limit),
            ).fetchall()
            return [self._row_to_run(r) for r in rows]

    def transition_run(
        self,
        run_id: str,
        to: RunStatus,
        now: datetime,
        *,
        from_statuses: Collection[RunStatus] | None = None,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        allowed = list(ACTIVE_STATUSES if from_statuses is None else from_statuses)
        if not allowed:
            return False
        fields = fields or {}
        unknown = set(fields) - set(_RUN_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update run fields: {sorted(unknown)}")

        assignments = ["status = ?", "last_activity_at = ?"]
        params: list[Any] = [to.value, to_ts(now)]
        if to.is_terminal:
            assignments.append("ended_at = ?")
            params.append(to_ts(now))
        for key, value in fields.items():
            assignments.append(f"{key} = ?")
            params.append(_RUN_COLUMNS[key](value))
        marks = ", ".join("?" for _ in allowed)
        params.append(run_id)
        params.extend(s.value for s in allowed)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE runs SET {', '.join(assignments)} "
                f"WHERE run_id = ? AND status IN ({marks})",
                params,
            )
            return cursor.rowcount > 0

    def touch_run(self, run_id: str, now: datetime, attempt: int | None = None) -> None:
        with self._transaction() as conn:
            if attempt is None:
                conn.execute(
                    "UPDATE runs SET last_activity_at = ? WHERE run_id = ?",
                    (to_ts(now), run_id),
                )
            else:
                conn.execute(
                    "UPDATE runs SET last_activity_at = ?, attempt = ? WHERE run_id = ?",
                    (to_ts(now), attempt, run_id),
                )

    def stale_runs(self, older_than: datetime, limit: int = 100) -> list[Run]:
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT * FROM runs
                   WHERE status = ? AND last_activity_at < ?
                   ORDER BY last_activity_at ASC LIMIT ?""",
                (RunStatus.RUNNING.value, to_ts(older_than), limit),
            ).fetchall()
            return [self._row_to_run(r) for r in rows]

    # -- step checkpoints --------------------------------------------------

    def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM steps WHERE run_id = ? AND step_name = ?",
                (run_id, step_name),
            ).fetchone()
            return self._row_to_step(row) if row else None

    def list_steps(self, run_id: str) -> list[StepRecord]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM steps WHERE run_id = ? ORDER BY rowid ASC", (run_id,)
            ).fetchall()
            return [self._row_to_step(r) for r in rows]

    def save_step(self, record: StepRecord) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """INSERT INTO steps
                   (run_id, step_name, status, result, error, attempt, control,
                    wake_at, completed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (run_id, step_name) DO UPDATE SET
                       status = excluded.status,
                       result = excluded.result,
                       error = excluded.error,
                       attempt = excluded.attempt,
                       control = excluded.control,
                       wake_at = excluded.wake_at,
                       completed_at = excluded.completed_at
                   WHERE steps.status != 'succeeded'""",
                self._step_params(record),
            )
            return cursor.rowcount > 0

    def complete_step(
        self, record: StepRecord, next_index: int | None, now: datetime
    ) -> StepRecord:
        record = StepRecord(
            run_id=record.run_id,
            step_name=record.step_name,
            status=StepStatus.SUCCEEDED,
            result=record.result,
            error=record.error,
            attempt=record.attempt,
            control=record.control,
            wake_at=record.wake_at,
            completed_at=record.completed_at or now,
        )
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO steps
                   (run_id, step_name, status, result, error, attempt, control,
                    wake_at, completed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (run_id, step_name) DO UPDATE SET
                       status = excluded.status,
                       result = excluded.result,
                       error = excluded.error,
                       attempt = excluded.attempt,
                       control = excluded.control,
                       wake_at = excluded.wake_at,
                       completed_at = excluded.completed_at
                   WHERE steps.status != 'succeeded'""",
                self._step_params(record),
            )
            if next_index is None:
                conn.execute(
                    "UPDATE runs SET last_activity_at = ? WHERE run_id = ?",
                    (to_ts(now), record.run_id),
                )
            else:
                conn.execute(
                    """UPDATE runs
                       SET last_activity_at = ?,
                           current_step_index = MAX(current_step_index, ?)
                       WHERE run_id = ?""",
                    (to_ts(now), next_index, record.run_id),
                )
            row = conn.execute(
                "SELECT * FROM steps WHERE run_id = ? AND step_name = ?",
                (record.run_id, record.step_name),
            ).fetchone()
            return self._row_to_step(row)

    # -- sleep markers -----------------------------------------------------

    def put_sleep_marker(self, marker: SleepMarker) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO sleep_markers
                   (run_id, wake_at, resume_step_index, reason)
                   VALUES (?, ?, ?, ?)""",
                (
                    marker.run_id,
                    to_ts(marker.wake_at),
                    marker.resume_step_index,
                    marker.reason.value,
                ),
            )

    def get_sleep_marker(self, run_id: str) -> SleepMarker | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM sleep_markers WHERE run_id = ?", (run_id,)
            ).fetchone()
            return self._row_to_marker(row) if row else None

    def delete_sleep_marker(self, run_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM sleep_markers WHERE run_id = ?", (run_id,)
            )
            return cursor.rowcount > 0

    def due_sleep_markers(self, now: datetime, limit: int = 100) -> list[SleepMarker]:
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT * FROM sleep_markers WHERE wake_at <= ?
                   ORDER BY wake_at ASC LIMIT ?""",
                (to_ts(now), limit),
            ).fetchall()
            return [self._row_to_marker(r) for r in rows]

    # -- concurrency slots -------------------------------------------------

    def acquire_slot(
        self,
        function_id: str,
        run_id: str,
        limit: int | None,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        with self._transaction() as conn:
            held = conn.execute(
                "SELECT 1 FROM slots WHERE function_id = ? AND run_id = ?",
                (function_id, run_id),
            ).fetchone()
            if held is None and limit is not None:
                (count,) = conn.execute(
                    "SELECT COUNT(*) FROM slots WHERE function_id = ? AND expires_at > ?",
                    (function_id, to_ts(now)),
                ).fetchone()
                if count >= limit:
                    return False
            conn.execute(
                """INSERT OR REPLACE INTO slots (function_id, run_id, expires_at)
                   VALUES (?, ?, ?)""",
                (function_id, run_id, to_ts(expires_at)),
            )
            return True

    def renew_slot(self, function_id: str, run_id: str, expires_at: datetime) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """UPDATE slots SET expires_at = MAX(expires_at, ?)
                   WHERE function_id = ? AND run_id = ?""",
                (to_ts(expires_at), function_id, run_id),
            )
            return cursor.rowcount > 0

    def release_slot(self, function_id: str, run_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM slots WHERE function_id = ? AND run_id = ?",
                (function_id, run_id),
            )
            return cursor.rowcount > 0

    def count_slots(self, function_id: str, now: datetime) -> int:
        with self._conn() as conn:
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM slots WHERE function_id = ? AND expires_at > ?",
                (function_id, to_ts(now)),
            ).fetchone()
            return int(count)

    def reclaim_expired_slots(self, now: datetime) -> list[tuple[str, str]]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT function_id, run_id FROM slots WHERE expires_at <= ?",
                (to_ts(now),),
            ).fetchall()
            conn.execute("DELETE FROM slots WHERE expires_at <= ?", (to_ts(now),))
            return [(r["function_id"], r["run_id"]) for r in rows]

    # -- throttle buckets --------------------------------------------------

    def throttle_hit(
        self, key: str, limit: int, period: float, now: datetime
    ) -> float | None:
        ts = now.timestamp()
        with self._transaction() as conn:
            conn.execute("DELETE FROM throttle_hits WHERE expires_at <= ?", (ts,))
            rows = conn.execute(
                "SELECT expires_at FROM throttle_hits WHERE key = ? "
                "ORDER BY expires_at ASC",
                (key,),
            ).fetchall()
            if len(rows) < limit:
                conn.execute(
                    "INSERT INTO throttle_hits (key, expires_at) VALUES (?, ?)",
                    (key, ts + period),
                )
                return None
            return max(rows[0]["expires_at"] - ts, 0.001)

    # -- deferred admissions -----------------------------------------------

    def defer(self, admission: DeferredAdmission) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """INSERT INTO deferred
                   (function_id, event_id, not_before, reason, created_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT (function_id, event_id) DO NOTHING""",
                (
                    admission.function_id,
                    admission.event_id,
                    to_ts(admission.not_before),
                    admission.reason.value,
                    to_ts(admission.created_at),
                ),
            )
            if cursor.rowcount > 0:
                return True
            conn.execute(
                """UPDATE deferred SET not_before = ?, reason = ?
                   WHERE function_id = ? AND event_id = ?""",
                (
                    to_ts(admission.not_before),
                    admission.reason.value,
                    admission.function_id,
                    admission.event_id,
                ),
            )
            return False

    def due_deferred(
        self, now: datetime, function_id: str | None = None, limit: int = 100
    ) -> list[DeferredAdmission]:
        with self._conn() as conn:
            query = "SELECT * FROM deferred WHERE not_before <= ?"
            params: list[Any] = [to_ts(now)]
            if function_id is not None:
                query += " AND function_id = ?"
                params.append(function_id)
            query += " ORDER BY id ASC LIMIT ?"
            params.append(limit)
            return [
                self._row_to_deferred(r) for r in conn.execute(query, params).fetchall()
            ]

    def remove_deferred(self, function_id: str, event_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM deferred WHERE function_id = ? AND event_id = ?",
                (function_id, event_id),
            )
            return cursor.rowcount > 0

    def list_deferred(self, function_id: str | None = None) -> list[DeferredAdmission]:
        with self._conn() as conn:
            if function_id is None:
                rows = conn.execute("SELECT * FROM deferred ORDER BY id ASC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM deferred WHERE function_id = ? ORDER BY id ASC",
                    (function_id,),
                ).fetchall()
            return [self._row_to_deferred(r) for r in rows]

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _step_params(record: StepRecord) -> tuple[Any, ...]:
        return (
            record.run_id,
            record.step_name,
            record.status.value,
            dumps(record.result),
            record.error,
            record.attempt,
            record.control,
            to_ts(record.wake_at),
            to_ts(record.completed_at),
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            name=row["name"],
            data=loads(row["data"]) or {},
            id=row["id"],
            occurred_at=from_ts(row["occurred_at"]),  # type: ignore[arg-type]
        )

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> Run:
        return Run(
            run_id=row["run_id"],
            function_id=row["function_id"],
            trigger=Event.from_dict(loads(row["trigger"])),
            status=RunStatus(row["status"]),
            current_step_index=row["current_step_index"],
            attempt=row["attempt"],
            output=loads(row["output"]),
            error=row["error"],
            error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
            created_at=from_ts(row["created_at"]),  # type: ignore[arg-type]
            last_activity_at=from_ts(row["last_activity_at"]),  # type: ignore[arg-type]
            ended_at=from_ts(row["ended_at"]),
        )

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> StepRecord:
        return StepRecord(
            run_id=row["run_id"],
            step_name=row["step_name"],
            status=StepStatus(row["status"]),
            result=loads(row["result"]),
            error=row["error"],
            attempt=row["attempt"],
            control=row["control"],
            wake_at=from_ts(row["wake_at"]),
            completed_at=from_ts(row["completed_at"]),
        )

    @staticmethod
    def _row_to_marker(row: sqlite3.Row) -> SleepMarker:
        return SleepMarker(
            run_id=row["run_id"],
            wake_at=from_ts(row["wake_at"]),  # type: ignore[arg-type]
            resume_step_index=row["resume_step_index"],
            reason=SleepReason(row["reason"]),
        )

    @staticmethod
    def _row_to_deferred(row: sqlite3.Row) -> DeferredAdmission:
        return DeferredAdmission(
            function_id=row["function_id"],
            event_id=row["event_id"],
            not_before=from_ts(row["not_before"]),  # type: ignore[arg-type]
            reason=DeferReason(row["reason"]),
            created_at=from_ts(row["created_at"]),  # type: ignore[arg-type]
        )
