"""Append-only step record log with range and per-session queries.

Records are never updated.  They leave the log only through retention
cleanup, which is triggered from :meth:`record_step` according to a
:class:`RetentionPolicy` instead of a background timer.

:class:`SQLiteRecordStore` keeps the log in a single SQLite file (WAL mode,
versioned schema).  :class:`InMemoryRecordStore` satisfies the same
contract for tests.
"""

from __future__ import annotations

import logging
import random
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from threading import Lock, RLock
from typing import Protocol

from .constants import (
    DEFAULT_CLEANUP_EVERY_INSERTS,
    DEFAULT_CLEANUP_PROBABILITY,
    DEFAULT_RETENTION_MS,
    MAX_TIMESTAMP_MS,
    UNKNOWN_SESSION_PREFIX,
)
from .domain_models import (
    RawStepRecord,
    SessionSensorValues,
    SessionSummary,
    StepSummary,
    now_ms,
)
from .errors import InvalidParameterError, Result, StorageError, run_catching

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class RetentionPolicy:
    """When and how far back :meth:`record_step` prunes the log.

    With ``cleanup_probability`` set, each insert triggers cleanup with that
    probability.  Otherwise cleanup runs on every ``cleanup_every``-th insert.
    """

    retention_ms: int = DEFAULT_RETENTION_MS
    cleanup_every: int | None = DEFAULT_CLEANUP_EVERY_INSERTS
    cleanup_probability: float | None = None

    def __post_init__(self) -> None:
        if self.retention_ms <= 0:
            raise ValueError(f"retention_ms must be positive, got {self.retention_ms!r}")
        if self.cleanup_every is not None and self.cleanup_every < 1:
            raise ValueError(f"cleanup_every must be >=1, got {self.cleanup_every!r}")
        if self.cleanup_probability is not None and not 0.0 <= self.cleanup_probability <= 1.0:
            raise ValueError(
                f"cleanup_probability must be within [0, 1], got {self.cleanup_probability!r}"
            )

    @classmethod
    def probabilistic(
        cls,
        probability: float = DEFAULT_CLEANUP_PROBABILITY,
        retention_ms: int = DEFAULT_RETENTION_MS,
    ) -> RetentionPolicy:
        return cls(retention_ms=retention_ms, cleanup_every=None, cleanup_probability=probability)

    def should_cleanup(self, insert_count: int, rng: random.Random) -> bool:
        if self.cleanup_probability is not None:
            return rng.random() < self.cleanup_probability
        if self.cleanup_every is not None:
            return insert_count % self.cleanup_every == 0
        return False


class RecordStore(Protocol):
    """Capability used by the sensor manager and the query surface."""

    def set_session_id(self, session_id: str) -> None: ...

    def get_session_id(self) -> str: ...

    def record_step(self, record: RawStepRecord) -> Result[None]: ...

    def get_steps_between(self, from_ms: int, to_ms: int) -> Result[int]: ...

    def get_detailed_steps_between(
        self, from_ms: int, to_ms: int
    ) -> Result[list[RawStepRecord]]: ...

    def get_session_summaries(self, from_ms: int, to_ms: int) -> Result[list[SessionSummary]]: ...

    def close(self) -> None: ...


def _require_timestamp(name: str, value: int) -> None:
    if abs(value) > MAX_TIMESTAMP_MS:
        raise InvalidParameterError(f"{name} out of range: {value}")


def _require_range(from_ms: int, to_ms: int) -> None:
    _require_timestamp("from_ms", from_ms)
    _require_timestamp("to_ms", to_ms)
    if to_ms < from_ms:
        raise InvalidParameterError(
            f"End time must be at or after start time (from={from_ms}, to={to_ms})"
        )


class BaseRecordStore:
    """Session tagging, validation and retention shared by all backends.

    Subclasses implement the ``_db_*`` storage primitives.
    """

    def __init__(
        self,
        *,
        retention: RetentionPolicy | None = None,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
    ) -> None:
        self.retention = retention or RetentionPolicy()
        self._clock = clock
        self._rng = rng or random.Random()
        self._session_lock = Lock()
        self._session_id = ""
        self._insert_count = 0

    # -- current session tag ---------------------------------------------------

    def set_session_id(self, session_id: str) -> None:
        with self._session_lock:
            self._session_id = session_id
        LOGGER.debug("Record store session set to %s", session_id)

    def get_session_id(self) -> str:
        with self._session_lock:
            return self._session_id

    # -- write -----------------------------------------------------------------

    def record_step(self, record: RawStepRecord) -> Result[None]:
        def _record() -> None:
            with self._session_lock:
                effective = record.session_id or self._session_id
                if not effective:
                    effective = f"{UNKNOWN_SESSION_PREFIX}{self._clock()}"
                    LOGGER.warning(
                        "Recording step at %d without a session id; using %s",
                        record.timestamp,
                        effective,
                    )
                self._insert_count += 1
                insert_count = self._insert_count
            self._db_insert(
                RawStepRecord(
                    timestamp=record.timestamp,
                    sensor_total_steps=record.sensor_total_steps,
                    calculated_steps=record.calculated_steps,
                    session_id=effective,
                )
            )
            if self.retention.should_cleanup(insert_count, self._rng):
                LOGGER.debug("Running retention cleanup after insert #%d", insert_count)
                cleaned = self.cleanup_old_data(self.retention.retention_ms)
                if cleaned.is_failure:
                    LOGGER.warning("Retention cleanup failed: %s", cleaned.error)

        result = run_catching(_record)
        if result.is_failure:
            LOGGER.error("Failed to record step at %d: %s", record.timestamp, result.error)
        return result

    def cleanup_old_data(self, keep_ms: int) -> Result[int]:
        """Delete records older than *keep_ms* before now; return how many went."""

        def _cleanup() -> int:
            cutoff = self._clock() - int(keep_ms)
            deleted = self._db_delete_before(cutoff)
            if deleted:
                LOGGER.info("Deleted %d step record(s) older than %d", deleted, cutoff)
            return deleted

        return run_catching(_cleanup)

    # -- range queries ---------------------------------------------------------

    def get_steps_between(self, from_ms: int, to_ms: int) -> Result[int]:
        def _query() -> int:
            _require_range(from_ms, to_ms)
            return self._db_sum_between(from_ms, to_ms)

        return run_catching(_query)

    def get_step_summary(self, from_ms: int, to_ms: int) -> Result[StepSummary]:
        return self.get_steps_between(from_ms, to_ms).map(
            lambda total: StepSummary(start_time=from_ms, end_time=to_ms, step_count=total)
        )

    def get_detailed_steps_between(self, from_ms: int, to_ms: int) -> Result[list[RawStepRecord]]:
        def _query() -> list[RawStepRecord]:
            _require_range(from_ms, to_ms)
            return self._db_list_between(from_ms, to_ms)

        return run_catching(_query)

    def get_session_summaries(self, from_ms: int, to_ms: int) -> Result[list[SessionSummary]]:
        def _query() -> list[SessionSummary]:
            _require_range(from_ms, to_ms)
            return self._db_session_summaries(from_ms, to_ms)

        return run_catching(_query)

    def get_session_sensor_values(
        self, from_ms: int, to_ms: int
    ) -> Result[list[SessionSensorValues]]:
        def _query() -> list[SessionSensorValues]:
            _require_range(from_ms, to_ms)
            return self._db_session_sensor_values(from_ms, to_ms)

        return run_catching(_query)

    # -- point lookups ---------------------------------------------------------

    def get_latest_step(self) -> Result[RawStepRecord | None]:
        return run_catching(lambda: self._db_latest())

    def get_latest_step_by_session(self, session_id: str) -> Result[RawStepRecord | None]:
        return run_catching(lambda: self._db_latest(session_id=session_id))

    def get_latest_step_before(self, timestamp_ms: int) -> Result[RawStepRecord | None]:
        def _query() -> RawStepRecord | None:
            _require_timestamp("timestamp_ms", timestamp_ms)
            return self._db_latest(at_or_before=timestamp_ms)

        return run_catching(_query)

    def close(self) -> None:
        """Release backend resources."""

    # -- storage primitives ----------------------------------------------------

    def _db_insert(self, record: RawStepRecord) -> None:
        raise NotImplementedError

    def _db_delete_before(self, cutoff_ms: int) -> int:
        raise NotImplementedError

    def _db_sum_between(self, from_ms: int, to_ms: int) -> int:
        raise NotImplementedError

    def _db_list_between(self, from_ms: int, to_ms: int) -> list[RawStepRecord]:
        raise NotImplementedError

    def _db_session_summaries(self, from_ms: int, to_ms: int) -> list[SessionSummary]:
        raise NotImplementedError

    def _db_session_sensor_values(self, from_ms: int, to_ms: int) -> list[SessionSensorValues]:
        raise NotImplementedError

    def _db_latest(
        self, *, session_id: str | None = None, at_or_before: int | None = None
    ) -> RawStepRecord | None:
        raise NotImplementedError


# -- SQLite backend -------------------------------------------------------------

_SCHEMA_VERSION = 1

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS steps (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp           INTEGER NOT NULL,
    sensor_total_steps  INTEGER NOT NULL,
    calculated_steps    INTEGER NOT NULL DEFAULT 0,
    session_id          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_steps_timestamp ON steps(timestamp);
CREATE INDEX IF NOT EXISTS idx_steps_session_id ON steps(session_id);
"""

_RECORD_COLS = "id, timestamp, sensor_total_steps, calculated_steps, session_id"


def _row_to_record(row: tuple) -> RawStepRecord:
    rid, ts, sensor, calculated, session_id = row
    return RawStepRecord(
        timestamp=int(ts),
        sensor_total_steps=int(sensor),
        calculated_steps=int(calculated),
        session_id=str(session_id),
        id=int(rid),
    )


class SQLiteRecordStore(BaseRecordStore):
    """Thin wrapper around a SQLite database holding the step log."""

    def __init__(
        self,
        db_path: Path,
        *,
        retention: RetentionPolicy | None = None,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(retention=retention, clock=clock, rng=rng)
        self.db_path = Path(db_path)
        self._lock = RLock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA wal_autocheckpoint=500")
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"Cannot open step database {self.db_path}: {exc}", exc) from exc
        self._ensure_schema()

    # -- lifecycle ------------------------------------------------------------

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _cursor(self, *, commit: bool = True) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self._conn.cursor()
            try:
                yield cur
                if commit:
                    self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            finally:
                cur.close()

    def _ensure_schema(self) -> None:
        with self._cursor() as cur:
            cur.executescript(_SCHEMA_SQL)
        with self._cursor() as cur:
            cur.execute("SELECT value FROM schema_meta WHERE key = ?", ("version",))
            row = cur.fetchone()
            if row is None:
                cur.execute(
                    "INSERT INTO schema_meta (key, value) VALUES (?, ?)",
                    ("version", str(_SCHEMA_VERSION)),
                )
                return
            version = int(str(row[0]))
            if version != _SCHEMA_VERSION:
                raise StorageError(
                    f"Unsupported step DB schema version {version}; "
                    f"expected {_SCHEMA_VERSION}. Delete the database file to recreate."
                )

    # -- primitives -----------------------------------------------------------

    def _db_insert(self, record: RawStepRecord) -> None:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO steps (timestamp, sensor_total_steps, calculated_steps, session_id) "
                "VALUES (?, ?, ?, ?)",
                (
                    record.timestamp,
                    record.sensor_total_steps,
                    record.calculated_steps,
                    record.session_id,
                ),
            )

    def _db_delete_before(self, cutoff_ms: int) -> int:
        with self._cursor() as cur:
            cur.execute("DELETE FROM steps WHERE timestamp < ?", (cutoff_ms,))
            return max(0, cur.rowcount)

    def _db_sum_between(self, from_ms: int, to_ms: int) -> int:
        with self._cursor(commit=False) as cur:
            cur.execute(
                "SELECT COALESCE(SUM(calculated_steps), 0) FROM steps "
                "WHERE timestamp BETWEEN ? AND ?",
                (from_ms, to_ms),
            )
            return int(cur.fetchone()[0])

    def _db_list_between(self, from_ms: int, to_ms: int) -> list[RawStepRecord]:
        with self._cursor(commit=False) as cur:
            cur.execute(
                f"SELECT {_RECORD_COLS} FROM steps WHERE timestamp BETWEEN ? AND ? "
                "ORDER BY timestamp ASC, id ASC",
                (from_ms, to_ms),
            )
            rows = cur.fetchall()
        return [_row_to_record(row) for row in rows]

    def _db_session_summaries(self, from_ms: int, to_ms: int) -> list[SessionSummary]:
        with self._cursor(commit=False) as cur:
            cur.execute(
                "SELECT session_id, MIN(timestamp) AS start_time, MAX(timestamp) AS end_time, "
                "SUM(calculated_steps) AS total_steps "
                "FROM steps WHERE timestamp BETWEEN ? AND ? "
                "GROUP BY session_id ORDER BY start_time, session_id",
                (from_ms, to_ms),
            )
            rows = cur.fetchall()
        return [
            SessionSummary(
                session_id=str(sid),
                start_time=int(start),
                end_time=int(end),
                total_steps=int(total or 0),
            )
            for sid, start, end, total in rows
        ]

    def _db_session_sensor_values(self, from_ms: int, to_ms: int) -> list[SessionSensorValues]:
        with self._cursor(commit=False) as cur:
            cur.execute(
                "SELECT s.session_id, "
                "(SELECT f.sensor_total_steps FROM steps f "
                " WHERE f.session_id = s.session_id AND f.timestamp BETWEEN ? AND ? "
                " ORDER BY f.timestamp ASC, f.id ASC LIMIT 1), "
                "(SELECT l.sensor_total_steps FROM steps l "
                " WHERE l.session_id = s.session_id AND l.timestamp BETWEEN ? AND ? "
                " ORDER BY l.timestamp DESC, l.id DESC LIMIT 1) "
                "FROM steps s WHERE s.timestamp BETWEEN ? AND ? "
                "GROUP BY s.session_id ORDER BY MIN(s.timestamp)",
                (from_ms, to_ms, from_ms, to_ms, from_ms, to_ms),
            )
            rows = cur.fetchall()
        return [
            SessionSensorValues(
                session_id=str(sid), first_sensor_value=int(first), last_sensor_value=int(last)
            )
            for sid, first, last in rows
        ]

    def _db_latest(
        self, *, session_id: str | None = None, at_or_before: int | None = None
    ) -> RawStepRecord | None:
        clauses: list[str] = []
        params: list[object] = []
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if at_or_before is not None:
            clauses.append("timestamp <= ?")
            params.append(at_or_before)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        with self._cursor(commit=False) as cur:
            cur.execute(
                f"SELECT {_RECORD_COLS} FROM steps {where}ORDER BY timestamp DESC, id DESC LIMIT 1",
                params,
            )
            row = cur.fetchone()
        return _row_to_record(row) if row is not None else None


# -- in-memory backend ------------------------------------------------------------


class InMemoryRecordStore(BaseRecordStore):
    """List-backed record log for tests and ephemeral runs."""

    def __init__(
        self,
        *,
        retention: RetentionPolicy | None = None,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(retention=retention, clock=clock, rng=rng)
        self._lock = RLock()
        self._records: list[RawStepRecord] = []
        self._next_id = 1

    def _in_range(self, from_ms: int, to_ms: int) -> list[RawStepRecord]:
        with self._lock:
            rows = [r for r in self._records if from_ms <= r.timestamp <= to_ms]
        return sorted(rows, key=lambda r: (r.timestamp, r.id or 0))

    def _db_insert(self, record: RawStepRecord) -> None:
        with self._lock:
            self._records.append(
                RawStepRecord(
                    timestamp=record.timestamp,
                    sensor_total_steps=record.sensor_total_steps,
                    calculated_steps=record.calculated_steps,
                    session_id=record.session_id,
                    id=self._next_id,
                )
            )
            self._next_id += 1

    def _db_delete_before(self, cutoff_ms: int) -> int:
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.timestamp >= cutoff_ms]
            return before - len(self._records)

    def _db_sum_between(self, from_ms: int, to_ms: int) -> int:
        return sum(r.calculated_steps for r in self._in_range(from_ms, to_ms))

    def _db_list_between(self, from_ms: int, to_ms: int) -> list[RawStepRecord]:
        return self._in_range(from_ms, to_ms)

    def _group_by_session(self, from_ms: int, to_ms: int) -> dict[str, list[RawStepRecord]]:
        groups: dict[str, list[RawStepRecord]] = {}
        for record in self._in_range(from_ms, to_ms):
            groups.setdefault(record.session_id, []).append(record)
        return groups

    def _db_session_summaries(self, from_ms: int, to_ms: int) -> list[SessionSummary]:
        summaries = [
            SessionSummary(
                session_id=sid,
                start_time=rows[0].timestamp,
                end_time=rows[-1].timestamp,
                total_steps=sum(r.calculated_steps for r in rows),
            )
            for sid, rows in self._group_by_session(from_ms, to_ms).items()
        ]
        return sorted(summaries, key=lambda s: (s.start_time, s.session_id))

    def _db_session_sensor_values(self, from_ms: int, to_ms: int) -> list[SessionSensorValues]:
        return [
            SessionSensorValues(
                session_id=sid,
                first_sensor_value=rows[0].sensor_total_steps,
                last_sensor_value=rows[-1].sensor_total_steps,
            )
            for sid, rows in self._group_by_session(from_ms, to_ms).items()
        ]

    def _db_latest(
        self, *, session_id: str | None = None, at_or_before: int | None = None
    ) -> RawStepRecord | None:
        with self._lock:
            rows = [
                r
                for r in self._records
                if (session_id is None or r.session_id == session_id)
                and (at_or_before is None or r.timestamp <= at_or_before)
            ]
        if not rows:
            return None
        return max(rows, key=lambda r: (r.timestamp, r.id or 0))
