from __future__ import annotations

import random
import sqlite3
from pathlib import Path

import pytest

from pedometer.constants import MS_PER_DAY, UNKNOWN_SESSION_PREFIX
from pedometer.errors import InvalidParameterError, StorageError
from pedometer.record_store import InMemoryRecordStore, RetentionPolicy, SQLiteRecordStore

from builders import FakeClock, make_record


@pytest.fixture(params=["sqlite", "memory"])
def store(request, tmp_path: Path, clock: FakeClock):
    retention = RetentionPolicy(cleanup_every=None)
    if request.param == "sqlite":
        backend = SQLiteRecordStore(tmp_path / "steps.db", retention=retention, clock=clock)
    else:
        backend = InMemoryRecordStore(retention=retention, clock=clock)
    try:
        yield backend
    finally:
        backend.close()


def test_sum_over_inclusive_range(store) -> None:
    for ts, steps in [(100, 5), (200, 7), (300, 11), (400, 13)]:
        assert store.record_step(make_record(ts, steps)).is_ok
    assert store.get_steps_between(200, 300).unwrap() == 18
    assert store.get_steps_between(0, 1000).unwrap() == 36
    assert store.get_steps_between(401, 500).unwrap() == 0


def test_reversed_range_is_invalid_parameter(store) -> None:
    for query in (
        store.get_steps_between,
        store.get_detailed_steps_between,
        store.get_session_summaries,
        store.get_session_sensor_values,
    ):
        result = query(500, 100)
        assert result.is_failure
        assert isinstance(result.error, InvalidParameterError)


def test_detailed_records_are_ascending(store) -> None:
    for ts in (300, 100, 200):
        store.record_step(make_record(ts, ts // 100, sensor=ts))
    records = store.get_detailed_steps_between(0, 1000).unwrap()
    assert [r.timestamp for r in records] == [100, 200, 300]
    assert all(r.id is not None for r in records)
    assert records[0].to_dict() == {
        "timestamp": 100,
        "steps": 1,
        "calculatedSteps": 1,
        "sensorSteps": 100,
        "sessionId": "session-a",
    }


def test_session_summaries_group_and_order_by_start(store) -> None:
    store.record_step(make_record(500, 3, session="session-b"))
    store.record_step(make_record(100, 0, session="session-a"))
    store.record_step(make_record(200, 4, session="session-a"))
    store.record_step(make_record(700, 5, session="session-b"))

    summaries = store.get_session_summaries(0, 1000).unwrap()
    assert [s.to_dict() for s in summaries] == [
        {"sessionId": "session-a", "startTime": 100, "endTime": 200, "totalSteps": 4},
        {"sessionId": "session-b", "startTime": 500, "endTime": 700, "totalSteps": 8},
    ]


def test_session_sensor_values_use_first_and_last_record(store) -> None:
    store.record_step(make_record(100, 0, sensor=1000, session="session-a"))
    store.record_step(make_record(200, 10, sensor=1010, session="session-a"))
    store.record_step(make_record(300, 5, sensor=1015, session="session-a"))
    store.record_step(make_record(400, 20, sensor=20, session="session-b"))

    values = {v.session_id: v for v in store.get_session_sensor_values(150, 1000).unwrap()}
    assert values["session-a"].first_sensor_value == 1010
    assert values["session-a"].last_sensor_value == 1015
    assert values["session-b"].first_sensor_value == 20
    assert values["session-b"].last_sensor_value == 20


def test_empty_session_id_uses_current_tag(store) -> None:
    store.set_session_id("session-tag")
    store.record_step(make_record(100, 1, session=""))
    assert store.get_detailed_steps_between(0, 200).unwrap()[0].session_id == "session-tag"


def test_missing_session_falls_back_to_unknown(store, clock: FakeClock, caplog) -> None:
    with caplog.at_level("WARNING"):
        assert store.record_step(make_record(100, 1, session="")).is_ok
    record = store.get_detailed_steps_between(0, 200).unwrap()[0]
    assert record.session_id == f"{UNKNOWN_SESSION_PREFIX}{clock.now}"
    assert "without a session id" in caplog.text


def test_step_summary(store) -> None:
    store.record_step(make_record(100, 6))
    summary = store.get_step_summary(0, 1000).unwrap()
    assert summary.to_dict() == {"startTime": 0, "endTime": 1000, "stepCount": 6}


def test_latest_step_lookups(store) -> None:
    assert store.get_latest_step().unwrap() is None
    store.record_step(make_record(100, 1, session="session-a"))
    store.record_step(make_record(300, 2, session="session-b"))
    store.record_step(make_record(200, 3, session="session-a"))

    assert store.get_latest_step().unwrap().timestamp == 300
    assert store.get_latest_step_by_session("session-a").unwrap().timestamp == 200
    assert store.get_latest_step_by_session("session-z").unwrap() is None
    assert store.get_latest_step_before(250).unwrap().timestamp == 200
    assert store.get_latest_step_before(50).unwrap() is None


def test_cleanup_old_data_deletes_only_expired(store, clock: FakeClock) -> None:
    old = clock.now - 31 * MS_PER_DAY
    recent = clock.now - 1 * MS_PER_DAY
    store.record_step(make_record(old, 4))
    store.record_step(make_record(recent, 6))

    assert store.cleanup_old_data(30 * MS_PER_DAY).unwrap() == 1
    remaining = store.get_detailed_steps_between(0, clock.now).unwrap()
    assert [r.timestamp for r in remaining] == [recent]


def test_cleanup_keeps_record_exactly_at_window_edge(store, clock: FakeClock) -> None:
    keep_ms = 30 * MS_PER_DAY
    edge = clock.now - keep_ms
    store.record_step(make_record(edge - 1, 3))
    store.record_step(make_record(edge, 5))

    assert store.cleanup_old_data(keep_ms).unwrap() == 1
    remaining = store.get_detailed_steps_between(0, clock.now).unwrap()
    assert [r.timestamp for r in remaining] == [edge]


@pytest.mark.parametrize("bounds", [(0, 10**19), (-(10**19), 0)])
def test_out_of_range_bounds_are_invalid_parameter(store, bounds: tuple[int, int]) -> None:
    for query in (
        store.get_steps_between,
        store.get_detailed_steps_between,
        store.get_session_summaries,
    ):
        assert isinstance(query(*bounds).error, InvalidParameterError)
    assert isinstance(store.get_latest_step_before(10**19).error, InvalidParameterError)


# ---------------------------------------------------------------------------
# Retention trigger
# ---------------------------------------------------------------------------


def test_deterministic_cleanup_every_k_inserts(clock: FakeClock) -> None:
    store = InMemoryRecordStore(
        retention=RetentionPolicy(retention_ms=MS_PER_DAY, cleanup_every=3), clock=clock
    )
    expired = clock.now - 2 * MS_PER_DAY
    store.record_step(make_record(expired, 1))
    store.record_step(make_record(expired, 1))
    assert store.get_steps_between(0, clock.now).unwrap() == 2

    store.record_step(make_record(clock.now, 5))
    assert store.get_steps_between(0, clock.now).unwrap() == 5


def test_probabilistic_cleanup_uses_injected_rng(clock: FakeClock) -> None:
    class _AlwaysLow(random.Random):
        def random(self) -> float:
            return 0.0

    store = InMemoryRecordStore(
        retention=RetentionPolicy.probabilistic(retention_ms=MS_PER_DAY),
        clock=clock,
        rng=_AlwaysLow(),
    )
    store.record_step(make_record(clock.now - 2 * MS_PER_DAY, 1))
    assert store.get_steps_between(0, clock.now).unwrap() == 0


def test_retention_policy_validation() -> None:
    with pytest.raises(ValueError):
        RetentionPolicy(retention_ms=0)
    with pytest.raises(ValueError):
        RetentionPolicy(cleanup_every=0)
    with pytest.raises(ValueError):
        RetentionPolicy(cleanup_probability=1.5)


def test_cleanup_failure_does_not_fail_the_write(clock: FakeClock) -> None:
    class _BrokenCleanup(InMemoryRecordStore):
        def _db_delete_before(self, cutoff_ms: int) -> int:
            raise sqlite3.OperationalError("locked")

    store = _BrokenCleanup(retention=RetentionPolicy(cleanup_every=1), clock=clock)
    assert store.record_step(make_record(clock.now, 1)).is_ok
    assert store.cleanup_old_data(1).is_failure


# ---------------------------------------------------------------------------
# SQLite specifics
# ---------------------------------------------------------------------------


def test_sqlite_records_survive_reopen(tmp_path: Path, clock: FakeClock) -> None:
    path = tmp_path / "steps.db"
    first = SQLiteRecordStore(path, clock=clock)
    first.record_step(make_record(100, 9))
    first.close()

    second = SQLiteRecordStore(path, clock=clock)
    try:
        assert second.get_steps_between(0, 1000).unwrap() == 9
    finally:
        second.close()


def test_schema_version_mismatch_fails_fast(tmp_path: Path) -> None:
    db_path = tmp_path / "steps.db"
    conn = sqlite3.connect(str(db_path))
    conn.execute("CREATE TABLE schema_meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
    conn.execute("INSERT INTO schema_meta (key, value) VALUES ('version', '0')")
    conn.commit()
    conn.close()

    with pytest.raises(StorageError, match="Unsupported step DB schema version"):
        SQLiteRecordStore(db_path)


def test_sqlite_write_failure_is_storage_error(tmp_path: Path, clock: FakeClock) -> None:
    store = SQLiteRecordStore(tmp_path / "steps.db", clock=clock)
    store.close()
    result = store.record_step(make_record(100, 1))
    assert result.is_failure
    assert isinstance(result.error, StorageError)
