from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from pedometer.constants import NO_SENSOR_VALUE, SESSION_ID_PREFIX
from pedometer.domain_models import PersistedState
from pedometer.errors import InvalidParameterError, StorageError
from pedometer.state_store import InMemoryStateStore, JsonStateStore
from pedometer.step_processor import StepProcessor


def test_defaults_on_missing_file(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state.json")
    state = store.get_state()
    assert state == PersistedState()
    assert state.last_sensor_value == NO_SENSOR_VALUE
    assert state.session_id == ""
    assert not state.has_baseline


def test_state_survives_reload(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    store = JsonStateStore(path)
    store.set_last_sensor_value(1234)
    store.set_session_id("session-x")
    store.set_total_steps(42)
    store.set_last_timestamp(99)
    store.set_tracking(True)

    reloaded = JsonStateStore(path).get_state()
    assert reloaded == PersistedState(
        last_sensor_value=1234,
        session_id="session-x",
        total_steps=42,
        last_timestamp=99,
        is_tracking=True,
    )
    assert json.loads(path.read_text(encoding="utf-8"))["sessionId"] == "session-x"


def test_corrupt_file_falls_back_to_defaults(tmp_path: Path, caplog) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    with caplog.at_level("WARNING"):
        store = JsonStateStore(path)
    assert store.get_state() == PersistedState()
    assert "Corrupt state file" in caplog.text
    assert not path.exists()
    [moved] = tmp_path.glob("state.json.corrupt-*")
    assert moved.read_text(encoding="utf-8") == "{not json"


def test_truncated_file_is_not_overwritten_by_next_reading(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    processor = StepProcessor(JsonStateStore(path))
    for ts, value in enumerate([1000, 1500, 2000]):
        processor.process_sensor_reading(value, ts).unwrap()
    assert JsonStateStore(path).get_total_steps() == 1000

    path.write_bytes(path.read_bytes()[:-5])
    reopened = JsonStateStore(path)
    StepProcessor(reopened).process_sensor_reading(2010, 10).unwrap()

    [moved] = tmp_path.glob("state.json.corrupt-*")
    assert '"totalSteps": 1000' in moved.read_text(encoding="utf-8")
    assert reopened.get_last_sensor_value() == 2010


def test_unreadable_file_raises_storage_error(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"totalSteps": 50}), encoding="utf-8")

    def _fail(self, *args, **kwargs):
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(type(path), "read_text", _fail)
    with pytest.raises(StorageError, match="Cannot load state"):
        JsonStateStore(path)
    monkeypatch.undo()
    assert json.loads(path.read_text(encoding="utf-8")) == {"totalSteps": 50}


def test_non_object_file_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("[1, 2, 3]", encoding="utf-8")
    assert JsonStateStore(path).get_state() == PersistedState()


def test_bad_field_types_fall_back_per_field(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text(
        json.dumps({"lastSensorValue": "oops", "sessionId": 7, "totalSteps": 12}),
        encoding="utf-8",
    )
    state = JsonStateStore(path).get_state()
    assert state.last_sensor_value == NO_SENSOR_VALUE
    assert state.session_id == ""
    assert state.total_steps == 12


def test_writes_leave_no_temp_files(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state.json")
    for value in range(5):
        store.set_last_sensor_value(value)
    assert sorted(p.name for p in tmp_path.iterdir()) == ["state.json"]


def test_env_var_sets_default_path(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "env-state.json"
    monkeypatch.setenv("PEDOMETER_STATE_PATH", str(path))
    store = JsonStateStore()
    store.set_total_steps(3)
    assert store.path == path
    assert path.is_file()


def test_persist_failure_surfaces_storage_error_and_keeps_cache(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    store = JsonStateStore(blocker / "state.json")

    result = store.set_total_steps(10)

    assert result.is_failure
    assert isinstance(result.error, StorageError)
    assert store.get_total_steps() == 0


def test_total_steps_may_not_decrease() -> None:
    store = InMemoryStateStore(PersistedState(total_steps=10))
    result = store.set_total_steps(9)
    assert result.is_failure
    assert isinstance(result.error, InvalidParameterError)
    assert store.get_total_steps() == 10


def test_transaction_commits_all_fields_at_once() -> None:
    store = InMemoryStateStore()
    with store.transaction() as draft:
        draft.last_sensor_value = 10
        draft.total_steps = 5
        draft.session_id = "session-t"
        # Uncommitted changes are invisible outside the draft.
        assert store.get_state() == PersistedState()
    assert store.get_state() == PersistedState(
        last_sensor_value=10, total_steps=5, session_id="session-t"
    )


def test_transaction_rolls_back_on_error() -> None:
    store = InMemoryStateStore(PersistedState(total_steps=1))
    with pytest.raises(RuntimeError):
        with store.transaction() as draft:
            draft.total_steps = 100
            raise RuntimeError("abort")
    assert store.get_total_steps() == 1


def test_save_state_replaces_whole_state() -> None:
    store = InMemoryStateStore()
    target = PersistedState(last_sensor_value=5, session_id="s", total_steps=2, is_tracking=True)
    assert store.save_state(target).is_ok
    assert store.get_state() == target
    target.total_steps = 1000
    assert store.get_total_steps() == 2


def test_generate_new_session_id_is_unique_and_persisted() -> None:
    store = InMemoryStateStore()
    first = store.generate_new_session_id().unwrap()
    second = store.generate_new_session_id().unwrap()
    assert first != second
    assert first.startswith(SESSION_ID_PREFIX)
    assert store.get_session_id() == second


def test_concurrent_transactions_do_not_lose_updates() -> None:
    store = InMemoryStateStore()

    def _bump() -> None:
        for _ in range(200):
            with store.transaction() as draft:
                draft.total_steps += 1

    threads = [threading.Thread(target=_bump) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert store.get_total_steps() == 1600
