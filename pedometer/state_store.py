"""Durable holder of the engine's :class:`PersistedState`.

Every operation runs under one re-entrant lock, so no two operations
interleave regardless of how many threads call in.  Multi-field
read-modify-write sequences use :meth:`BaseStateStore.transaction`, which
holds the lock for the whole sequence and commits all fields with a single
write.

:class:`JsonStateStore` writes atomically (temp file + ``fsync`` +
``os.replace``) so a crash mid-write never corrupts the file.  A missing
file loads as the sentinel defaults.  A malformed file is renamed aside
with a logged warning before the defaults apply, and an unreadable one
raises :class:`StorageError`.
"""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from threading import RLock
from typing import Protocol

from .constants import SESSION_ID_PREFIX
from .domain_models import PersistedState
from .errors import InvalidParameterError, Result, StorageError, run_catching
from .json_utils import read_json_object, write_json_atomic

LOGGER = logging.getLogger(__name__)

DEFAULT_STATE_PATH = "data/pedometer_state.json"


class StateStore(Protocol):
    """Capability required by the step processor and sensor manager."""

    def get_state(self) -> PersistedState: ...

    def save_state(self, state: PersistedState) -> Result[None]: ...

    def transaction(self) -> AbstractContextManager[PersistedState]: ...

    def generate_new_session_id(self) -> Result[str]: ...

    def get_session_id(self) -> str: ...

    def is_tracking(self) -> bool: ...

    def set_tracking(self, tracking: bool) -> Result[None]: ...


def new_session_id() -> str:
    return f"{SESSION_ID_PREFIX}{uuid.uuid4()}"


class BaseStateStore:
    """Lock-guarded state cache.  Subclasses override :meth:`_persist`."""

    def __init__(self, initial: PersistedState | None = None) -> None:
        self._lock = RLock()
        self._state = initial.copy() if initial is not None else PersistedState()

    # -- persistence hook ------------------------------------------------------

    def _persist(self, state: PersistedState) -> None:
        """Make *state* durable.  Raise :class:`StorageError` on failure."""

    def _commit(self, draft: PersistedState) -> None:
        with self._lock:
            if draft.total_steps < self._state.total_steps:
                raise InvalidParameterError(
                    f"total_steps may not decrease ({self._state.total_steps} -> "
                    f"{draft.total_steps})"
                )
            committed = draft.copy()
            self._persist(committed)
            self._state = committed

    # -- critical section ------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[PersistedState]:
        """Hold the store lock and yield a mutable draft of the state.

        The draft is committed with one write when the block exits cleanly
        and discarded when it raises.
        """
        with self._lock:
            draft = self._state.copy()
            yield draft
            self._commit(draft)

    # -- bulk access -----------------------------------------------------------

    def get_state(self) -> PersistedState:
        with self._lock:
            return self._state.copy()

    def save_state(self, state: PersistedState) -> Result[None]:
        result = run_catching(lambda: self._commit(state))
        if result.is_ok:
            LOGGER.debug("Saved state: %s", state)
        else:
            LOGGER.error("Failed to save state: %s", result.error)
        return result

    # -- per-field accessors ---------------------------------------------------

    def _set(self, **changes: object) -> Result[None]:
        def _apply() -> None:
            with self.transaction() as draft:
                for name, value in changes.items():
                    setattr(draft, name, value)

        result = run_catching(_apply)
        if result.is_failure:
            LOGGER.error("Failed to persist %s: %s", ", ".join(changes), result.error)
        return result

    def get_last_sensor_value(self) -> int:
        with self._lock:
            return self._state.last_sensor_value

    def set_last_sensor_value(self, value: int) -> Result[None]:
        return self._set(last_sensor_value=int(value))

    def get_session_id(self) -> str:
        with self._lock:
            return self._state.session_id

    def set_session_id(self, session_id: str) -> Result[None]:
        return self._set(session_id=str(session_id))

    def get_total_steps(self) -> int:
        with self._lock:
            return self._state.total_steps

    def set_total_steps(self, steps: int) -> Result[None]:
        return self._set(total_steps=int(steps))

    def get_last_timestamp(self) -> int:
        with self._lock:
            return self._state.last_timestamp

    def set_last_timestamp(self, timestamp_ms: int) -> Result[None]:
        return self._set(last_timestamp=int(timestamp_ms))

    def is_tracking(self) -> bool:
        with self._lock:
            return self._state.is_tracking

    def set_tracking(self, tracking: bool) -> Result[None]:
        return self._set(is_tracking=bool(tracking))

    def generate_new_session_id(self) -> Result[str]:
        session_id = new_session_id()
        result = self._set(session_id=session_id)
        if result.is_failure:
            return Result(error=result.error)
        LOGGER.info("Generated new session id %s", session_id)
        return Result.ok(session_id)


class InMemoryStateStore(BaseStateStore):
    """Non-durable store for tests and ephemeral runs."""


class JsonStateStore(BaseStateStore):
    """Load / save :class:`PersistedState` to a JSON file."""

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path or os.environ.get("PEDOMETER_STATE_PATH", DEFAULT_STATE_PATH))
        super().__init__(self._load())

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> PersistedState:
        """Load persisted state.

        A missing file yields the defaults.  A corrupt file is moved aside
        before falling back to defaults, so the next write never replaces
        it.  A file that exists but cannot be read raises
        :class:`StorageError`.
        """
        try:
            data = read_json_object(self._path, context="state", quarantine=True)
        except OSError as exc:
            raise StorageError(f"Cannot load state from {self._path}: {exc}", exc) from exc
        if data is None:
            return PersistedState()
        return PersistedState.from_dict(data)

    def _persist(self, state: PersistedState) -> None:
        try:
            write_json_atomic(self._path, state.to_dict(), prefix=".pedometer_state_")
        except OSError as exc:
            raise StorageError(f"Failed to persist state to {self._path}: {exc}", exc) from exc
