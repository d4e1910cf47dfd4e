"""Domain model objects for the step delta engine.

Typed dataclasses for persisted state, per-reading results and stored
records.  ``to_dict`` / ``from_dict`` keep the on-disk JSON and the HTTP
payloads stable.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field, replace
from typing import Any

from .constants import NO_SENSOR_VALUE, NO_SESSION_ID


def now_ms() -> int:
    """Current UTC time in epoch milliseconds."""
    return int(time.time() * 1000)


def _as_int(value: object, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return default
    return default


# ---------------------------------------------------------------------------
# 1) PersistedState
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class PersistedState:
    """The single mutable engine state owned by a :class:`StateStore`."""

    last_sensor_value: int = NO_SENSOR_VALUE
    session_id: str = NO_SESSION_ID
    total_steps: int = 0
    last_timestamp: int = 0
    is_tracking: bool = False

    @property
    def has_baseline(self) -> bool:
        return self.last_sensor_value != NO_SENSOR_VALUE

    def copy(self) -> PersistedState:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastSensorValue": self.last_sensor_value,
            "sessionId": self.session_id,
            "totalSteps": self.total_steps,
            "lastTimestamp": self.last_timestamp,
            "isTracking": self.is_tracking,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PersistedState:
        """Reconstruct from a serialised dict; unknown or bad values fall back to sentinels."""
        session_id = data.get("sessionId")
        return cls(
            last_sensor_value=_as_int(data.get("lastSensorValue"), NO_SENSOR_VALUE),
            session_id=session_id if isinstance(session_id, str) else NO_SESSION_ID,
            total_steps=max(0, _as_int(data.get("totalSteps"), 0)),
            last_timestamp=_as_int(data.get("lastTimestamp"), 0),
            is_tracking=data.get("isTracking") is True,
        )


# ---------------------------------------------------------------------------
# 2) Per-reading classification
# ---------------------------------------------------------------------------


class ResetReason(enum.StrEnum):
    large_decrease = "large_decrease"
    too_small = "too_small"
    drastic_change = "drastic_change"


@dataclass(frozen=True, slots=True)
class StepProcessResult:
    calculated_steps: int
    session_id: str
    is_first_reading: bool = False
    is_sensor_reset: bool = False
    reset_reason: ResetReason | None = None

    @property
    def should_record(self) -> bool:
        """Whether the reading belongs in the record log."""
        return self.calculated_steps > 0 or self.is_first_reading or self.is_sensor_reset


# ---------------------------------------------------------------------------
# 3) Stored records and aggregates
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RawStepRecord:
    """One immutable entry of the append-only step log."""

    timestamp: int
    sensor_total_steps: int
    calculated_steps: int = 0
    session_id: str = NO_SESSION_ID
    id: int | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "steps": self.calculated_steps,
            "calculatedSteps": self.calculated_steps,
            "sensorSteps": self.sensor_total_steps,
            "sessionId": self.session_id,
        }


@dataclass(frozen=True, slots=True)
class SessionSummary:
    session_id: str
    start_time: int
    end_time: int
    total_steps: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "totalSteps": self.total_steps,
        }


@dataclass(frozen=True, slots=True)
class StepSummary:
    start_time: int
    end_time: int
    step_count: int

    def __post_init__(self) -> None:
        if self.end_time < self.start_time:
            raise ValueError("end_time must be at or after start_time")
        if self.step_count < 0:
            raise ValueError("step_count cannot be negative")

    def to_dict(self) -> dict[str, Any]:
        return {
            "startTime": self.start_time,
            "endTime": self.end_time,
            "stepCount": self.step_count,
        }


@dataclass(frozen=True, slots=True)
class SessionSensorValues:
    """First and last raw counter values seen for one session in a window."""

    session_id: str
    first_sensor_value: int
    last_sensor_value: int
