"""Reset detection and step-delta computation for raw counter readings.

The classification half (:func:`detect_sensor_reset`,
:func:`compute_step_delta`) is pure and cannot fail.  :class:`StepProcessor`
wraps it with state handling: each reading is classified against the state
left by the previous reading, and every resulting field change (baseline,
timestamp, total, and a fresh session id on reset) is committed in one
:meth:`StateStore.transaction`.
"""

from __future__ import annotations

import logging

from .constants import (
    DRASTIC_CHANGE_THRESHOLD,
    JITTER_TOLERANCE,
    NO_SENSOR_VALUE,
    REBOOT_CURRENT_MAX,
    REBOOT_PREVIOUS_MIN,
    SENSOR_RESET_THRESHOLD,
)
from .domain_models import ResetReason, StepProcessResult
from .errors import Result, run_catching
from .state_store import StateStore, new_session_id

LOGGER = logging.getLogger(__name__)


def detect_sensor_reset(current: int, previous: int) -> ResetReason | None:
    """Return why *current* looks like a restarted counter, or ``None``."""
    if current < previous - SENSOR_RESET_THRESHOLD:
        return ResetReason.large_decrease
    if previous > REBOOT_PREVIOUS_MIN and current < REBOOT_CURRENT_MAX:
        return ResetReason.too_small
    if abs(current - previous) > DRASTIC_CHANGE_THRESHOLD:
        return ResetReason.drastic_change
    return None


def compute_step_delta(current: int, previous: int, *, is_reset: bool) -> int:
    """Steps attributed to *current* given the stored *previous* value."""
    if is_reset:
        # The restarted counter's own value approximates steps since restart.
        return current
    diff = current - previous
    if diff < 0:
        return abs(diff) if abs(diff) <= JITTER_TOLERANCE else 0
    return diff


class StepProcessor:
    """Turns ``(sensor_value, timestamp)`` readings into step deltas."""

    def __init__(self, state_store: StateStore) -> None:
        self._state_store = state_store

    def initialize(self, reboot_detected: bool = False) -> Result[str]:
        """Resolve the session to continue with after process start."""

        def _initialize() -> str:
            with self._state_store.transaction() as state:
                if state.session_id and not reboot_detected:
                    LOGGER.info("StepProcessor resuming session %s", state.session_id)
                    return state.session_id
                state.session_id = new_session_id()
                LOGGER.info(
                    "StepProcessor started session %s%s",
                    state.session_id,
                    " (device reboot detected)" if reboot_detected else "",
                )
                return state.session_id

        return run_catching(_initialize)

    def process_sensor_reading(
        self, current_sensor_value: int, timestamp: int
    ) -> Result[StepProcessResult]:
        def _process() -> StepProcessResult:
            current = int(current_sensor_value)
            with self._state_store.transaction() as state:
                previous = state.last_sensor_value
                state.last_sensor_value = current
                state.last_timestamp = int(timestamp)

                if previous == NO_SENSOR_VALUE:
                    LOGGER.debug("First reading %d establishes the baseline", current)
                    return StepProcessResult(
                        calculated_steps=0,
                        session_id=state.session_id,
                        is_first_reading=True,
                    )

                reason = detect_sensor_reset(current, previous)
                delta = compute_step_delta(current, previous, is_reset=reason is not None)
                if reason is not None:
                    state.session_id = new_session_id()
                    LOGGER.info(
                        "Sensor reset detected (previous=%d current=%d reason=%s); "
                        "new session %s",
                        previous,
                        current,
                        reason,
                        state.session_id,
                    )
                elif current < previous and delta == 0:
                    LOGGER.debug(
                        "Ignoring anomalous decrease previous=%d current=%d", previous, current
                    )
                if delta > 0:
                    state.total_steps += delta
                return StepProcessResult(
                    calculated_steps=delta,
                    session_id=state.session_id,
                    is_sensor_reset=reason is not None,
                    reset_reason=reason,
                )

        result = run_catching(_process)
        if result.is_failure:
            LOGGER.error(
                "Failed to process sensor reading %s at %s: %s",
                current_sensor_value,
                timestamp,
                result.error,
            )
        return result

    def start_new_session(self) -> Result[str]:
        return self._state_store.generate_new_session_id()

    def finalize(self) -> Result[None]:
        # State is committed per reading; nothing is buffered.
        return Result.ok(None)
