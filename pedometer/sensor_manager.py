"""Tracking lifecycle and the serialized reading pipeline.

:class:`StepSensorManager` owns the ``Stopped``/``Tracking`` state machine.
Sensor callbacks may arrive from any thread; each accepted reading is
queued on a single-worker :class:`WorkerPool`, so one reading is fully
classified, committed and recorded before the next one starts.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from .constants import TRACKING_STOPPED
from .domain_models import RawStepRecord
from .errors import Result, TrackingError, UnsupportedOperationError, run_catching
from .record_store import RecordStore
from .sensor_source import SensorSource
from .state_store import StateStore
from .step_processor import StepProcessor
from .worker_pool import WorkerPool

LOGGER = logging.getLogger(__name__)


class StepSensorManager:
    def __init__(
        self,
        source: SensorSource,
        processor: StepProcessor,
        record_store: RecordStore,
        state_store: StateStore,
        *,
        lane: WorkerPool | None = None,
        background: WorkerPool | None = None,
    ) -> None:
        self._source = source
        self._processor = processor
        self._record_store = record_store
        self._state_store = state_store
        self._lane = lane or WorkerPool(max_workers=1, thread_name_prefix="pedometer-lane")
        self._background = background or WorkerPool(
            max_workers=1, thread_name_prefix="pedometer-bg"
        )
        self._lock = threading.RLock()
        self._tracking = False
        self._awaiting_flush_marker = False
        self._stats_lock = threading.Lock()
        self._processed = 0
        self._dropped = 0
        self._failed = 0
        self._recorded = 0

    # -- lifecycle -------------------------------------------------------------

    def is_sensor_available(self) -> bool:
        return bool(self._source.is_available)

    def initialize(self, reboot_detected: bool = False) -> Result[str]:
        """Resolve the session to continue with and tag the record store."""
        result = self._processor.initialize(reboot_detected=reboot_detected)
        if result.is_ok:
            self._record_store.set_session_id(result.value)
            LOGGER.info("StepSensorManager initialized with session %s", result.value)
        else:
            LOGGER.error("StepSensorManager initialization failed: %s", result.error)
        return result

    def start(self) -> Result[str]:
        """Begin tracking under a fresh session; idempotent while tracking."""

        def _start() -> str:
            with self._lock:
                if not self._source.is_available:
                    raise UnsupportedOperationError(
                        "Step counter sensor is not available on this device"
                    )
                if self._tracking:
                    session_id = self._state_store.get_session_id()
                    LOGGER.debug("start() while already tracking session %s", session_id)
                    return session_id

                session_id = self._processor.start_new_session().unwrap()
                self._record_store.set_session_id(session_id)

                self._tracking = True
                self._awaiting_flush_marker = True
                try:
                    if not self._source.subscribe(self._on_reading):
                        raise TrackingError("Failed to register step counter listener")
                    self._source.flush()
                    self._state_store.set_tracking(True).unwrap()
                except Exception:
                    self._tracking = False
                    self._awaiting_flush_marker = False
                    self._source.unsubscribe()
                    raise
                LOGGER.info("Step tracking started: session %s", session_id)
                return session_id

        result = run_catching(_start)
        if result.is_failure:
            LOGGER.error("Failed to start tracking: %s", result.error)
        return result

    def stop(self) -> Result[str]:
        """Stop tracking; finalize runs in the background.  Idempotent."""

        def _stop() -> str:
            with self._lock:
                if not self._tracking:
                    return TRACKING_STOPPED
                self._tracking = False
                self._awaiting_flush_marker = False
                self._source.unsubscribe()
                persisted = self._state_store.set_tracking(False)
                if persisted.is_failure:
                    LOGGER.warning("Could not persist stopped state: %s", persisted.error)
            self._background.submit_background(self._finalize, description="finalize")
            LOGGER.info("Step tracking stopped")
            return TRACKING_STOPPED

        result = run_catching(_stop)
        if result.is_failure:
            LOGGER.error("Failed to stop tracking: %s", result.error)
        return result

    def _finalize(self) -> None:
        self._processor.finalize().unwrap()

    def drain(self, timeout_s: float | None = None) -> bool:
        """Wait for queued readings and background work to finish."""
        lane_idle = self._lane.wait_idle(timeout_s)
        background_idle = self._background.wait_idle(timeout_s)
        return lane_idle and background_idle

    def shutdown(self, timeout_s: float | None = 5.0) -> None:
        self.stop()
        if not self.drain(timeout_s):
            LOGGER.warning("Timed out draining pending readings during shutdown")
        self._lane.shutdown(wait=True)
        self._background.shutdown(wait=True)

    # -- reading pipeline ------------------------------------------------------

    def _on_reading(self, value: int, timestamp_ms: int) -> None:
        with self._lock:
            if not self._tracking:
                self._count("_dropped")
                return
            if self._awaiting_flush_marker:
                self._awaiting_flush_marker = False
                self._count("_dropped")
                LOGGER.debug("Discarding flush marker delivery %d", value)
                return
            future = self._lane.submit_background(
                self._process_reading, int(value), int(timestamp_ms), description="reading"
            )
        if future is None:
            self._count("_dropped")

    def _process_reading(self, value: int, timestamp_ms: int) -> None:
        result = self._processor.process_sensor_reading(value, timestamp_ms)
        if result.is_failure:
            self._count("_failed")
            return
        outcome = result.value
        self._count("_processed")

        if outcome.session_id != self._record_store.get_session_id():
            LOGGER.info(
                "Session changed %s -> %s",
                self._record_store.get_session_id(),
                outcome.session_id,
            )
            self._record_store.set_session_id(outcome.session_id)

        if not outcome.should_record:
            return
        recorded = self._record_store.record_step(
            RawStepRecord(
                timestamp=timestamp_ms,
                sensor_total_steps=value,
                calculated_steps=outcome.calculated_steps,
                session_id=outcome.session_id,
            )
        )
        if recorded.is_failure:
            self._count("_failed")
            LOGGER.warning("Step record at %d was not persisted: %s", timestamp_ms, recorded.error)
            return
        self._count("_recorded")
        if outcome.is_sensor_reset:
            LOGGER.debug(
                "First reading after reset: sensor=%d calculated=%d",
                value,
                outcome.calculated_steps,
            )

    def _count(self, name: str) -> None:
        with self._stats_lock:
            setattr(self, name, getattr(self, name) + 1)

    # -- observability ---------------------------------------------------------

    @property
    def is_tracking(self) -> bool:
        with self._lock:
            return self._tracking

    @property
    def current_session_id(self) -> str:
        return self._record_store.get_session_id()

    def stats(self) -> dict[str, Any]:
        with self._stats_lock:
            counts = {
                "processed": self._processed,
                "dropped": self._dropped,
                "failed": self._failed,
                "recorded": self._recorded,
            }
        counts["lane"] = self._lane.stats()
        return counts
