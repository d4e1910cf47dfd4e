"""Public facade over the step delta engine.

:class:`PedometerService` wires the state store, step processor, record
store and sensor manager together and exposes the operations a host
(the HTTP API, a CLI, tests) calls.  Every operation returns a
:class:`~pedometer.errors.Result`.
"""

from __future__ import annotations

import logging
from typing import Any

from .boot_monitor import BootMonitor
from .config import AppConfig
from .errors import Result
from .record_store import (
    BaseRecordStore,
    InMemoryRecordStore,
    RetentionPolicy,
    SQLiteRecordStore,
)
from .sensor_manager import StepSensorManager
from .sensor_source import SensorSource, SimulatedStepCounter
from .state_store import BaseStateStore, InMemoryStateStore, JsonStateStore
from .step_processor import StepProcessor

LOGGER = logging.getLogger(__name__)


class PedometerService:
    def __init__(
        self,
        *,
        source: SensorSource,
        state_store: BaseStateStore,
        record_store: BaseRecordStore,
        boot_monitor: BootMonitor | None = None,
        manager: StepSensorManager | None = None,
    ) -> None:
        self.source = source
        self.state_store = state_store
        self.record_store = record_store
        self.boot_monitor = boot_monitor
        self.processor = StepProcessor(state_store)
        self.manager = manager or StepSensorManager(
            source, self.processor, record_store, state_store
        )
        self._initialized = False
        self._reboot_detected = False

    @classmethod
    def from_config(
        cls, config: AppConfig, *, source: SensorSource | None = None
    ) -> PedometerService:
        """Build a service with the stores and sensor described by *config*."""
        retention = RetentionPolicy(
            retention_ms=config.retention.retention_ms,
            cleanup_every=config.retention.cleanup_every_inserts,
            cleanup_probability=config.retention.cleanup_probability,
        )
        state_store: BaseStateStore
        record_store: BaseRecordStore
        if config.storage.persist:
            state_store = JsonStateStore(config.storage.state_path)
            record_store = SQLiteRecordStore(config.storage.history_db_path, retention=retention)
        else:
            state_store = InMemoryStateStore()
            record_store = InMemoryRecordStore(retention=retention)
        boot_monitor = (
            BootMonitor(config.storage.boot_marker_path, tolerance_ms=config.boot.tolerance_ms)
            if config.boot.detect_reboot
            else None
        )
        if source is None:
            source = SimulatedStepCounter(
                initial_value=config.sensor.initial_value,
                available=config.sensor.available,
            )
        return cls(
            source=source,
            state_store=state_store,
            record_store=record_store,
            boot_monitor=boot_monitor,
        )

    # -- lifecycle -------------------------------------------------------------

    def is_sensor_available(self) -> bool:
        return self.manager.is_sensor_available()

    def initialize(self) -> Result[None]:
        """Detect a device reboot and settle the session to continue with."""
        reboot_detected = False
        if self.boot_monitor is not None:
            reboot = self.boot_monitor.check_reboot()
            if reboot.is_failure:
                LOGGER.warning("Reboot check failed; assuming no reboot: %s", reboot.error)
            else:
                reboot_detected = bool(reboot.value)
        self._reboot_detected = reboot_detected
        result = self.manager.initialize(reboot_detected=reboot_detected)
        if result.is_ok:
            self._initialized = True
        return result.map(lambda _: None)

    def start_tracking(self) -> Result[str]:
        return self.manager.start()

    def stop_tracking(self) -> Result[None]:
        return self.manager.stop().map(lambda _: None)

    def close(self, timeout_s: float | None = 5.0) -> None:
        self.manager.shutdown(timeout_s)
        self.record_store.close()
        LOGGER.info("Pedometer service closed")

    # -- queries ---------------------------------------------------------------

    def query_total(self, from_ms: int, to_ms: int) -> Result[int]:
        return self.record_store.get_steps_between(from_ms, to_ms)

    def query_detailed(self, from_ms: int, to_ms: int) -> Result[list[dict[str, Any]]]:
        return self.record_store.get_detailed_steps_between(from_ms, to_ms).map(
            lambda records: [record.to_dict() for record in records]
        )

    def query_sessions(self, from_ms: int, to_ms: int) -> Result[list[dict[str, Any]]]:
        return self.record_store.get_session_summaries(from_ms, to_ms).map(
            lambda summaries: [summary.to_dict() for summary in summaries]
        )

    def status(self) -> dict[str, Any]:
        state = self.state_store.get_state()
        return {
            "initialized": self._initialized,
            "reboot_detected": self._reboot_detected,
            "sensor_available": self.is_sensor_available(),
            "tracking": self.manager.is_tracking,
            "session_id": self.manager.current_session_id or state.session_id,
            "total_steps": state.total_steps,
            "last_sensor_value": state.last_sensor_value,
            "last_timestamp": state.last_timestamp,
            "pipeline": self.manager.stats(),
        }
