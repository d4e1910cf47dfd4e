"""Device reboot detection.

The boot epoch (wall-clock time minus time since boot) is stable for the
lifetime of one boot.  Persisting it and comparing on the next start tells
the engine whether the step counter has restarted since it last ran.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from .constants import BOOT_TIME_TOLERANCE_MS
from .errors import Result, StorageError, run_catching
from .json_utils import read_json_object, write_json_atomic

LOGGER = logging.getLogger(__name__)


def current_boot_epoch_ms() -> int:
    """Wall-clock epoch milliseconds at which the running system booted."""
    try:
        uptime_s = time.clock_gettime(time.CLOCK_BOOTTIME)
    except (AttributeError, OSError):
        uptime_s = time.monotonic()
    return int((time.time() - uptime_s) * 1000)


class BootMonitor:
    """Compares the current boot epoch with the one recorded last run."""

    def __init__(
        self,
        marker_path: str | Path,
        *,
        tolerance_ms: int = BOOT_TIME_TOLERANCE_MS,
        boot_epoch_fn: Callable[[], int] = current_boot_epoch_ms,
    ) -> None:
        self.marker_path = Path(marker_path)
        self.tolerance_ms = int(tolerance_ms)
        self._boot_epoch_fn = boot_epoch_fn

    def previous_boot_epoch(self) -> int | None:
        data = read_json_object(self.marker_path, context="boot marker")
        if data is None:
            return None
        value = data.get("bootEpochMs")
        if isinstance(value, bool) or not isinstance(value, int):
            LOGGER.warning("Boot marker %s has no usable bootEpochMs", self.marker_path)
            return None
        return value

    def check_reboot(self) -> Result[bool]:
        """Return whether the device rebooted since the marker was written.

        A missing marker (first run) counts as no reboot.  The current boot
        epoch is always written back.
        """

        def _check() -> bool:
            current = int(self._boot_epoch_fn())
            previous = self.previous_boot_epoch()
            rebooted = previous is not None and abs(current - previous) > self.tolerance_ms
            try:
                write_json_atomic(
                    self.marker_path, {"bootEpochMs": current}, prefix=".boot_marker_"
                )
            except OSError as exc:
                raise StorageError(
                    f"Failed to write boot marker {self.marker_path}: {exc}", exc
                ) from exc
            if rebooted:
                LOGGER.info(
                    "Device reboot detected (previous boot %d, current boot %d)",
                    previous,
                    current,
                )
            return rebooted

        return run_catching(_check)
