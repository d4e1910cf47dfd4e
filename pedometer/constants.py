"""Shared constants for the step delta engine."""

from __future__ import annotations

from typing import Final

# -- Reset detection ----------------------------------------------------------

SENSOR_RESET_THRESHOLD: Final[int] = 1000
"""A drop larger than this (current < previous - threshold) is a counter reset."""

REBOOT_PREVIOUS_MIN: Final[int] = 500
"""Previous counter value above which a near-zero reading signals a reboot."""

REBOOT_CURRENT_MAX: Final[int] = 50
"""Readings below this, after a substantial previous value, signal a reboot."""

DRASTIC_CHANGE_THRESHOLD: Final[int] = 10_000
"""An absolute jump larger than this in either direction is a reset."""

JITTER_TOLERANCE: Final[int] = 5
"""Backward moves of at most this many steps count as scheduler jitter."""

# -- State sentinels ----------------------------------------------------------

NO_SENSOR_VALUE: Final[int] = -1
NO_SESSION_ID: Final[str] = ""
SESSION_ID_PREFIX: Final[str] = "session-"
UNKNOWN_SESSION_PREFIX: Final[str] = "unknown-"

# -- Retention ----------------------------------------------------------------

MS_PER_DAY: Final[int] = 24 * 60 * 60 * 1000
DEFAULT_RETENTION_DAYS: Final[int] = 30
DEFAULT_RETENTION_MS: Final[int] = DEFAULT_RETENTION_DAYS * MS_PER_DAY
DEFAULT_CLEANUP_EVERY_INSERTS: Final[int] = 100
"""Deterministic cleanup interval; about a 1 % per-insert rate."""

DEFAULT_CLEANUP_PROBABILITY: Final[float] = 0.01

# -- Boot detection -----------------------------------------------------------

BOOT_TIME_TOLERANCE_MS: Final[int] = 5_000
"""Boot epochs closer than this are considered the same boot."""

TRACKING_STOPPED: Final[str] = "TRACKING_STOPPED"

MAX_TIMESTAMP_MS: Final[int] = 2**63 - 1
"""Largest timestamp a SQLite INTEGER column can hold."""
