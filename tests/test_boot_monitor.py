from __future__ import annotations

import json
from pathlib import Path

from pedometer.boot_monitor import BootMonitor, current_boot_epoch_ms
from pedometer.domain_models import now_ms
from pedometer.errors import StorageError


def _monitor(path: Path, epoch: int, tolerance_ms: int = 5_000) -> BootMonitor:
    return BootMonitor(path, tolerance_ms=tolerance_ms, boot_epoch_fn=lambda: epoch)


def test_first_run_is_not_a_reboot_and_writes_marker(tmp_path: Path) -> None:
    marker = tmp_path / "boot.json"
    assert _monitor(marker, 1_000_000).check_reboot().unwrap() is False
    assert json.loads(marker.read_text(encoding="utf-8")) == {"bootEpochMs": 1_000_000}


def test_same_boot_within_tolerance(tmp_path: Path) -> None:
    marker = tmp_path / "boot.json"
    _monitor(marker, 1_000_000).check_reboot()
    assert _monitor(marker, 1_003_000).check_reboot().unwrap() is False


def test_new_boot_epoch_is_a_reboot(tmp_path: Path) -> None:
    marker = tmp_path / "boot.json"
    _monitor(marker, 1_000_000).check_reboot()
    assert _monitor(marker, 9_000_000).check_reboot().unwrap() is True
    # The new epoch is recorded, so the next start in this boot is not a reboot.
    assert _monitor(marker, 9_000_000).check_reboot().unwrap() is False


def test_corrupt_marker_treated_as_first_run(tmp_path: Path) -> None:
    marker = tmp_path / "boot.json"
    marker.write_text("garbage", encoding="utf-8")
    assert _monitor(marker, 5).check_reboot().unwrap() is False
    assert _monitor(marker, 5).previous_boot_epoch() == 5


def test_unwritable_marker_is_storage_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    result = _monitor(blocker / "boot.json", 5).check_reboot()
    assert result.is_failure
    assert isinstance(result.error, StorageError)


def test_current_boot_epoch_is_in_the_past() -> None:
    epoch = current_boot_epoch_ms()
    assert 0 < epoch <= now_ms()
