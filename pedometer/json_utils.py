"""Shared JSON file helpers.

Provides the atomic write used by every small JSON state file and a
tolerant reader for missing or corrupted files.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any

__all__ = [
    "quarantine_file",
    "read_json_object",
    "write_json_atomic",
]

LOGGER = logging.getLogger(__name__)


def quarantine_file(path: Path, *, context: str) -> Path:
    """Rename a damaged *path* aside so later writes cannot overwrite it.

    Returns the new location.  Raises ``OSError`` if the rename fails.
    """
    target = path.with_name(f"{path.name}.corrupt-{int(time.time() * 1000)}")
    os.replace(path, target)
    LOGGER.warning("Moved unusable %s file %s to %s", context, path, target)
    return target


def read_json_object(
    path: Path, *, context: str, quarantine: bool = False
) -> dict[str, Any] | None:
    """Return the JSON object stored at *path*, or ``None``.

    Missing files return ``None`` silently; malformed files (including a
    top-level value that is not an object) log a warning.  With
    *quarantine*, a malformed file is first renamed aside by
    :func:`quarantine_file`, and a file that exists but cannot be read
    raises ``OSError`` instead of reading as absent.
    *context* names the file's role in the warning message.
    """
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        LOGGER.warning("Corrupt %s file %s: %s", context, path, exc)
        if quarantine:
            quarantine_file(path, context=context)
        return None
    except OSError as exc:
        if quarantine:
            raise
        LOGGER.warning("Cannot read %s file %s: %s", context, path, exc)
        return None
    if not isinstance(data, dict):
        LOGGER.warning("Ignoring %s file %s: expected a JSON object", context, path)
        if quarantine:
            quarantine_file(path, context=context)
        return None
    return data


def write_json_atomic(path: Path, data: Any, *, prefix: str = ".state_") -> None:
    """Persist *data* to *path* atomically (temp-file + ``fsync`` + ``os.replace``).

    Raises ``OSError`` on failure; the temporary file is removed first.
    """
    payload = json.dumps(data, indent=2) + "\n"
    tmp: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=prefix, suffix=".tmp")
        try:
            os.write(fd, payload.encode("utf-8"))
            os.fsync(fd)
        finally:
            os.close(fd)
        os.replace(tmp, str(path))
    except OSError:
        if tmp is not None:
            try:
                os.unlink(tmp)
            except OSError:
                pass
        raise
