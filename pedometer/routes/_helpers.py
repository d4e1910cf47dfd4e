"""Shared route helpers used across multiple route modules."""

from __future__ import annotations

import logging
from typing import TypeVar

from fastapi import HTTPException

from ..errors import (
    InvalidParameterError,
    PedometerError,
    PedometerPermissionError,
    Result,
    StorageError,
    TrackingError,
    UnsupportedOperationError,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_STATUS_BY_ERROR: tuple[tuple[type[PedometerError], int], ...] = (
    (InvalidParameterError, 400),
    (PedometerPermissionError, 403),
    (UnsupportedOperationError, 409),
    (TrackingError, 409),
    (StorageError, 503),
)


def status_code_for(error: PedometerError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return 500


def unwrap_or_http(result: Result[T]) -> T:
    """Return the result's value or raise the matching ``HTTPException``."""
    if result.error is None:
        return result.value  # type: ignore[return-value]
    status_code = status_code_for(result.error)
    if status_code >= 500:
        LOGGER.warning("Request failed with %d: %s", status_code, result.error)
    raise HTTPException(status_code=status_code, detail=result.error.to_dict())
