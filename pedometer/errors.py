"""Error taxonomy and the ``Result`` wrapper returned by engine operations.

Engine operations never raise into their callers.  They return a
:class:`Result` that is either a success carrying a value or a failure
carrying a :class:`PedometerError`.  Use :func:`run_catching` to build one
from a callable, and :meth:`Result.unwrap` to re-raise at a boundary that
prefers exceptions (HTTP routes, tests).
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")
R = TypeVar("R")

ERROR_PERMISSION = "PERMISSION_ERROR"
ERROR_TRACKING = "TRACKING_ERROR"
ERROR_STORAGE = "STORAGE_ERROR"
ERROR_INVALID_PARAMETER = "INVALID_PARAMETER_ERROR"
ERROR_UNSUPPORTED = "UNSUPPORTED_OPERATION_ERROR"
ERROR_UNEXPECTED = "UNEXPECTED_ERROR"


class PedometerError(Exception):
    """Base class for every failure surfaced by the engine."""

    code: str = ERROR_UNEXPECTED

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}

    @staticmethod
    def from_exception(exc: BaseException) -> PedometerError:
        """Map an arbitrary exception onto the taxonomy."""
        if isinstance(exc, PedometerError):
            return exc
        # PermissionError is an OSError subclass; check it first.
        if isinstance(exc, PermissionError):
            return PedometerPermissionError(f"Permission denied: {exc}", exc)
        if isinstance(exc, (OSError, sqlite3.Error)):
            return StorageError(f"Storage failure: {exc}", exc)
        if isinstance(exc, ValueError):
            return InvalidParameterError(f"Invalid parameter: {exc}", exc)
        return UnexpectedError(f"Unexpected error: {exc}", exc)


class PedometerPermissionError(PedometerError):
    code = ERROR_PERMISSION


class TrackingError(PedometerError):
    """Sensor subscription or session bookkeeping failed."""

    code = ERROR_TRACKING


class StorageError(PedometerError):
    """State or record persistence failed."""

    code = ERROR_STORAGE


class InvalidParameterError(PedometerError):
    code = ERROR_INVALID_PARAMETER


class UnsupportedOperationError(PedometerError):
    """The step counter sensor is not present on this device."""

    code = ERROR_UNSUPPORTED


class UnexpectedError(PedometerError):
    code = ERROR_UNEXPECTED


@dataclass(frozen=True, slots=True)
class Result(Generic[T]):
    """Outcome of an engine operation: exactly one of *value* / *error*."""

    value: T | None = None
    error: PedometerError | None = None

    @classmethod
    def ok(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def fail(cls, error: BaseException) -> Result[Any]:
        return cls(error=PedometerError.from_exception(error))

    @property
    def is_ok(self) -> bool:
        return self.error is None

    @property
    def is_failure(self) -> bool:
        return self.error is not None

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def value_or(self, default: T) -> T:
        return default if self.error is not None else self.value  # type: ignore[return-value]

    def map(self, fn: Callable[[T], R]) -> Result[R]:
        if self.error is not None:
            return Result(error=self.error)
        return run_catching(lambda: fn(self.value))  # type: ignore[arg-type]


def run_catching(action: Callable[[], T]) -> Result[T]:
    """Run *action* and wrap its return value or exception in a :class:`Result`."""
    try:
        return Result.ok(action())
    except Exception as exc:
        return Result.fail(exc)
