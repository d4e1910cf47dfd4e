"""Lightweight thread-pool wrapper used for ordered and background work.

A pool with ``max_workers=1`` is a single processing lane: tasks run one at
a time in submission order, which is how sensor readings are serialized.
:meth:`WorkerPool.submit_background` is the fire-and-forget variant whose
failures are logged, never raised to the submitter.

Usage::

    lane = WorkerPool(max_workers=1, thread_name_prefix="pedometer-lane")
    lane.submit(process, reading)
    lane.wait_idle(timeout_s=2.0)
    lane.shutdown()
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any, TypeVar

LOGGER = logging.getLogger(__name__)

R = TypeVar("R")

DEFAULT_MAX_WORKERS = 1


class WorkerPool:
    """Fixed-size thread pool with lightweight metrics.

    Parameters
    ----------
    max_workers:
        Number of worker threads.  ``1`` gives strict FIFO execution.
    thread_name_prefix:
        Prefix for worker-thread names (aids debugging / profiling).
    """

    def __init__(
        self,
        max_workers: int = DEFAULT_MAX_WORKERS,
        thread_name_prefix: str = "pedometer-worker",
    ) -> None:
        self._max_workers = max(1, int(max_workers))
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix=thread_name_prefix,
        )
        self._total_tasks: int = 0
        self._failed_tasks: int = 0
        self._pending: set[Future[Any]] = set()
        self._metrics_lock = threading.Lock()
        self._alive = True

    # -- Public API -----------------------------------------------------------

    def submit(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> Future[R]:
        """Submit a single callable; returns a ``Future``."""
        if not self._alive:
            raise RuntimeError("WorkerPool is shut down")
        fut = self._executor.submit(fn, *args, **kwargs)
        with self._metrics_lock:
            self._total_tasks += 1
            self._pending.add(fut)
        fut.add_done_callback(self._on_done)
        return fut

    def submit_background(
        self, fn: Callable[..., Any], *args: Any, description: str = "task", **kwargs: Any
    ) -> Future[Any] | None:
        """Fire-and-forget: failures are logged, never propagated.

        Returns ``None`` when the pool is already shut down.
        """
        try:
            fut = self.submit(fn, *args, **kwargs)
        except RuntimeError:
            LOGGER.warning("Dropped background %s: worker pool is shut down", description)
            return None

        def _log_failure(done: Future[Any]) -> None:
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                LOGGER.warning("Background %s failed", description, exc_info=exc)

        fut.add_done_callback(_log_failure)
        return fut

    def wait_idle(self, timeout_s: float | None = None) -> bool:
        """Block until every submitted task has finished.  ``False`` on timeout."""
        with self._metrics_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout_s)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        """Shut down the pool.  Safe to call multiple times."""
        self._alive = False
        self._executor.shutdown(wait=wait)

    def _on_done(self, fut: Future[Any]) -> None:
        with self._metrics_lock:
            self._pending.discard(fut)
            if not fut.cancelled() and fut.exception() is not None:
                self._failed_tasks += 1

    # -- Observability --------------------------------------------------------

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def alive(self) -> bool:
        return self._alive

    def stats(self) -> dict[str, Any]:
        with self._metrics_lock:
            return {
                "max_workers": self._max_workers,
                "total_tasks": self._total_tasks,
                "failed_tasks": self._failed_tasks,
                "pending_tasks": len(self._pending),
                "alive": self._alive,
            }
