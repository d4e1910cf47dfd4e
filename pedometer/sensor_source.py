"""Boundary to the platform step-counter facility.

The engine only needs four things from a sensor: whether it exists, a way
to subscribe a ``(counter_value, timestamp_ms)`` callback, a way to
unsubscribe, and a way to ask for buffered events to be flushed.
:class:`SimulatedStepCounter` implements that contract for tests and for
running the server on hardware without a step counter.
"""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Protocol

from .domain_models import now_ms

LOGGER = logging.getLogger(__name__)

SensorCallback = Callable[[int, int], None]
"""Receives ``(monotonic counter value, delivery timestamp ms)``."""


class SensorSource(Protocol):
    @property
    def is_available(self) -> bool: ...

    def subscribe(self, callback: SensorCallback) -> bool:
        """Register *callback*; ``False`` when the platform refuses."""
        ...

    def unsubscribe(self) -> None: ...

    def flush(self) -> None:
        """Ask the platform to deliver (and thereby clear) buffered events."""
        ...


class SimulatedStepCounter:
    """In-process stand-in for a hardware step counter.

    The counter only moves forward except through :meth:`reboot`, which
    restarts it near zero the way a device reboot does.  Readings are
    delivered synchronously on the calling thread; :meth:`start_walking`
    delivers them from a background thread instead.
    """

    def __init__(
        self,
        *,
        initial_value: int = 0,
        available: bool = True,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
    ) -> None:
        self._available = available
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._value = max(0, int(initial_value))
        self._callback: SensorCallback | None = None
        self._refuse_subscribe = False
        self._walk_stop = threading.Event()
        self._walk_thread: threading.Thread | None = None

    # -- SensorSource -----------------------------------------------------------

    @property
    def is_available(self) -> bool:
        return self._available

    def subscribe(self, callback: SensorCallback) -> bool:
        if not self._available or self._refuse_subscribe:
            return False
        with self._lock:
            self._callback = callback
        return True

    def unsubscribe(self) -> None:
        with self._lock:
            self._callback = None

    def flush(self) -> None:
        self.emit()

    # -- simulation controls --------------------------------------------------------

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    @property
    def subscribed(self) -> bool:
        with self._lock:
            return self._callback is not None

    def refuse_subscriptions(self, refuse: bool = True) -> None:
        self._refuse_subscribe = refuse

    def emit(self, value: int | None = None, timestamp_ms: int | None = None) -> bool:
        """Deliver one reading to the subscriber.  ``False`` when nobody listens."""
        with self._lock:
            if value is not None:
                self._value = int(value)
            callback = self._callback
            reading = self._value
        if callback is None:
            return False
        callback(reading, self._clock() if timestamp_ms is None else int(timestamp_ms))
        return True

    def step(self, count: int = 1) -> bool:
        with self._lock:
            self._value += max(0, int(count))
        return self.emit()

    def reboot(self, steps_since_boot: int = 0) -> None:
        """Restart the counter without delivering an event."""
        with self._lock:
            self._value = max(0, int(steps_since_boot))
        LOGGER.info("Simulated step counter rebooted at %d", steps_since_boot)

    def start_walking(self, steps_per_second: float = 1.8, tick_s: float = 1.0) -> None:
        """Emit jittered step increments every *tick_s* from a daemon thread."""
        if self._walk_thread is not None and self._walk_thread.is_alive():
            return
        self._walk_stop.clear()

        def _walk() -> None:
            while not self._walk_stop.wait(tick_s):
                mean = max(0.0, steps_per_second * tick_s)
                self.step(max(0, round(self._rng.gauss(mean, mean * 0.2))))

        self._walk_thread = threading.Thread(target=_walk, name="simulated-walk", daemon=True)
        self._walk_thread.start()

    def stop_walking(self, timeout_s: float = 2.0) -> None:
        self._walk_stop.set()
        if self._walk_thread is not None:
            self._walk_thread.join(timeout=timeout_s)
            self._walk_thread = None
