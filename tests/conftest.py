"""Shared test helpers for the pedometer test suite."""

from __future__ import annotations

import asyncio
import os
import time

import pytest
from builders import FakeClock

from pedometer.record_store import InMemoryRecordStore, RetentionPolicy
from pedometer.sensor_manager import StepSensorManager
from pedometer.sensor_source import SimulatedStepCounter
from pedometer.state_store import InMemoryStateStore
from pedometer.step_processor import StepProcessor

os.environ.setdefault("PEDOMETER_DISABLE_AUTO_APP", "1")


def wait_until(predicate, timeout_s: float = 2.0, step_s: float = 0.02) -> bool:
    """Poll *predicate* until it returns truthy, or *timeout_s* expires."""
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(step_s)
    return False


async def async_wait_until(predicate, timeout_s: float = 2.0, step_s: float = 0.02) -> bool:
    """Async version of :func:`wait_until`; yields to the event loop between polls."""
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(step_s)
    return False


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(clock: FakeClock):
    """An in-memory sensor manager wired to a simulated counter."""
    state_store = InMemoryStateStore()
    record_store = InMemoryRecordStore(retention=RetentionPolicy(cleanup_every=None), clock=clock)
    source = SimulatedStepCounter(clock=clock)
    processor = StepProcessor(state_store)
    manager = StepSensorManager(source, processor, record_store, state_store)
    try:
        yield manager, source, state_store, record_store
    finally:
        manager.shutdown(timeout_s=2.0)
