import asyncio
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from mindtwin.storage import InMemoryStorageBackend


class FakeClock:
    """Deterministic, manually advanced clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


@pytest.fixture
def start_time():
    return datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)  # a Monday


@pytest.fixture
def clock(start_time):
    return FakeClock(start_time)


@pytest.fixture
def rng():
    return np.random.default_rng(42)


class YieldingBackend(InMemoryStorageBackend):
    """In-memory backend that yields to the event loop on every read and write."""

    async def store(self, collection, key, data):
        await asyncio.sleep(0)
        await super().store(collection, key, data)

    async def retrieve(self, collection, key):
        await asyncio.sleep(0)
        return await super().retrieve(collection, key)


@pytest.fixture
def backend():
    return InMemoryStorageBackend()


@pytest.fixture
def yielding_backend():
    return YieldingBackend()


@pytest.fixture
def make_twin(start_time):
    """Build a twin snapshot from ``{variable_id: value}`` over catalog defaults."""
    from mindtwin.models.catalog import VARIABLE_DEFINITIONS
    from mindtwin.models.twin import DerivedMetrics, StateVariable, TwinState

    def factory(values=None, version=0, timestamp=None, subject_id="subject-1", velocities=None, metrics=None):
        values = values or {}
        velocities = velocities or {}
        variables = {
            variable_id: StateVariable(
                variable_id=variable_id,
                value=values.get(variable_id, definition.default_value),
                variance=0.05,
                velocity=velocities.get(variable_id, 0.0),
            )
            for variable_id, definition in VARIABLE_DEFINITIONS.items()
        }
        ts = timestamp or start_time
        return TwinState(
            subject_id=subject_id,
            version=version,
            timestamp=ts,
            created_at=start_time,
            variables=variables,
            metrics=metrics or DerivedMetrics(),
        )

    return factory
