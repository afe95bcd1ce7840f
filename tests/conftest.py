"""
conftest.py - pytest fixtures for finsync tests.
"""

import os
import tempfile

import pytest

from finsync.capture import ChangeCapture
from finsync.config import SyncConfig
from finsync.engine import SyncEngine
from finsync.identity import StaticIdentity
from finsync.server.remote_store import RemoteStore
from finsync.store import RecordStore
from finsync.transport.memory import InMemoryRemote

# 2024-03-01T00:00:00Z
START_MICROS = 1_709_251_200_000_000


class FakeClock:
    """Manually advanced clock returning Unix microseconds."""

    def __init__(self, start: int = START_MICROS):
        self.value = start

    def __call__(self) -> int:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += int(seconds * 1_000_000)


def goal_values(**overrides):
    values = {
        "name": "Emergency fund",
        "target_amount": 1000.0,
        "target_date": "2025-12-31",
        "monthly_contribution": 100.0,
        "why_statement": "Sleep well at night",
    }
    values.update(overrides)
    return values


def expense_values(**overrides):
    values = {"amount": 12.5, "category_id": "groceries", "note": "market", "date": "2024-03-01"}
    values.update(overrides)
    return values


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test databases."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(temp_dir, clock):
    """An initialized local store on a fake clock."""
    store = RecordStore(os.path.join(temp_dir, "device.db"), clock=clock)
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def capture(store):
    return ChangeCapture(store, StaticIdentity("user-1"))


@pytest.fixture
def server_clock():
    return FakeClock()


@pytest.fixture
def remote_store(server_clock):
    store = RemoteStore(clock=server_clock)
    yield store
    store.close()


@pytest.fixture
def remote(remote_store):
    return InMemoryRemote(remote_store)


@pytest.fixture
def config():
    return SyncConfig(batch_size=2, base_delay_seconds=1.0, max_delay_seconds=60.0, stall_attempts=3)


@pytest.fixture
def engine(store, remote, config):
    return SyncEngine(store, remote, config=config)
