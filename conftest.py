"""Shared fixtures for the crawlqueue test suite."""

import pytest

from crawlqueue.queue import QueueManager
from crawlqueue.storage import JsonFileStore, SqliteStore


class FakeClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: int = 1_700_000_000):
        self.now = start

    def __call__(self) -> float:
        self.now += 1
        return self.now


@pytest.fixture(params=["sqlite", "json"])
def store(request, tmp_path):
    """Each test using a store runs once per backend."""
    if request.param == "json":
        return JsonFileStore(str(tmp_path / "json"))
    return SqliteStore(str(tmp_path / "queue.db"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(store, clock):
    return QueueManager(store, clock=clock)
