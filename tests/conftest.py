"""
Pytest configuration and shared fixtures.

Unit tests run against the in-memory ledger, a stub replay executor and a
fake clock. Integration tests connect to ScyllaDB on localhost and are skipped
when it is not reachable.
"""

import pytest
from prometheus_client import CollectorRegistry

from src.index_rebuild.config import RebuildConfig
from src.index_rebuild.executor import ReplayExecutor
from src.index_rebuild.ledger import InMemoryLedger
from src.index_rebuild.models import DivergenceMarker, IndexDescriptor, IndexState
from src.index_rebuild.scheduler import ReconciliationScheduler
from src.monitoring.metrics import RebuildMetrics


class FakeClock:
    """Millisecond clock controlled by the test."""

    def __init__(self, now: int = 2000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> None:
        self.now += millis


class StubReplayExecutor(ReplayExecutor):
    """Records replay calls; fails with `error` when set."""

    def __init__(self, rows: int = 10, error: Exception = None):
        self.rows = rows
        self.error = error
        self.calls = []

    def replay(self, data_table, indexes, window):
        self.calls.append({
            "table": data_table,
            "indexes": [index.name for index in indexes],
            "window": window,
        })
        if self.error is not None:
            raise self.error
        return self.rows


@pytest.fixture
def make_index():
    """Factory for index descriptors using the persisted signed marker form."""
    def _make(name="app.idx1", data_table="app.t1", state=IndexState.INACTIVE,
              marker=0, columns=("email",)):
        return IndexDescriptor(
            name=name,
            data_table=data_table,
            state=state,
            marker=DivergenceMarker.from_signed(marker),
            columns=tuple(columns),
        )
    return _make


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def clock():
    return FakeClock(now=2000)


@pytest.fixture
def executor():
    return StubReplayExecutor()


@pytest.fixture
def config():
    """Tuning used by the documented rebuild scenarios."""
    return RebuildConfig(
        overlap_ms=100,
        batch_size_ms=500,
        max_batches_per_table=10,
        abandon_threshold_ms=100000,
        cycle_period_ms=10,
        initial_delay_ms=0,
        clock_skew_interval_ms=0,
    )


@pytest.fixture
def metrics():
    return RebuildMetrics(registry=CollectorRegistry())


@pytest.fixture
def scheduler(ledger, executor, config, clock, metrics):
    return ReconciliationScheduler(
        ledger=ledger,
        executor=executor,
        config=config,
        metrics=metrics,
        clock=clock
    )
