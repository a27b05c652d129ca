"""
Pytest configuration file for Scan Station tests.

Puts the 'src' directory on sys.path so tests import modules by bare name,
and provides the shared fixtures: an in-memory store with a controllable
clock, and an engine over it.
"""

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Get the repository root directory (parent of tests directory)
repo_root = Path(__file__).parent.parent

# Add src directory to sys.path (for src modules)
src_dir = repo_root / 'src'
if str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=datetime(2026, 3, 2, 8, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    from storage import InMemoryBackend
    return InMemoryBackend()


@pytest.fixture
def store(backend, clock):
    from async_state_writer import PersistenceWriter
    from snapshot_store import SnapshotStore
    return SnapshotStore(backend, writer=PersistenceWriter(sync_mode=True), clock=clock)


@pytest.fixture
def engine(store):
    from reconciliation_engine import ReconciliationEngine
    return ReconciliationEngine(store)


@pytest.fixture
def manager_scan():
    """Factory for badge scans: fast (scanner) by default."""
    from authorization import BadgeScan

    def make(code="ASP1752", window_ms=40):
        return BadgeScan(code=code, first_keystroke_at=1000.0, last_keystroke_at=1000.0 + window_ms)

    return make
