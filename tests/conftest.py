import sys
import os

# Ensure the repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from registry.events import EventBus
from registry.lifecycle import LifecycleService
from registry.moderation import AdminGate, ModerationQueue, ModerationWorkflow
from registry.store import LedgerStore


NOW = 1_750_000_000.0
HOUR = 3600.0

OWNER = "0xAbC0000000000000000000000000000000000001"
OWNER_LOWER = OWNER.lower()
OTHER = "0xdef0000000000000000000000000000000000002"
ADMIN = "0xFb918BAC7ba0C324F573b2763CD4EC08cdEc5647"


class FakeClock:
    """Deterministic clock. Call it for the time, advance() to move it."""

    def __init__(self, start: float = NOW):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class Recorder:
    """Event bus handler that remembers everything it sees."""

    def __init__(self):
        self.events = []

    def __call__(self, kind, payload):
        self.events.append((kind, payload))

    def of(self, kind):
        return [p for k, p in self.events if k == kind]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    s = LedgerStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def queue():
    q = ModerationQueue(":memory:")
    yield q
    q.close()


@pytest.fixture
def bus():
    b = EventBus()
    yield b
    b.close()


@pytest.fixture
def recorder(bus):
    r = Recorder()
    bus.subscribe_all(r)
    return r


@pytest.fixture
def lifecycle(store, bus, clock):
    return LifecycleService(store, bus, AdminGate(ADMIN), clock=clock)


@pytest.fixture
def moderation(lifecycle, queue):
    return ModerationWorkflow(lifecycle, queue)


def make_promise(lifecycle, owner=OWNER, message="Finish report", category="Business",
                 difficulty="medium", deadline=None, proof=None):
    if deadline is None:
        deadline = lifecycle.clock() + HOUR
    return lifecycle.create_promise(owner, message, category, difficulty, deadline, proof)
