"""Test fixtures for space-monitor tests."""

import pytest
import tempfile
import shutil
from pathlib import Path

from space_monitor.caching import CacheStore
from space_monitor.events import EventEmitter
from space_monitor.queueing import QueueStore
from space_monitor.search import SearchIndex
from space_monitor.watcher import EventPublisher, SpaceRoot
from space_monitor.models import Scope


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingListener:
    """Collects (event_name, payload) pairs from an EventEmitter."""

    def __init__(self):
        self.events = []

    def __call__(self, event_name, payload):
        self.events.append((event_name, payload))

    def names(self):
        return [name for name, _ in self.events]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def personal_root(temp_dir):
    """Personal content root with one user folder."""
    root = temp_dir / "content"
    (root / "alice" / "notes").mkdir(parents=True)
    return root


@pytest.fixture
def space_root(temp_dir):
    """Folder of a named space."""
    root = temp_dir / "spaces" / "docs"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def emitter():
    return EventEmitter()


@pytest.fixture
def recorder(emitter):
    """Listener receiving every event of the emitter fixture."""
    listener = RecordingListener()
    emitter.on("*", listener)
    return listener


@pytest.fixture
def queue_store(emitter):
    return QueueStore(emitter)


@pytest.fixture
def cache(emitter):
    return CacheStore(emitter=emitter)


@pytest.fixture
def search_index(emitter):
    return SearchIndex(emitter)


@pytest.fixture
def publisher(queue_store):
    return EventPublisher(queue_store)


@pytest.fixture
def personal(personal_root):
    """SpaceRoot for the personal content root."""
    return SpaceRoot(path=str(personal_root), scope=Scope.PERSONAL)


@pytest.fixture
def clock():
    return FakeClock()


def drain(queue_store, queue_name):
    """Dequeue everything from a queue."""
    items = []
    while True:
        item = queue_store.dequeue(queue_name)
        if item is None:
            return items
        items.append(item)
