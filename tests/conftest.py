from datetime import datetime, timedelta, timezone

import pytest

from jobrelay.channel import StatusChannel
from jobrelay.handlers import HandlerRegistry
from jobrelay.processor import BackgroundJobProcessor
from jobrelay.queue_manager import JobQueueManager, RetryPolicy
from jobrelay.store import MemoryJobStore, SqlJobStore


class FakeClock:
    def __init__(self, start=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds=0, **kwargs):
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def publish(self, event_type, data):
        self.events.append((event_type, data))
        return 1

    def types(self):
        return [t for t, _ in self.events]


@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def notifier():
    return RecordingNotifier()

@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    if request.param == "memory":
        yield MemoryJobStore()
        return
    s = SqlJobStore(f"sqlite+pysqlite:///{tmp_path / 'jobs.db'}")
    yield s
    s.engine.dispose()

@pytest.fixture
def manager(store, clock, notifier):
    return JobQueueManager(
        store,
        notifier=notifier,
        max_attempts=3,
        retry_policy=RetryPolicy(base_seconds=5, max_seconds=60),
        clock=clock,
    )

@pytest.fixture
def registry():
    return HandlerRegistry()

@pytest.fixture
def processor(manager, registry, notifier, clock):
    p = BackgroundJobProcessor(
        manager,
        registry,
        notifier=notifier,
        batch_size=10,
        concurrency=3,
        clock=clock,
    )
    yield p
    p.stop()

@pytest.fixture
def channel(clock):
    ch = StatusChannel(max_subscribers=10, heartbeat_seconds=30, missed_heartbeats=2, buffer_size=10, clock=clock)
    yield ch
    ch.stop()
