"""
Dead Drop Test Configuration and Fixtures

Shared fixtures for the trigger evaluator, registry, stores, dispatcher,
scheduler, audit trail and HTTP service tests.

Time never comes from the wall clock here: every component gets the same
ManualClock and tests move it forward explicitly.
"""

import threading
from datetime import datetime, timezone

import pytest

from dead_drop_system.core.audit_trail import AuditTrail
from dead_drop_system.core.clock import ManualClock
from dead_drop_system.core.datashapes import PayloadEnvelope
from dead_drop_system.dead_drop.config import TestConfig
from dead_drop_system.dead_drop.database import SQLiteDeadDropStore
from dead_drop_system.dead_drop.delivery import DeliveryDispatcher
from dead_drop_system.dead_drop.engine import DeadDropEngine
from dead_drop_system.dead_drop.registry import DeadDropRegistry, InMemoryDeadDropStore
from dead_drop_system.dead_drop.scheduler import DeadDropScheduler
from dead_drop_system.dead_drop.trackers import HeartbeatTracker, LocationTracker
from dead_drop_system.dead_drop.trigger_evaluator import TriggerEvaluator


# =============================================================================
# PYTEST MARKERS
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "critical: must-pass lifecycle guarantees")
    config.addinivalue_line("markers", "persistence: tests data persistence/survival")


# =============================================================================
# KEY CONSTANTS
# =============================================================================

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
TEST_SIGNING_KEY = "test-signing-key"

# Berlin, Brandenburg Gate
BERLIN = (52.5163, 13.3777)


# =============================================================================
# CHANNEL DOUBLES
# =============================================================================

class RecordingChannel:
    """Records every push. `result` may be a bool or an exception to raise."""

    def __init__(self, result=True):
        self.result = result
        self.pushes = []
        self._lock = threading.Lock()

    def push(self, recipient_id, message):
        with self._lock:
            self.pushes.append((recipient_id, message))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class BlockingChannel:
    """Hangs until released (or 5s), simulating an unresponsive transport."""

    def __init__(self):
        self.release = threading.Event()
        self.calls = 0

    def push(self, recipient_id, message):
        self.calls += 1
        self.release.wait(5)
        return True


# =============================================================================
# CORE FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def audit():
    """Memory-only audit trail with a fixed key"""
    return AuditTrail(signing_key=TEST_SIGNING_KEY)


@pytest.fixture
def envelope():
    return PayloadEnvelope(ciphertext=b"\x00encrypted-bytes\xff", metadata={"algorithm": "AES-GCM", "iv": "abc"})


@pytest.fixture
def memory_store():
    return InMemoryDeadDropStore()


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteDeadDropStore(str(tmp_path / "dead_drops.db"))


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    """Runs the test once per store backend"""
    if request.param == "memory":
        return InMemoryDeadDropStore()
    return SQLiteDeadDropStore(str(tmp_path / "dead_drops.db"))


@pytest.fixture
def registry(memory_store, audit, clock):
    return DeadDropRegistry(memory_store, audit, clock=clock)


@pytest.fixture
def recording_channel():
    return RecordingChannel()


@pytest.fixture
def failing_channel():
    return RecordingChannel(result=False)


@pytest.fixture
def blocking_channel():
    channel = BlockingChannel()
    yield channel
    channel.release.set()


@pytest.fixture
def heartbeats(clock):
    return HeartbeatTracker(clock=clock)


@pytest.fixture
def locations(clock):
    return LocationTracker(clock=clock)


@pytest.fixture
def make_dispatcher(registry, clock):
    """Factory: dispatcher over the shared registry with a given channel"""
    created = []

    def _make(channel, timeout_seconds=2.0, **kwargs):
        dispatcher = DeliveryDispatcher(registry, channel, clock=clock,
                                        timeout_seconds=timeout_seconds, **kwargs)
        created.append(dispatcher)
        return dispatcher

    yield _make
    for dispatcher in created:
        dispatcher.shutdown()


@pytest.fixture
def make_scheduler(registry, heartbeats, locations, clock, make_dispatcher):
    """Factory: scheduler wired to the shared registry/trackers and a given channel"""

    def _make(channel, instance_id="scheduler-test", timeout_seconds=2.0, evaluator=None):
        return DeadDropScheduler(
            registry,
            evaluator or TriggerEvaluator(),
            heartbeats,
            locations,
            make_dispatcher(channel, timeout_seconds=timeout_seconds),
            clock=clock,
            interval_seconds=0.05,
            instance_id=instance_id,
        )

    return _make


# =============================================================================
# ENGINE + HTTP FIXTURES
# =============================================================================

@pytest.fixture
def engine(clock, audit, recording_channel):
    engine = DeadDropEngine(InMemoryDeadDropStore(), recording_channel,
                            audit=audit, clock=clock, config=TestConfig)
    yield engine
    engine.shutdown()


@pytest.fixture
def client(engine):
    from dead_drop_system.dead_drop.service import create_app

    app = create_app(engine)
    app.config['TESTING'] = True
    return app.test_client()
