"""
Student API Pytest Configuration
--------------------------------

Centralized fixtures for all tests.

Features:
 - Environment sanitization (no STUDENTAPI_* leakage from the host)
 - Temporary SQLite database per test (aiosqlite)
 - Isolated Prometheus registry and leak registry per app
 - Fake process exit so crash modes never take down the test runner
 - Allocator that fails after a few chunks for the OOM mode
 - Logging config to keep CI output clean
"""

import os
import time
import logging
import threading
import pytest
from fastapi.testclient import TestClient

from studentapi.config import Settings
from studentapi.db import Database
from studentapi.faults.background import BackgroundTaskManager
from studentapi.faults.db_probe import DatabaseFaultProbe
from studentapi.faults.executor import FaultExecutor
from studentapi.faults.lifecycle import ProcessTerminator
from studentapi.faults.simulators import LeakRegistry
from studentapi.metrics import DbMetrics, MetricsSideEffectEmitter, PrometheusEmitter, build_registry

# -----------------------------------------------------------------------------
# Logging setup for tests
# -----------------------------------------------------------------------------
LOG = logging.getLogger("studentapi.tests")
LOG.setLevel(logging.WARNING)

# -----------------------------------------------------------------------------
# Global environment sanitization
# -----------------------------------------------------------------------------
@pytest.fixture(autouse=True, scope="session")
def clean_env_before_tests():
    """
    Clear out STUDENTAPI_* variables that could interfere with CI runs.
    """
    for var in list(os.environ):
        if var.startswith("STUDENTAPI_"):
            os.environ.pop(var, None)
    os.environ["TZ"] = "UTC"
    yield

@pytest.fixture(autouse=True, scope="session")
def silence_external_lib_logs():
    """
    Reduce log noise from asyncio, SQLAlchemy, FastAPI and HTTPX during test runs.
    """
    logging.getLogger("asyncio").setLevel(logging.ERROR)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("fastapi").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    yield

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it returns truthy or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class FakeExit:
    """Stands in for os._exit: records exit codes instead of terminating."""

    def __init__(self):
        self.codes = []
        self.called = threading.Event()

    def __call__(self, code: int):
        self.codes.append(code)
        self.called.set()


class FailingAllocator:
    """Returns `chunks` allocations of the requested size, then raises MemoryError."""

    def __init__(self, chunks: int = 3):
        self.remaining = chunks
        self.calls = 0

    def __call__(self, nbytes: int) -> bytes:
        self.calls += 1
        if self.remaining <= 0:
            raise MemoryError("simulated allocation failure")
        self.remaining -= 1
        return b"x" * nbytes


class RecordingEmitter(MetricsSideEffectEmitter):
    def __init__(self):
        self.db_errors = []
        self.query_durations = []

    def record_db_error(self, operation: str, error_type: str):
        self.db_errors.append((operation, error_type))

    def observe_query_duration(self, seconds: float, query_type: str, table: str, operation: str):
        self.query_durations.append((seconds, query_type, table, operation))

# -----------------------------------------------------------------------------
# Core fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'students.db'}"

@pytest.fixture
def settings(db_url):
    return Settings(
        database_url=db_url,
        crash_grace_ms=50,
        leak_pause_ms=0,
        oom_chunk_bytes=1024,
        connection_probe_count=5,
    )

@pytest.fixture
def fake_exit():
    return FakeExit()

@pytest.fixture
def leak_registry():
    return LeakRegistry()

@pytest.fixture
def failing_allocator():
    return FailingAllocator(chunks=3)

@pytest.fixture
def recording_emitter():
    return RecordingEmitter()

@pytest.fixture
def prometheus_emitter():
    registry = build_registry()
    emitter = PrometheusEmitter(DbMetrics(registry), application="student-api")
    emitter.registry = registry
    return emitter

# -----------------------------------------------------------------------------
# Async fixtures: database and executor without the HTTP layer
# -----------------------------------------------------------------------------
@pytest.fixture
async def database(db_url):
    db = Database(db_url, pool_size=5, max_overflow=5, pool_timeout=5)
    await db.connect()
    yield db
    await db.dispose()

@pytest.fixture
async def executor(database, recording_emitter, fake_exit, leak_registry, failing_allocator):
    return FaultExecutor(
        probe=DatabaseFaultProbe(database, recording_emitter),
        background=BackgroundTaskManager(),
        terminator=ProcessTerminator(exit_fn=fake_exit),
        leak_registry=leak_registry,
        crash_grace_ms=20,
        leak_pause_ms=0,
        oom_chunk_bytes=512,
        oom_allocator=failing_allocator,
    )

# -----------------------------------------------------------------------------
# HTTP fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def app(settings, fake_exit, leak_registry, failing_allocator):
    from studentapi.main import create_app
    return create_app(
        settings=settings,
        exit_fn=fake_exit,
        registry=build_registry(),
        leak_registry=leak_registry,
        oom_allocator=failing_allocator,
    )

@pytest.fixture
def client(app):
    """TestClient inside a `with` block so startup/shutdown events run."""
    with TestClient(app) as c:
        yield c
