"""
Queue Test Fixtures.

Base fixtures:
  - Empty sqlite database per test
  - In-memory Redis (fakeredis) per test
  - Mocked clock at a fixed time, shared by backend and worker pools

Every contract test runs against both backends through the `backend`
fixture.
"""

import os
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import fakeredis
import pytest

from src.queueing import (
    JobOptions,
    PollingQueueBackend,
    ProcessorRegistry,
    QueueBackend,
    RedisQueueBackend,
    RetryPolicy,
    WorkerPool,
)
from src.queueing.entities import JobResult


FIXED_DATETIME = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


class MockClock:
    """
    Mock clock for deterministic time control.

    - Starts at a fixed aware UTC time
    - Advances only when explicitly ticked
    """

    def __init__(self, start_time: datetime = FIXED_DATETIME):
        self._current = start_time

    def now(self) -> datetime:
        return self._current

    def tick(self, seconds: float = 1, milliseconds: int = 0) -> None:
        """Advance time."""
        self._current += timedelta(seconds=seconds, milliseconds=milliseconds)

    def set(self, time: datetime) -> None:
        """Set time to specific value."""
        self._current = time


@pytest.fixture
def clock() -> MockClock:
    return MockClock()


@pytest.fixture
def temp_db_path() -> Generator[Path, None, None]:
    """Create a temporary database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    # Cleanup
    for suffix in ("", "-wal", "-shm"):
        path = Path(str(db_path) + suffix)
        if path.exists():
            os.unlink(path)


@pytest.fixture
def polling_backend(temp_db_path: Path, clock: MockClock) -> PollingQueueBackend:
    return PollingQueueBackend(temp_db_path, clock=clock.now)


def new_fake_redis() -> fakeredis.FakeRedis:
    """Redis double with its own server, so no state leaks between tests."""
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def redis_client() -> fakeredis.FakeRedis:
    client = new_fake_redis()
    yield client
    client.flushall()


@pytest.fixture
def redis_backend(redis_client, clock: MockClock) -> RedisQueueBackend:
    return RedisQueueBackend(redis_client, clock=clock.now)


@pytest.fixture(params=["polling", "redis"])
def backend(request, temp_db_path: Path, clock: MockClock) -> QueueBackend:
    """Each backend in turn, sharing the mock clock."""
    if request.param == "polling":
        return PollingQueueBackend(temp_db_path, clock=clock.now)
    return RedisQueueBackend(new_fake_redis(), clock=clock.now)


@pytest.fixture
def registry() -> ProcessorRegistry:
    return ProcessorRegistry()


class RecordingProcessor:
    """
    Processor double.

    Records every payload it is given and either succeeds or raises the
    queued exceptions in order.
    """

    def __init__(self, *errors: Exception):
        self.calls = []
        self._errors = list(errors)

    def __call__(self, payload, context):
        self.calls.append(payload)
        context.report_progress(50)
        if self._errors:
            raise self._errors.pop(0)
        return JobResult.ok("done", {"echo": payload})


@pytest.fixture
def make_pool(backend: QueueBackend, registry: ProcessorRegistry, clock: MockClock):
    """Factory for worker pools on the shared backend and clock."""

    def _make(queue_name: str, concurrency: int = 1, backoff_base_ms: int = 2000) -> WorkerPool:
        return WorkerPool(
            queue_name=queue_name,
            backend=backend,
            registry=registry,
            retry_policy=RetryPolicy(backoff_base_ms),
            concurrency=concurrency,
            poll_interval=0.01,
            clock=clock.now,
        )

    return _make


@pytest.fixture
def enqueue(backend: QueueBackend):
    """Shortcut: enqueue with keyword options."""

    def _enqueue(queue_name: str, job_name: str, payload: dict = None, **options):
        return backend.enqueue(
            queue_name, job_name, payload or {}, JobOptions(**options) if options else None
        )

    return _enqueue


def wait_until(predicate, timeout: float = 5.0) -> bool:
    """Poll `predicate` until it is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
