"""
Pytest configuration and shared fixtures.
"""

import importlib
import os

import pytest

import src.api._queue_state as queue_state
from src.queueing import JobContext, JobRecord
from src.queueing.entities import utc_now
from src.store import StoreAdapter


@pytest.fixture(autouse=True, scope="function")
def reset_auth_module():
    """
    Reset auth module state before each test.

    This ensures tests run with API_AUTH_ENABLED=false by default,
    unless the test explicitly sets it otherwise.
    """
    # Store original values
    original_auth_enabled = os.environ.get("API_AUTH_ENABLED")
    original_api_key = os.environ.get("API_KEY")

    os.environ["API_AUTH_ENABLED"] = "false"

    yield

    # Restore original values
    if original_auth_enabled is not None:
        os.environ["API_AUTH_ENABLED"] = original_auth_enabled
    elif "API_AUTH_ENABLED" in os.environ:
        del os.environ["API_AUTH_ENABLED"]

    if original_api_key is not None:
        os.environ["API_KEY"] = original_api_key
    elif "API_KEY" in os.environ:
        del os.environ["API_KEY"]

    import src.api.dependencies.auth as auth_module
    importlib.reload(auth_module)


@pytest.fixture(autouse=True)
def reset_queue_state():
    """Drop the API queue singletons between tests."""
    yield

    queue_state._queue_service = None
    queue_state._webhook_ingestion = None


@pytest.fixture
def store(tmp_path) -> StoreAdapter:
    """Empty commerce store in a temporary directory."""
    return StoreAdapter(tmp_path / "store.db")


@pytest.fixture
def make_context():
    """Factory for a JobContext detached from any backend."""

    def _make(queue_name: str, job_name: str, payload: dict = None, attempts: int = 1) -> JobContext:
        job = JobRecord.create(
            queue_name, job_name, payload or {}, priority=0, max_attempts=3, now=utc_now()
        )
        job.attempts = attempts
        return JobContext(job)

    return _make


WEBHOOK_SECRET = "shpss_test_secret"


@pytest.fixture
def api_queue_service(tmp_path):
    """Queue service on a temporary SQLite backend, without worker pools."""
    from src.queueing import PollingQueueBackend, QueueService

    service = QueueService.create(PollingQueueBackend(tmp_path / "queue.db"), poll_interval=0.01)
    yield service
    service.shutdown(timeout=5)


@pytest.fixture
def api_client(api_queue_service, store):
    """
    TestClient over a freshly loaded app.

    Queue state is initialized up front, so the app never builds its own
    service from the environment.
    """
    from fastapi.testclient import TestClient

    import src.api.main as main_module

    importlib.reload(main_module)
    queue_state.init_queue_state(api_queue_service, store=store, webhook_secret=WEBHOOK_SECRET)
    return TestClient(main_module.app)
