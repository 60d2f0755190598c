"""
Shared test configuration for backend tests.

Hypothesis settings:
- CI profile disables example database to prevent "Flaky" errors from stale examples
- Default profile keeps database for local development

Relational sink: in-memory SQLite stands in for Postgres.
"""

import pytest
from hypothesis import settings, HealthCheck

from capture.capture_metrics import CaptureMetrics
from capture.durable_log import DurableLog
from capture.relational_sink import RelationalSink
from capture.service import CaptureService
from capture.session_store import SessionStore

# CI profile: no example database → no stale example → no Flaky errors
settings.register_profile(
    "ci",
    database=None,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
)

# Default profile: keep database, suppress slow health check
settings.register_profile(
    "default",
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
)

settings.load_profile("default")


# ── Test tier markers ─────────────────────────────────────────────────────────
# Usage: pytest -m smoke, pytest -m core, pytest -m concurrency

def pytest_configure(config):
    config.addinivalue_line("markers", "smoke: Tier-0 models + config tests (<10s)")
    config.addinivalue_line("markers", "core: Tier-1 core logic + stores (<15s)")
    config.addinivalue_line("markers", "concurrency: Tier-2 thread races (<30s)")


# ── Fixtures ──────────────────────────────────────────────────────────────────

SQLITE_MEMORY_URL = "sqlite://"


@pytest.fixture()
def log_path(tmp_path):
    return tmp_path / "events.log"


@pytest.fixture()
def durable_log(log_path):
    return DurableLog(log_path, fsync=False)


@pytest.fixture()
def session_store():
    return SessionStore()


@pytest.fixture()
def sink():
    """Relational sink on in-memory SQLite, keep-alive off."""
    s = RelationalSink.connect(SQLITE_MEMORY_URL, keepalive_seconds=0)
    yield s
    s.close()


@pytest.fixture()
def metrics():
    return CaptureMetrics()


@pytest.fixture()
def service(session_store, durable_log, sink, metrics):
    """Fully wired service: memory index + durable log + relational sink."""
    svc = CaptureService(
        session_store=session_store,
        durable_log=durable_log,
        relational_sink=sink,
        metrics=metrics,
    )
    yield svc
    svc.close()


@pytest.fixture()
def client(service):
    """TestClient bound to a fresh app around the `service` fixture."""
    from fastapi.testclient import TestClient
    from capture.main import create_app

    with TestClient(create_app(service=service)) as c:
        yield c
