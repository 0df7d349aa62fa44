"""
API endpoint tests
"""

import asyncio
import time
import pytest
from unittest.mock import patch
from fastapi.testclient import TestClient

from api.main import app
from core.config import Settings
from core.exceptions import JobBusyError
from engine.adapters.registry import AdapterRegistry
from engine.checkpoint_store import InMemoryCheckpointStore
from engine.memory_monitor import MemoryMonitor
from engine.runtime import EngineRuntime
from models.checkpoint import JobCheckpoint
from models.job import DestinationConfig, Job, JobDefinitions


@pytest.fixture
def progressive(make_adapter):
    return make_adapter("progressive")


@pytest.fixture
def runtime(connections, rows_by_connection, progressive, fake_capability):
    registry = AdapterRegistry()
    registry.register(progressive)
    runtime = EngineRuntime.from_settings(
        Settings(HEALTH_CHECK_INTERVAL_MINUTES=0, RETRY_DELAY_SECONDS=0, PROGRESS_HISTORY_SIZE=200),
        capability=fake_capability(rows_by_connection),
        registry=registry,
        store=InMemoryCheckpointStore(),
        monitor=MemoryMonitor(threshold_mb=1024, sampler=lambda: 100.0)
    )
    runtime.scheduler.register_definitions(JobDefinitions(
        connections=connections,
        jobs=[
            Job(
                id="job_1",
                name="Daily sales",
                query="SELECT * FROM sales",
                schedule="15m",
                connection_ids=[c.id for c in connections],
                destinations=[DestinationConfig(type="progressive")],
            ),
            Job(
                id="job_2",
                name="Manual export",
                query="SELECT * FROM customers",
                connection_ids=["conn_1"],
                destinations=[DestinationConfig(type="progressive")],
            ),
        ]
    ))
    return runtime


@pytest.fixture
def client(runtime):
    """Test client serving an injected runtime"""
    app.state.runtime = runtime
    with TestClient(app) as test_client:
        yield test_client
    app.state.runtime = None


def _wait_for_event(client, job_id, event_types, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        events = client.get("/progress", params={"job_id": job_id}).json()["events"]
        if events and events[-1]["type"] in event_types:
            return events
        time.sleep(0.02)
    raise AssertionError(f"No {event_types} event for {job_id} within {timeout}s")


def test_root_endpoint(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["health"] == "/health"


def test_health_endpoint(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-123"
    assert "X-API-Latency-ms" in response.headers

    data = response.json()
    assert data["status"] == "healthy"
    assert data["request_id"] == "req-123"
    assert data["scheduler_running"] is True
    assert data["registered_jobs"] == 2
    assert data["active_runs"] == 0
    assert data["pending_checkpoints"] == 0
    assert data["memory"] == {"resident_mb": 100.0, "threshold_mb": 1024, "exceeds_threshold": False}


def test_health_degraded_by_invalid_schedule(client, runtime):
    runtime.scheduler.register(Job(id="broken", name="Broken", query="SELECT 1", schedule="every tuesday"))

    data = client.get("/health").json()

    assert data["status"] == "degraded"
    assert data["invalid_schedules"] == 1


def test_health_counts_pending_checkpoints(client, runtime):
    asyncio.run(runtime.store.save(JobCheckpoint(job_id="job_1", completed_connection_ids=["conn_1"])))
    assert client.get("/health").json()["pending_checkpoints"] == 1


def test_list_jobs(client):
    response = client.get("/jobs")

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2

    jobs = {job["id"]: job for job in data["jobs"]}
    assert jobs["job_1"]["next_fire_time"] is not None
    assert jobs["job_1"]["connection_count"] == 3
    assert jobs["job_1"]["destination_types"] == ["progressive"]
    assert jobs["job_1"]["trigger"] == "always"
    assert jobs["job_2"]["next_fire_time"] is None
    assert jobs["job_2"]["busy"] is False


def test_run_job_is_accepted_and_completes(client, runtime, progressive):
    response = client.post("/jobs/job_1/run")

    assert response.status_code == 202
    assert response.json()["accepted"] is True

    events = _wait_for_event(client, "job_1", {"job:completed", "job:failed"})
    assert events[0]["type"] == "job:started"
    assert events[-1]["type"] == "job:completed"
    assert events[-1]["data"]["completedConnections"] == 3
    assert len(progressive.calls_to("send_progressive")) == 3


def test_run_unknown_job(client):
    response = client.post("/jobs/nope/run")
    assert response.status_code == 404


def test_run_busy_job(client, runtime):
    with patch.object(runtime.scheduler, "fire", side_effect=JobBusyError("Job Daily sales is already running")):
        response = client.post("/jobs/job_1/run", params={"resume": "true"})

    assert response.status_code == 409
    assert "already running" in response.json()["detail"]


def test_dry_run_job(client, progressive):
    response = client.post("/jobs/job_1/test", params={"connection_id": "conn_2"})

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["rowCount"] == 2
    assert progressive.calls == []

    assert client.post("/jobs/nope/test").status_code == 404


def test_checkpoint_lifecycle(client, runtime):
    assert client.get("/jobs/job_1/checkpoint").status_code == 404

    asyncio.run(runtime.store.save(JobCheckpoint(
        job_id="job_1",
        job_name="Daily sales",
        completed_connection_ids=["conn_1"],
        failed_connection_ids=["conn_2"],
        total_connections=3,
    )))

    response = client.get("/jobs/job_1/checkpoint")
    assert response.status_code == 200
    data = response.json()
    assert data["completedConnectionIds"] == ["conn_1"]
    assert data["failedConnectionIds"] == ["conn_2"]
    assert data["totalConnections"] == 3

    cleared = client.delete("/jobs/job_1/checkpoint")
    assert cleared.json() == {"job_id": "job_1", "cleared": True}
    assert client.get("/jobs/job_1/checkpoint").status_code == 404
    assert client.delete("/jobs/job_1/checkpoint").json()["cleared"] is False


def test_clear_checkpoint_of_running_job_is_rejected(client, runtime):
    with patch.object(runtime.scheduler, "is_busy", return_value=True):
        response = client.delete("/jobs/job_1/checkpoint")
    assert response.status_code == 409


def test_progress_limit(client):
    client.post("/jobs/job_2/run")
    _wait_for_event(client, "job_2", {"job:completed", "job:failed"})

    data = client.get("/progress", params={"job_id": "job_2", "limit": 2}).json()
    assert data["total"] == 2
    assert data["events"][-1]["jobId"] == "job_2"

    assert client.get("/progress", params={"limit": 0}).status_code == 422


def test_connection_health(client):
    data = client.get("/connections/health").json()
    assert data["total"] == 3
    assert {c["status"] for c in data["connections"]} == {"not-tested"}

    probed = client.post("/connections/health").json()
    assert probed["connected"] == 3
    assert probed["failed"] == 0
    assert client.get("/connections/health").json()["connected"] == 3
