"""
Pydantic schemas for events and API serialization.

Schemas:
    events: ProgressEvent, the transient job/connection state transition
    api: Operator API request/response schemas

Features:
    - Automatic data validation
    - camelCase wire format for progress events and checkpoints
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.events import ProgressEvent
    from schemas.api import HealthCheckResponse, JobSummary

Example:
    event = ProgressEvent(
        type=ProgressEventType.JOB_PROGRESS,
        job_id="daily_sales",
        data={"percentage": 140}
    )

    # Percentages are clamped to 0-100
    assert event.data["percentage"] == 100
"""

__all__ = [
    "ProgressEvent",
    "clamp_percentage",
    "HealthCheckResponse",
    "MemoryInfo",
    "JobSummary",
    "JobListResponse",
    "FireResponse",
    "CheckpointResponse",
    "CheckpointClearResponse",
    "ProgressEventResponse",
    "ProgressListResponse",
    "ConnectionHealthInfo",
    "ConnectionHealthResponse",
]
