"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from models.base import TriggerPolicy


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Health Check Schemas
# ============================================================================

class MemoryInfo(BaseModel):
    """Latest memory sample"""
    resident_mb: Optional[float] = None
    threshold_mb: float
    exceeds_threshold: bool = False


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(..., description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=_utcnow)
    request_id: Optional[str] = None
    scheduler_running: bool
    registered_jobs: int = 0
    active_runs: int = 0
    invalid_schedules: int = 0
    pending_checkpoints: int = 0
    memory: MemoryInfo

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "request_id": "5f0c5c8e-6a1e-4c4e-9a0e-1c2d3e4f5a6b",
                "scheduler_running": True,
                "registered_jobs": 4,
                "active_runs": 1,
                "invalid_schedules": 0,
                "pending_checkpoints": 1,
                "memory": {"resident_mb": 212.5, "threshold_mb": 1024, "exceeds_threshold": False}
            }
        }


# ============================================================================
# Job Schemas
# ============================================================================

class JobSummary(BaseModel):
    """Registered job as seen by the scheduler"""
    id: str
    name: str
    enabled: bool
    schedule: str
    trigger: TriggerPolicy
    connection_count: int
    destination_types: List[str] = Field(default_factory=list)
    next_fire_time: Optional[datetime] = None
    busy: bool = False
    schedule_error: Optional[str] = None
    last_run: Optional[datetime] = None

    class Config:
        use_enum_values = True


class JobListResponse(BaseModel):
    jobs: List[JobSummary]
    total: int


class FireResponse(BaseModel):
    """Accepted manual run"""
    job_id: str
    accepted: bool = True
    resume: Optional[bool] = None
    message: str


class CheckpointResponse(BaseModel):
    """Checkpoint file contents (camelCase, as stored on disk)"""
    jobId: str
    jobName: str
    completedConnectionIds: List[str]
    failedConnectionIds: List[str]
    totalConnections: int
    lastUpdated: datetime


class CheckpointClearResponse(BaseModel):
    job_id: str
    cleared: bool


# ============================================================================
# Progress Schemas
# ============================================================================

class ProgressEventResponse(BaseModel):
    type: str
    jobId: str
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)


class ProgressListResponse(BaseModel):
    events: List[ProgressEventResponse]
    total: int


# ============================================================================
# Connection Health Schemas
# ============================================================================

class ConnectionHealthInfo(BaseModel):
    connection_id: str
    connection_name: str
    status: str = Field(..., description="connected, failed or not-tested")
    message: str = ""
    duration_ms: Optional[int] = None
    last_tested: Optional[datetime] = None


class ConnectionHealthResponse(BaseModel):
    connections: List[ConnectionHealthInfo]
    total: int
    connected: int
    failed: int
