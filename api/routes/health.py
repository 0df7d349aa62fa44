"""
Health check endpoint with scheduler, memory and checkpoint status
"""

from fastapi import APIRouter, Depends, Request
from api.dependencies import get_runtime
from engine.runtime import EngineRuntime
from schemas.api import HealthCheckResponse, MemoryInfo
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, runtime: EngineRuntime = Depends(get_runtime)):
    """
    Health check endpoint.

    Returns:
    - Scheduler state, registered jobs and active runs
    - Latest memory sample against the configured threshold
    - Number of checkpoints left by interrupted or failed runs
    - Request metadata
    """
    scheduler = runtime.scheduler
    jobs = scheduler.jobs()

    sample = runtime.monitor.sample()
    exceeds = runtime.monitor.exceeds_threshold(sample)

    pending_checkpoints = 0
    try:
        pending_checkpoints = len(await runtime.store.list_checkpoints())
    except OSError as e:
        logger.error(f"Failed to list checkpoints: {str(e)}")

    invalid_schedules = sum(1 for job in jobs if scheduler.schedule_error(job.id))
    running = scheduler.scheduler.running

    if not running:
        status = "unhealthy"
    elif exceeds or invalid_schedules:
        status = "degraded"
    else:
        status = "healthy"

    return HealthCheckResponse(
        status=status,
        request_id=getattr(request.state, "request_id", None),
        scheduler_running=running,
        registered_jobs=len(jobs),
        active_runs=scheduler.active_runs,
        invalid_schedules=invalid_schedules,
        pending_checkpoints=pending_checkpoints,
        memory=MemoryInfo(
            resident_mb=sample.resident_mb,
            threshold_mb=sample.threshold_mb,
            exceeds_threshold=exceeds
        )
    )
