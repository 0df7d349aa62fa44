"""
Job endpoints: listing, manual runs, dry runs and checkpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from api.dependencies import get_runtime
from core.exceptions import JobBusyError, JobNotFoundError
from engine.runtime import EngineRuntime
from models.job import Job
from schemas.api import (
    CheckpointClearResponse,
    CheckpointResponse,
    FireResponse,
    JobListResponse,
    JobSummary,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["Jobs"])


def _job_summary(runtime: EngineRuntime, job: Job) -> JobSummary:
    scheduler = runtime.scheduler
    return JobSummary(
        id=job.id,
        name=job.name,
        enabled=job.enabled,
        schedule=job.schedule,
        trigger=job.trigger,
        connection_count=len(job.connection_ids),
        destination_types=[d.type for d in job.destinations],
        next_fire_time=scheduler.next_fire_time(job.id),
        busy=scheduler.is_busy(job.id),
        schedule_error=scheduler.schedule_error(job.id),
        last_run=job.last_run
    )


@router.get("", response_model=JobListResponse)
async def list_jobs(runtime: EngineRuntime = Depends(get_runtime)):
    """Registered jobs with their next fire time and run state"""
    jobs = [_job_summary(runtime, job) for job in runtime.scheduler.jobs()]
    return JobListResponse(jobs=jobs, total=len(jobs))


@router.post("/{job_id}/run", response_model=FireResponse, status_code=202)
async def run_job(
    job_id: str,
    resume: Optional[bool] = Query(None, description="Resume from checkpoint (defaults to RESUME_ENABLED)"),
    runtime: EngineRuntime = Depends(get_runtime)
):
    """Fire a job now; the run continues in the background"""
    try:
        runtime.scheduler.fire(job_id, resume=resume)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except JobBusyError as e:
        raise HTTPException(status_code=409, detail=e.message)

    return FireResponse(job_id=job_id, resume=resume, message="Run started")


@router.post("/{job_id}/test")
async def test_job(
    job_id: str,
    connection_id: Optional[str] = Query(None, description="Connection to test against (first by default)"),
    runtime: EngineRuntime = Depends(get_runtime)
):
    """Run the job's query on one connection without writing to destinations"""
    try:
        return await runtime.scheduler.test_job(job_id, connection_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.get("/{job_id}/checkpoint", response_model=CheckpointResponse)
async def get_checkpoint(job_id: str, runtime: EngineRuntime = Depends(get_runtime)):
    """Stored checkpoint of an interrupted or failed run"""
    checkpoint = await runtime.store.load(job_id)
    if checkpoint is None:
        raise HTTPException(status_code=404, detail=f"No checkpoint for job {job_id}")
    return CheckpointResponse(**checkpoint.model_dump(by_alias=True))


@router.delete("/{job_id}/checkpoint", response_model=CheckpointClearResponse)
async def clear_checkpoint(job_id: str, runtime: EngineRuntime = Depends(get_runtime)):
    """Operator clear; the next run starts from scratch even with resume"""
    if runtime.scheduler.is_busy(job_id):
        raise HTTPException(status_code=409, detail=f"Job {job_id} is running")

    cleared = await runtime.store.clear(job_id)
    logger.info(f"Checkpoint clear requested for job {job_id}: cleared={cleared}")
    return CheckpointClearResponse(job_id=job_id, cleared=cleared)
