"""
Recent progress events
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from api.dependencies import get_runtime
from engine.runtime import EngineRuntime
from schemas.api import ProgressEventResponse, ProgressListResponse

router = APIRouter(tags=["Progress"])


@router.get("/progress", response_model=ProgressListResponse)
async def get_progress(
    job_id: Optional[str] = Query(None, description="Only events of this job"),
    limit: int = Query(50, ge=1, le=500, description="Number of most recent events"),
    runtime: EngineRuntime = Depends(get_runtime)
):
    events = runtime.emitter.history(job_id=job_id, limit=limit)
    return ProgressListResponse(
        events=[ProgressEventResponse(**event.to_wire()) for event in events],
        total=len(events)
    )
