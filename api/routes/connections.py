"""
Connection health endpoints
"""

from typing import List
from fastapi import APIRouter, Depends
from api.dependencies import get_runtime
from engine.health import ConnectionHealth
from engine.runtime import EngineRuntime
from schemas.api import ConnectionHealthInfo, ConnectionHealthResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/connections", tags=["Connections"])


def _response(results: List[ConnectionHealth]) -> ConnectionHealthResponse:
    infos = [
        ConnectionHealthInfo(
            connection_id=r.connection_id,
            connection_name=r.connection_name,
            status=r.status,
            message=r.message,
            duration_ms=r.duration_ms,
            last_tested=r.last_tested
        )
        for r in results
    ]
    return ConnectionHealthResponse(
        connections=infos,
        total=len(infos),
        connected=sum(1 for i in infos if i.status == "connected"),
        failed=sum(1 for i in infos if i.status == "failed")
    )


@router.get("/health", response_model=ConnectionHealthResponse)
async def connection_health(runtime: EngineRuntime = Depends(get_runtime)):
    """Latest probe result of every registered connection"""
    probe = runtime.health_probe
    return _response([probe.status(c) for c in runtime.scheduler.connections()])


@router.post("/health", response_model=ConnectionHealthResponse)
async def probe_connections(runtime: EngineRuntime = Depends(get_runtime)):
    """Probe every registered connection now"""
    results = await runtime.health_probe.probe(runtime.scheduler.connections())
    return _response(results)
