"""
FastAPI dependencies
"""

from fastapi import HTTPException, Request
from engine.runtime import EngineRuntime


def get_runtime(request: Request) -> EngineRuntime:
    """The engine runtime created at application startup"""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Engine runtime is not started")
    return runtime
