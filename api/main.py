"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, jobs, progress, connections
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.logging import setup_logging
from engine.runtime import EngineRuntime
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Query Relay Engine API",
    description="Operator API for the multi-connection SQL job execution engine",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(jobs.router)
app.include_router(progress.router)
app.include_router(connections.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Query Relay Engine API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    # A runtime may be injected beforehand (tests, embedding)
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = EngineRuntime.from_settings(settings)
        runtime.load_definitions()
        app.state.runtime = runtime

    runtime.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Query Relay Engine API")
    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        await runtime.shutdown()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Query Relay Engine API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "jobs": "/jobs",
            "progress": "/progress",
            "connections": "/connections/health"
        }
    }
