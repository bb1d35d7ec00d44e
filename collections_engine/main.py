"""Main FastAPI application for the Collections Workflow Engine."""

import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from collections_engine.core.config import get_settings
from collections_engine.core.dependencies import get_scheduler, get_sender_clients
from collections_engine.core.exceptions import BaseAPIException
from collections_engine.core.logging import setup_logging, get_logger, get_correlation_id
from collections_engine.core.middleware import (
    CorrelationIDMiddleware,
    PerformanceMonitoringMiddleware,
)
from collections_engine.api.delivery_events import router as delivery_events_router
from collections_engine.api.health import router as health_router
from collections_engine.api.tenants import router as tenants_router
from collections_engine.api.workflow import router as workflow_router

# Initialize logging
setup_logging()
logger = get_logger(__name__)

# Get settings
settings = get_settings()

# Initialize FastAPI app
app = FastAPI(
    title="Collections Workflow Engine",
    description="Schedules and executes multi-step debt collection workflows",
    version=settings.service_version,
    docs_url="/docs",
    redoc_url="/redoc",
)
app.state.start_time = time.time()

app.add_middleware(CorrelationIDMiddleware)
app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold_ms=1000.0)

# CORS middleware
if settings.enable_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Include API routers
app.include_router(workflow_router)
app.include_router(delivery_events_router)
app.include_router(tenants_router)
app.include_router(health_router, tags=["health"])


@app.exception_handler(BaseAPIException)
async def api_exception_handler(request: Request, exc: BaseAPIException):
    """Render API errors as ``{success: false, error, ...}``."""
    exc.correlation_id = get_correlation_id() or exc.correlation_id
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


@app.on_event("startup")
async def startup_event():
    """Start the background scheduler when enabled."""
    logger.info("Starting Collections Workflow Engine", version=settings.service_version)

    if settings.scheduler_enabled:
        await get_scheduler().start()

    logger.info("Service startup complete", scheduler_enabled=settings.scheduler_enabled)


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    logger.info("Shutting down Collections Workflow Engine")

    await get_scheduler().stop()

    try:
        await get_sender_clients().close()
    except Exception as e:
        logger.error("Failed to close channel transports", error=str(e))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "collections_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
