"""
Health check endpoints for the Collections Workflow Engine.
"""
import time
from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from collections_engine.core.config import Settings, get_settings
from collections_engine.core.dependencies import get_scheduler, get_sender_clients, get_store
from collections_engine.core.logging import get_logger
from collections_engine.database.repository import WorkflowStore
from collections_engine.services.external import SenderClients
from collections_engine.services.scheduler import WorkflowScheduler
from collections_engine.utils.clock import utcnow

router = APIRouter()
logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    service_name: str
    uptime_seconds: float
    timestamp: datetime
    database: bool
    scheduler_running: bool
    transports: Dict[str, Dict[str, Any]]


@router.get("/health", response_model=HealthResponse)
async def health_check(
    request: Request,
    settings: Settings = Depends(get_settings),
    store: WorkflowStore = Depends(get_store),
    senders: SenderClients = Depends(get_sender_clients),
    scheduler: WorkflowScheduler = Depends(get_scheduler),
):
    """
    Service health.

    Reports store connectivity and the circuit breaker state of each
    channel transport. Status is ``degraded`` when the store is unreachable
    or a transport circuit is open.
    """
    start_time = getattr(request.app.state, "start_time", time.time())
    uptime = time.time() - start_time

    database_healthy = await store.health_check()
    transports = senders.get_status()
    transports_available = all(t.get("is_available", True) for t in transports.values())

    response = HealthResponse(
        status="healthy" if database_healthy and transports_available else "degraded",
        version=settings.service_version,
        service_name=settings.service_name,
        uptime_seconds=uptime,
        timestamp=utcnow(),
        database=database_healthy,
        scheduler_running=scheduler.is_running,
        transports=transports,
    )

    logger.info(
        "Health check completed",
        status=response.status,
        database=database_healthy,
    )
    return response
