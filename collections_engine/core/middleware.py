"""
FastAPI middleware for correlation ID propagation and request tracing.
"""
import time
import uuid
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from collections_engine.core.logging import (
    get_logger,
    get_correlation_id,
    correlation_context,
)

logger = get_logger(__name__)


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation ID to requests and responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request and add correlation ID."""
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())[:8]
        tenant_id = request.headers.get("X-Tenant-ID")

        with correlation_context(correlation_id=correlation_id, tenant_id=tenant_id):
            logger.info(
                "Request started",
                method=request.method,
                path=request.url.path,
            )

            start_time = time.time()

            try:
                response = await call_next(request)
            except Exception as e:
                processing_time_ms = round((time.time() - start_time) * 1000, 2)
                logger.error(
                    "Request failed",
                    method=request.method,
                    path=request.url.path,
                    error=str(e),
                    processing_time_ms=processing_time_ms,
                    exc_info=True
                )
                return JSONResponse(
                    status_code=500,
                    content={
                        "error": "Internal server error",
                        "correlation_id": correlation_id,
                        "timestamp": time.time()
                    },
                    headers={"X-Correlation-ID": correlation_id},
                )

            processing_time_ms = round((time.time() - start_time) * 1000, 2)
            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                processing_time_ms=processing_time_ms,
            )

            response.headers["X-Correlation-ID"] = correlation_id
            return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Middleware that flags slow requests."""

    def __init__(self, app, slow_request_threshold_ms: float = 1000.0):
        super().__init__(app)
        self.slow_request_threshold_ms = slow_request_threshold_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)
        processing_time = (time.time() - start_time) * 1000

        if processing_time > self.slow_request_threshold_ms:
            logger.warning(
                "Slow request detected",
                method=request.method,
                path=request.url.path,
                processing_time_ms=round(processing_time, 2),
                threshold_ms=self.slow_request_threshold_ms,
                correlation_id=get_correlation_id()
            )

        response.headers["X-Processing-Time-MS"] = str(round(processing_time, 2))
        return response
