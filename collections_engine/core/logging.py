"""
Structured logging configuration with correlation IDs and engine context.
"""
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

from collections_engine.core.config import get_settings

# Context variables for request- and execution-scoped data
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar('tenant_id', default=None)
enrollment_id_var: ContextVar[Optional[str]] = ContextVar('enrollment_id', default=None)
execution_id_var: ContextVar[Optional[str]] = ContextVar('execution_id', default=None)

_CONTEXT_VARS = {
    "correlation_id": correlation_id_var,
    "tenant_id": tenant_id_var,
    "enrollment_id": enrollment_id_var,
    "execution_id": execution_id_var,
}


def add_correlation_id(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add correlation ID to log events."""
    correlation_id = correlation_id_var.get()
    if not correlation_id:
        correlation_id = str(uuid.uuid4())[:8]
        correlation_id_var.set(correlation_id)

    event_dict.setdefault("correlation_id", correlation_id)
    return event_dict


def add_engine_context(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add tenant, enrollment and execution identifiers to log events."""
    for key in ("tenant_id", "enrollment_id", "execution_id"):
        value = _CONTEXT_VARS[key].get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def add_service_context(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add service context to log events."""
    settings = get_settings()
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.service_version
    event_dict["environment"] = settings.environment
    return event_dict


def setup_logging() -> None:
    """Configure structured JSON logging."""
    import logging

    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_service_context,
            add_engine_context,
            add_correlation_id,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def get_business_logger() -> structlog.stdlib.BoundLogger:
    """Get a business event logger instance."""
    return structlog.get_logger("business")


def get_performance_logger() -> structlog.stdlib.BoundLogger:
    """Get a performance logger instance."""
    return structlog.get_logger("performance")


def set_correlation_id(correlation_id: str) -> None:
    """Set correlation ID in the current context."""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Get correlation ID from current context."""
    return correlation_id_var.get()


@contextmanager
def correlation_context(correlation_id: str = None, tenant_id: str = None,
                        enrollment_id: str = None, execution_id: str = None):
    """
    Context manager for setting logging context.

    Values that are not given keep whatever the enclosing context holds.
    Everything is restored on exit.

    Args:
        correlation_id: Correlation ID for the request
        tenant_id: Tenant ID
        enrollment_id: Enrollment being processed
        execution_id: Execution being processed
    """
    values = {
        "correlation_id": correlation_id,
        "tenant_id": tenant_id,
        "enrollment_id": enrollment_id,
        "execution_id": execution_id,
    }
    tokens = []
    try:
        for key, value in values.items():
            if value:
                tokens.append((_CONTEXT_VARS[key], _CONTEXT_VARS[key].set(value)))
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


@contextmanager
def performance_timing(operation_name: str, **context):
    """
    Context manager for timing operations.

    Args:
        operation_name: Name of the operation being timed
    """
    start_time = time.time()
    logger = get_performance_logger()

    try:
        yield
    finally:
        duration = time.time() - start_time
        logger.info(
            "Operation completed",
            operation=operation_name,
            duration_ms=round(duration * 1000, 2),
            **context
        )


def log_business_event(event_type: str, **kwargs):
    """
    Log a structured business event.

    Args:
        event_type: Type of business event
        **kwargs: Additional event data
    """
    logger = get_business_logger()
    logger.info("Business event", event_type=event_type, **kwargs)
