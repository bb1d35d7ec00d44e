"""
Dependency injection for FastAPI application.

Provides cached factory functions wiring the store, transports and engine
services together from settings.
"""

from functools import lru_cache
from typing import Dict

from collections_engine.core.config import get_settings
from collections_engine.core.logging import get_logger
from collections_engine.database.repository import WorkflowStore
from collections_engine.database.session import create_db_engine, create_session_factory, init_db
from collections_engine.database.sqlalchemy_store import SQLAlchemyWorkflowStore
from collections_engine.database.supabase_store import SupabaseWorkflowStore
from collections_engine.models.workflow import StepType
from collections_engine.services.channel_dispatchers import ChannelDispatcher, build_dispatchers
from collections_engine.services.delivery_events import DeliveryEventService
from collections_engine.services.enrollment_service import EnrollmentService
from collections_engine.services.external import SenderClients
from collections_engine.services.scheduler import WorkflowScheduler
from collections_engine.services.step_executor import StepExecutor
from collections_engine.services.webhook_notifier import WebhookNotifier

logger = get_logger(__name__)


@lru_cache()
def get_store() -> WorkflowStore:
    """
    Get the persistence layer selected by ``store_backend``.

    Returns:
        SQLAlchemy-backed store, or the Supabase store when configured
    """
    settings = get_settings()

    if settings.store_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_key:
            raise ValueError("supabase_url and supabase_key are required for the supabase backend")
        logger.info("Using Supabase workflow store")
        return SupabaseWorkflowStore.from_settings(settings.supabase_url, settings.supabase_key)

    engine = create_db_engine(settings.database_url, echo=settings.debug)
    if settings.auto_create_tables:
        init_db(engine)
    logger.info("Using SQLAlchemy workflow store", backend=engine.dialect.name)
    return SQLAlchemyWorkflowStore(create_session_factory(engine))


@lru_cache()
def get_sender_clients() -> SenderClients:
    """Get email, SMS and physical mail transports."""
    return SenderClients.from_settings(get_settings())


@lru_cache()
def get_webhook_notifier() -> WebhookNotifier:
    settings = get_settings()
    return WebhookNotifier(
        get_store(),
        timeout_seconds=settings.outbound_webhook_timeout_seconds,
        max_attempts=settings.outbound_webhook_max_attempts,
    )


@lru_cache()
def get_enrollment_service() -> EnrollmentService:
    return EnrollmentService(get_store(), get_settings(), get_webhook_notifier())


@lru_cache()
def get_dispatchers() -> Dict[StepType, ChannelDispatcher]:
    return build_dispatchers(get_store(), get_sender_clients(), get_settings(), get_webhook_notifier())


@lru_cache()
def get_step_executor() -> StepExecutor:
    return StepExecutor(get_store(), get_enrollment_service(), get_dispatchers(), get_settings())


@lru_cache()
def get_scheduler() -> WorkflowScheduler:
    """Get the single scheduler shared by the timer and the HTTP trigger."""
    return WorkflowScheduler(get_store(), get_step_executor(), get_settings())


@lru_cache()
def get_delivery_event_service() -> DeliveryEventService:
    return DeliveryEventService(get_store(), get_webhook_notifier())
