"""
Tenant outbound webhook configuration endpoints.
"""
from fastapi import APIRouter, Depends

from collections_engine.core.dependencies import get_store
from collections_engine.core.logging import get_logger
from collections_engine.database.repository import WorkflowStore
from collections_engine.models.workflow import TenantWebhookConfig
from collections_engine.schemas.tenant import (
    WebhookConfigRequest,
    WebhookConfigResponse,
    WebhookView,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/tenants", tags=["tenants"])


def _view(config: TenantWebhookConfig) -> WebhookView:
    return WebhookView(
        url=config.url,
        events=config.events,
        is_active=config.is_active,
        created_at=config.created_at,
        updated_at=config.updated_at,
    )


@router.put("/{tenant_id}/webhook", response_model=WebhookConfigResponse)
async def configure_webhook(
    tenant_id: str,
    request: WebhookConfigRequest,
    store: WorkflowStore = Depends(get_store)
):
    """Create or replace the tenant's webhook configuration."""
    saved = await store.upsert_webhook_config(
        TenantWebhookConfig(
            tenant_id=tenant_id,
            url=request.url,
            secret=request.secret,
            events=request.events,
            is_active=request.is_active,
        )
    )
    logger.info("Webhook configured", tenant_id=tenant_id, events=request.events)
    return WebhookConfigResponse(webhook=_view(saved))


@router.get("/{tenant_id}/webhook", response_model=WebhookConfigResponse)
async def get_webhook(tenant_id: str, store: WorkflowStore = Depends(get_store)):
    """Current configuration (secret omitted); ``webhook`` is null when none is set."""
    config = await store.get_webhook_config(tenant_id)
    return WebhookConfigResponse(webhook=_view(config) if config else None)
