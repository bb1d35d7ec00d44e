"""
Outbound webhook notifications to tenants.
"""
import hashlib
import hmac
import json
from typing import Any, Dict, Optional

import httpx

from collections_engine.core.logging import get_logger
from collections_engine.core.retry import create_async_retry_decorator, get_webhook_retry_config
from collections_engine.database.repository import WorkflowStore
from collections_engine.utils.clock import utcnow

logger = get_logger(__name__)

WEBHOOK_EVENTS: Dict[str, str] = {
    "letter.sent": "Letter was successfully sent to debtor",
    "letter.opened": "Letter was opened by debtor (tracking pixel loaded)",
    "letter.bounced": "Letter bounced (invalid email)",
    "campaign.completed": "Workflow campaign completed for debtor",
}

USER_AGENT = "CollectionsEngine-Webhooks/1.0"


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookNotifier:
    """
    Delivers engine events to the tenant's configured webhook URL.

    Delivery failures are logged and swallowed; the engine never waits on
    or fails because of a tenant endpoint.
    """

    def __init__(
        self,
        store: WorkflowStore,
        timeout_seconds: float = 5.0,
        max_attempts: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        retry_decorator = create_async_retry_decorator(
            get_webhook_retry_config(max_attempts), service_name="tenant_webhook"
        )
        self._deliver = retry_decorator(self._post)

    async def _post(self, url: str, body: bytes, headers: Dict[str, str]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(url, content=body, headers=headers)
            response.raise_for_status()
            return response

    async def notify(self, tenant_id: str, event: str, data: Dict[str, Any]) -> bool:
        """
        Send one event to a tenant.

        Returns:
            True if the tenant endpoint accepted the event
        """
        try:
            config = await self.store.get_webhook_config(tenant_id)
        except Exception as e:
            logger.error("Failed to load webhook config", tenant_id=tenant_id, error=str(e))
            return False

        if not config or not config.is_active or not config.url or event not in config.events:
            return False

        payload = {
            "event": event,
            "timestamp": utcnow().isoformat() + "Z",
            "tenant_id": tenant_id,
            "data": data,
        }
        body = json.dumps(payload, default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": event,
            "User-Agent": USER_AGENT,
        }
        if config.secret:
            headers["X-Webhook-Signature"] = f"sha256={sign_payload(body, config.secret)}"

        try:
            await self._deliver(config.url, body, headers)
        except Exception as e:
            logger.error(
                "Webhook delivery failed",
                tenant_id=tenant_id,
                webhook_event=event,
                error=str(e)
            )
            return False

        logger.info("Webhook delivered", tenant_id=tenant_id, webhook_event=event)
        return True
