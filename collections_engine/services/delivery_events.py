"""
Delivery-event correlation: applies provider callbacks to communication records.

Events are idempotent per (correlation_id, event_type) and never move a
record backwards. They update communication records only; enrollments are
not affected by engagement.
"""
import base64
import hashlib
import hmac
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from collections_engine.core.logging import get_logger
from collections_engine.database.repository import WorkflowStore
from collections_engine.models.workflow import CommunicationRecord, CommunicationStatus
from collections_engine.schemas.delivery_event import DeliveryBatchResult, DeliveryEventPayload
from collections_engine.services.webhook_notifier import WebhookNotifier
from collections_engine.utils.clock import to_naive_utc, utcnow

logger = get_logger(__name__)

EVENT_ALIASES: Dict[str, str] = {
    "delivered": "delivered",
    "open": "open",
    "opened": "open",
    "click": "click",
    "clicked": "click",
    "bounce": "bounce",
    "bounced": "bounce",
    "dropped": "dropped",
    "spamreport": "spam_report",
    "spam_report": "spam_report",
    "spam": "spam_report",
    "unsubscribe": "unsubscribe",
    "group_unsubscribe": "unsubscribe",
}

# Canonical event -> (status to move to, timestamp field)
EVENT_EFFECTS: Dict[str, Tuple[Optional[CommunicationStatus], str]] = {
    "delivered": (CommunicationStatus.DELIVERED, "delivered_at"),
    "open": (CommunicationStatus.OPENED, "opened_at"),
    "click": (CommunicationStatus.CLICKED, "clicked_at"),
    "bounce": (CommunicationStatus.BOUNCED, "bounced_at"),
    "dropped": (CommunicationStatus.FAILED, "failed_at"),
    "spam_report": (None, "spam_reported_at"),
    "unsubscribe": (None, "unsubscribed_at"),
}

ENGAGEMENT_RANK: Dict[CommunicationStatus, int] = {
    CommunicationStatus.DRAFT: 0,
    CommunicationStatus.SENT: 1,
    CommunicationStatus.DELIVERED: 2,
    CommunicationStatus.OPENED: 3,
    CommunicationStatus.CLICKED: 4,
}

TERMINAL_STATUSES = frozenset({
    CommunicationStatus.BOUNCED,
    CommunicationStatus.FAILED,
    CommunicationStatus.PAID,
    CommunicationStatus.ESCALATED,
})

WEBHOOK_EVENT_FOR = {
    "open": "letter.opened",
    "bounce": "letter.bounced",
}


def normalize_event_type(event_type: str) -> Optional[str]:
    return EVENT_ALIASES.get((event_type or "").strip().lower())


def should_transition(current: CommunicationStatus, target: CommunicationStatus) -> bool:
    """Whether moving ``current`` to ``target`` is forward progress."""
    if current in TERMINAL_STATUSES:
        return False
    if target in TERMINAL_STATUSES:
        return True
    return ENGAGEMENT_RANK.get(target, 0) > ENGAGEMENT_RANK.get(current, 0)


def verify_signature(secret: str, timestamp: str, body: bytes, signature: str) -> bool:
    """Check a base64 HMAC-SHA256 over timestamp + body."""
    if not signature or timestamp is None:
        return False
    digest = hmac.new(
        secret.encode("utf-8"),
        timestamp.encode("utf-8") + body,
        hashlib.sha256,
    ).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature)


class DeliveryEventService:
    """Applies delivery events and tracking-pixel opens to communication records."""

    def __init__(self, store: WorkflowStore, notifier: Optional[WebhookNotifier] = None):
        self.store = store
        self.notifier = notifier

    async def update_communication_status(
        self,
        correlation_id: str,
        event_type: str,
        event_timestamp: datetime,
        provider_event_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Apply one event to the record with ``correlation_id``.

        Returns:
            True if the event was new and applied, False if it was unknown,
            uncorrelated or a duplicate
        """
        canonical = normalize_event_type(event_type)
        if canonical is None:
            logger.info("Ignoring unsupported delivery event", event_type=event_type)
            return False

        record = await self.store.get_communication_by_correlation(correlation_id)
        if record is None:
            logger.info("No communication record for delivery event", correlation_id=correlation_id)
            return False

        occurred_at = to_naive_utc(event_timestamp)
        target_status, timestamp_field = EVENT_EFFECTS[canonical]
        reason = (payload or {}).get("reason")

        # Re-read once if the status moved underneath us
        for _ in range(2):
            fields = self._fields_for(record, target_status, timestamp_field, occurred_at, reason)
            if not fields:
                break
            if await self.store.update_communication(
                record.id, fields, expected_statuses=[record.status.value]
            ):
                break
            record = await self.store.get_communication_by_correlation(correlation_id)
            if record is None:
                break

        # Ledger row only after the update landed; re-applying a seen event is a no-op
        is_new = await self.store.record_delivery_event(
            correlation_id, canonical, occurred_at, provider_event_id, payload
        )
        if not is_new:
            logger.info(
                "Duplicate delivery event ignored",
                correlation_id=correlation_id,
                event_type=canonical
            )
            return False

        logger.info(
            "Delivery event applied",
            correlation_id=correlation_id,
            event_type=canonical,
            status=fields.get("status") if fields else None,
        )

        webhook_event = WEBHOOK_EVENT_FOR.get(canonical)
        if webhook_event and record is not None:
            await self._notify(record, webhook_event, {
                timestamp_field: occurred_at.isoformat(),
                "reason": reason,
            })
        return True

    @staticmethod
    def _fields_for(
        record: CommunicationRecord,
        target_status: Optional[CommunicationStatus],
        timestamp_field: str,
        occurred_at: datetime,
        reason: Optional[str],
    ) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if getattr(record, timestamp_field) is None:
            fields[timestamp_field] = occurred_at
        if target_status is not None and should_transition(record.status, target_status):
            fields["status"] = target_status
            if target_status in TERMINAL_STATUSES and reason:
                fields["failure_reason"] = reason
        return fields

    async def process_events(self, events: Iterable[DeliveryEventPayload]) -> DeliveryBatchResult:
        """Apply a batch of events; one bad event never affects the rest."""
        result = DeliveryBatchResult()
        for event in events:
            result.processed += 1

            if not event.correlation_id:
                result.ignored += 1
                continue

            try:
                applied = await self.update_communication_status(
                    event.correlation_id,
                    event.event,
                    event.occurred_at(),
                    provider_event_id=event.sg_event_id,
                    payload=event.model_dump(exclude_none=True),
                )
            except Exception as e:
                logger.error(
                    "Failed to process delivery event",
                    correlation_id=event.correlation_id,
                    event_type=event.event,
                    error=str(e),
                )
                result.errors.append(f"{event.correlation_id}: {str(e)}")
                result.ignored += 1
                continue

            if applied:
                result.applied += 1
            else:
                result.ignored += 1

        logger.info(
            "Delivery events processed",
            processed=result.processed,
            applied=result.applied,
            ignored=result.ignored,
        )
        return result

    async def record_open(self, correlation_id: str) -> bool:
        """Tracking-pixel open: marks a sent record opened."""
        record = await self.store.get_communication_by_correlation(correlation_id)
        if record is None:
            return False

        opened_at = utcnow()
        updated = await self.store.update_communication(
            record.id,
            {"status": CommunicationStatus.OPENED, "opened_at": opened_at},
            expected_statuses=[CommunicationStatus.SENT.value],
        )
        if updated:
            logger.info("Tracking pixel open recorded", correlation_id=correlation_id)
            await self._notify(record, "letter.opened", {"opened_at": opened_at.isoformat()})
        return updated

    async def _notify(self, record: CommunicationRecord, event: str, extra: Dict[str, Any]) -> None:
        if not self.notifier:
            return
        try:
            debtor = await self.store.get_debtor(record.debtor_id)
        except Exception as e:
            logger.error("Failed to load debtor for webhook", debtor_id=record.debtor_id, error=str(e))
            return
        if debtor is None:
            return
        await self.notifier.notify(debtor.tenant_id, event, {
            "letter_id": record.id,
            "debtor_id": record.debtor_id,
            "channel": record.channel.value,
            "email": debtor.email,
            **extra,
        })
