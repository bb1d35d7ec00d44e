"""
Channel dispatchers: turn a workflow step into an outbound communication.

Every sending dispatcher validates the debtor and template first, then
writes a draft communication record, then calls its transport under a
timeout, and finally records the outcome on the draft.
"""
import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional

from collections_engine.core.config import Settings, get_settings
from collections_engine.core.exceptions import (
    ChannelValidationError,
    ExternalServiceError,
    ExternalServiceTimeoutError,
)
from collections_engine.core.logging import get_logger
from collections_engine.database.repository import WorkflowStore
from collections_engine.models.workflow import (
    CommunicationStatus,
    Debtor,
    StepType,
    Template,
    TenantSettings,
)
from collections_engine.services.external import (
    EmailMessage,
    LetterRequest,
    PostalAddress,
    SenderClients,
    SendReceipt,
    SMSMessage,
)
from collections_engine.services.webhook_notifier import WebhookNotifier
from collections_engine.utils.clock import utcnow
from collections_engine.utils.template_renderer import (
    DEFAULT_COMPANY_NAME,
    DEFAULT_EMAIL_SUBJECT,
    build_template_variables,
    render,
)

logger = get_logger(__name__)


@dataclass
class DispatchContext:
    """Where in a workflow a dispatch happens."""
    workflow_name: Optional[str] = None
    step_number: Optional[int] = None
    execution_id: Optional[str] = None
    now: Optional[datetime] = None

    @property
    def today(self) -> date:
        return (self.now or utcnow()).date()


@dataclass
class ChannelResult:
    success: bool
    communication_record_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


class ChannelDispatcher(ABC):
    """Base class for all step-type dispatchers."""

    channel: StepType

    @abstractmethod
    async def send(
        self,
        debtor: Debtor,
        template: Optional[Template],
        tenant: TenantSettings,
        context: DispatchContext,
    ) -> ChannelResult:
        ...


class WaitDispatcher(ChannelDispatcher):
    """Wait steps only move time forward."""

    channel = StepType.WAIT

    async def send(
        self,
        debtor: Debtor,
        template: Optional[Template],
        tenant: TenantSettings,
        context: DispatchContext,
    ) -> ChannelResult:
        return ChannelResult(success=True)


class SendingDispatcher(ChannelDispatcher):
    """Shared record-then-send flow for channels with an external transport."""

    service_name: str = "transport"

    def __init__(
        self,
        store: WorkflowStore,
        sender: Any,
        settings: Optional[Settings] = None,
        notifier: Optional[WebhookNotifier] = None,
    ):
        self.store = store
        self.sender = sender
        self.settings = settings or get_settings()
        self.notifier = notifier

    @abstractmethod
    def validate(self, debtor: Debtor, template: Optional[Template]) -> None:
        """Raise ChannelValidationError when the channel cannot be used."""

    @abstractmethod
    async def transmit(
        self,
        debtor: Debtor,
        template: Template,
        tenant: TenantSettings,
        variables: Dict[str, str],
        correlation_id: str,
    ) -> SendReceipt:
        ...

    async def send(
        self,
        debtor: Debtor,
        template: Optional[Template],
        tenant: TenantSettings,
        context: DispatchContext,
    ) -> ChannelResult:
        try:
            self.validate(debtor, template)
        except ChannelValidationError as e:
            logger.warning(
                "Channel validation failed",
                channel=self.channel.value,
                debtor_id=debtor.id,
                error=e.detail
            )
            return ChannelResult(success=False, error=e.detail, retryable=False)

        variables = build_template_variables(
            debtor,
            tenant,
            workflow_name=context.workflow_name,
            step_number=context.step_number,
            today=context.today,
        )
        correlation_id = str(uuid.uuid4())

        record = await self.store.create_communication({
            "debtor_id": debtor.id,
            "template_id": template.id,
            "channel": self.channel,
            "status": CommunicationStatus.DRAFT,
            "correlation_id": correlation_id,
        })

        timeout = self.settings.dispatch_timeout_seconds
        try:
            receipt = await asyncio.wait_for(
                self.transmit(debtor, template, tenant, variables, correlation_id),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            error = ExternalServiceTimeoutError(self.service_name, timeout)
            return await self._record_failure(record.id, str(error))
        except ExternalServiceError as e:
            return await self._record_failure(record.id, str(e))
        except Exception as e:
            logger.error(
                "Unexpected transport error",
                channel=self.channel.value,
                error=str(e),
                exc_info=True
            )
            return await self._record_failure(record.id, f"[{self.service_name}] {str(e)}")

        # The transport accepted the message; the step counts as sent from here on
        sent_at = utcnow()
        try:
            await self.store.update_communication(record.id, {
                "status": CommunicationStatus.SENT,
                "sent_at": sent_at,
                "provider_message_id": receipt.provider_message_id,
                "external_reference": receipt.external_reference,
                "expected_delivery_date": receipt.expected_delivery_date,
                "tracking_url": receipt.tracking_url,
            })
        except Exception as e:
            logger.error(
                "Failed to record sent communication",
                channel=self.channel.value,
                communication_record_id=record.id,
                correlation_id=correlation_id,
                provider_message_id=receipt.provider_message_id,
                error=str(e)
            )

        logger.info(
            "Communication sent",
            channel=self.channel.value,
            communication_record_id=record.id,
            debtor_id=debtor.id,
        )

        if self.notifier:
            await self.notifier.notify(debtor.tenant_id, "letter.sent", {
                "letter_id": record.id,
                "debtor_id": debtor.id,
                "channel": self.channel.value,
                "email": debtor.email,
                "template_name": template.name,
                "sent_at": sent_at.isoformat(),
            })

        return ChannelResult(success=True, communication_record_id=record.id)

    async def _record_failure(self, record_id: str, error: str) -> ChannelResult:
        logger.warning("Channel send failed", channel=self.channel.value, error=error)
        await self.store.update_communication(record_id, {
            "status": CommunicationStatus.FAILED,
            "failed_at": utcnow(),
            "failure_reason": error,
        })
        return ChannelResult(
            success=False,
            communication_record_id=record_id,
            error=error,
            retryable=True,
        )


class EmailDispatcher(SendingDispatcher):
    channel = StepType.EMAIL
    service_name = "sendgrid"

    def validate(self, debtor: Debtor, template: Optional[Template]) -> None:
        if not debtor.email:
            raise ChannelValidationError(self.channel.value, "Debtor has no email address")
        if template is None or not template.html_content:
            raise ChannelValidationError(self.channel.value, "Email step has no email template")

    def tracking_pixel(self, correlation_id: str) -> str:
        base_url = self.settings.public_base_url.rstrip("/")
        return (
            f'<img src="{base_url}/open?id={correlation_id}" '
            'width="1" height="1" style="display:none;" />'
        )

    async def transmit(
        self,
        debtor: Debtor,
        template: Template,
        tenant: TenantSettings,
        variables: Dict[str, str],
        correlation_id: str,
    ) -> SendReceipt:
        subject = render(template.email_subject or DEFAULT_EMAIL_SUBJECT, variables)
        body = render(template.html_content, variables, escape_html=True)

        message = EmailMessage(
            to_email=debtor.email,
            to_name=debtor.name,
            subject=subject,
            html=body + self.tracking_pixel(correlation_id),
            from_email=tenant.from_email or self.settings.default_from_email,
            from_name=tenant.from_name or tenant.company_name or self.settings.default_from_name,
            reply_to=tenant.reply_to_email or tenant.company_email,
            correlation_id=correlation_id,
        )
        return await self.sender.send_email(message)


class SMSDispatcher(SendingDispatcher):
    channel = StepType.SMS
    service_name = "twilio"

    def validate(self, debtor: Debtor, template: Optional[Template]) -> None:
        if not debtor.phone:
            raise ChannelValidationError(self.channel.value, "Debtor has no phone number")
        if template is None or not template.sms_content:
            raise ChannelValidationError(self.channel.value, "SMS step has no SMS template")

    async def transmit(
        self,
        debtor: Debtor,
        template: Template,
        tenant: TenantSettings,
        variables: Dict[str, str],
        correlation_id: str,
    ) -> SendReceipt:
        message = SMSMessage(
            to_number=debtor.phone,
            body=render(template.sms_content, variables),
            correlation_id=correlation_id,
        )
        return await self.sender.send_sms(message)


class PhysicalMailDispatcher(SendingDispatcher):
    channel = StepType.PHYSICAL
    service_name = "lob"

    def validate(self, debtor: Debtor, template: Optional[Template]) -> None:
        if not (debtor.address and debtor.city and debtor.state and debtor.zip):
            raise ChannelValidationError(
                self.channel.value, "Debtor address information is incomplete"
            )
        if template is None or not (template.physical_content or template.html_content):
            raise ChannelValidationError(self.channel.value, "Physical step has no letter template")

    async def transmit(
        self,
        debtor: Debtor,
        template: Template,
        tenant: TenantSettings,
        variables: Dict[str, str],
        correlation_id: str,
    ) -> SendReceipt:
        content = render(template.physical_content or template.html_content, variables)
        request = LetterRequest(
            description=f"Demand Letter - {debtor.name}",
            to_address=PostalAddress(
                name=debtor.name,
                address_line1=debtor.address,
                address_city=debtor.city,
                address_state=debtor.state,
                address_zip=debtor.zip,
                address_country=debtor.country or "US",
            ),
            from_address=PostalAddress(
                name=tenant.company_name or DEFAULT_COMPANY_NAME,
                address_line1=tenant.company_address or "",
                address_city=tenant.company_city or "",
                address_state=tenant.company_state or "",
                address_zip=tenant.company_zip or "",
            ),
            content=content,
            correlation_id=correlation_id,
        )
        return await self.sender.send_letter(request)


def build_dispatchers(
    store: WorkflowStore,
    senders: SenderClients,
    settings: Optional[Settings] = None,
    notifier: Optional[WebhookNotifier] = None,
) -> Dict[StepType, ChannelDispatcher]:
    """One dispatcher per step type."""
    settings = settings or get_settings()
    return {
        StepType.EMAIL: EmailDispatcher(store, senders.email, settings, notifier),
        StepType.SMS: SMSDispatcher(store, senders.sms, settings, notifier),
        StepType.PHYSICAL: PhysicalMailDispatcher(store, senders.physical, settings, notifier),
        StepType.WAIT: WaitDispatcher(),
    }
