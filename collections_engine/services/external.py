"""External transport clients for email, SMS and physical mail."""

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx

from collections_engine.core.circuit_breaker import CircuitBreakerConfig, ServiceClient
from collections_engine.core.config import Settings, get_settings
from collections_engine.core.exceptions import ExternalServiceError
from collections_engine.core.logging import get_logger
from collections_engine.utils.clock import utcnow

logger = get_logger(__name__)


@dataclass
class PostalAddress:
    name: str
    address_line1: str
    address_city: str
    address_state: str
    address_zip: str
    address_country: str = "US"


@dataclass
class EmailMessage:
    """Outbound email with its tracking correlation id."""
    to_email: str
    subject: str
    html: str
    from_email: str
    correlation_id: str
    to_name: Optional[str] = None
    from_name: Optional[str] = None
    reply_to: Optional[str] = None


@dataclass
class SMSMessage:
    to_number: str
    body: str
    correlation_id: str


@dataclass
class LetterRequest:
    to_address: PostalAddress
    from_address: PostalAddress
    content: str
    correlation_id: str
    description: str = "Demand Letter"


@dataclass
class SendReceipt:
    """What a transport hands back after accepting a message."""
    provider_message_id: Optional[str] = None
    external_reference: Optional[str] = None
    expected_delivery_date: Optional[str] = None
    tracking_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def _breaker_config(settings: Settings) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        failure_threshold=settings.circuit_breaker_failure_threshold,
        timeout=settings.circuit_breaker_timeout_seconds,
    )


class SendGridEmailSender:
    """Email transport using the SendGrid v3 mail API."""

    def __init__(self, client: ServiceClient):
        self.client = client

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SendGridEmailSender":
        return cls(ServiceClient(
            service_name="sendgrid",
            base_url=settings.sendgrid_base_url,
            timeout_seconds=settings.dispatch_timeout_seconds,
            headers={"Authorization": f"Bearer {settings.sendgrid_api_key or ''}"},
            circuit_breaker_config=_breaker_config(settings),
            transport=transport,
        ))

    async def send_email(self, message: EmailMessage) -> SendReceipt:
        recipient: Dict[str, str] = {"email": message.to_email}
        if message.to_name:
            recipient["name"] = message.to_name

        sender: Dict[str, str] = {"email": message.from_email}
        if message.from_name:
            sender["name"] = message.from_name

        payload: Dict[str, Any] = {
            "personalizations": [{
                "to": [recipient],
                "custom_args": {"correlation_id": message.correlation_id},
            }],
            "from": sender,
            "subject": message.subject,
            "content": [{"type": "text/html", "value": message.html}],
            "tracking_settings": {
                "click_tracking": {"enable": True},
                "open_tracking": {"enable": True},
            },
        }
        if message.reply_to:
            payload["reply_to"] = {"email": message.reply_to}

        response = await self.client.post("/v3/mail/send", json=payload)
        message_id = response.headers.get("X-Message-Id")

        logger.info(
            "Email accepted by SendGrid",
            correlation_id=message.correlation_id,
            provider_message_id=message_id,
        )
        return SendReceipt(provider_message_id=message_id)

    def get_status(self) -> Dict[str, Any]:
        return self.client.get_circuit_status()

    async def close(self) -> None:
        await self.client.close()


class TwilioSMSSender:
    """SMS transport using the Twilio Messages API."""

    def __init__(self, client: ServiceClient, account_sid: str, from_number: str):
        self.client = client
        self.account_sid = account_sid
        self.from_number = from_number

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "TwilioSMSSender":
        account_sid = settings.twilio_account_sid or ""
        client = ServiceClient(
            service_name="twilio",
            base_url=settings.twilio_base_url,
            timeout_seconds=settings.dispatch_timeout_seconds,
            auth=httpx.BasicAuth(account_sid, settings.twilio_auth_token or ""),
            circuit_breaker_config=_breaker_config(settings),
            transport=transport,
        )
        return cls(client, account_sid, settings.twilio_from_number or "")

    async def send_sms(self, message: SMSMessage) -> SendReceipt:
        response = await self.client.post(
            f"/2010-04-01/Accounts/{self.account_sid}/Messages.json",
            data={"To": message.to_number, "From": self.from_number, "Body": message.body},
        )
        body = response.json()
        sid = body.get("sid")
        if not sid:
            raise ExternalServiceError("twilio", "Response did not include a message sid")

        logger.info("SMS accepted by Twilio", correlation_id=message.correlation_id, sid=sid)
        return SendReceipt(provider_message_id=sid, raw=body)

    def get_status(self) -> Dict[str, Any]:
        return self.client.get_circuit_status()

    async def close(self) -> None:
        await self.client.close()


class LobMailSender:
    """Physical mail fulfilment using the Lob letters API."""

    def __init__(self, client: ServiceClient):
        self.client = client

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "LobMailSender":
        return cls(ServiceClient(
            service_name="lob",
            base_url=settings.lob_base_url,
            timeout_seconds=settings.dispatch_timeout_seconds,
            auth=httpx.BasicAuth(settings.lob_api_key or "", ""),
            circuit_breaker_config=_breaker_config(settings),
            transport=transport,
        ))

    async def send_letter(self, request: LetterRequest) -> SendReceipt:
        payload = {
            "description": request.description,
            "to": request.to_address.__dict__,
            "from": request.from_address.__dict__,
            "file": request.content,
            "color": False,
            "double_sided": False,
            "address_placement": "top_first_page",
            "metadata": {"correlation_id": request.correlation_id},
        }
        response = await self.client.post("/v1/letters", json=payload)
        body = response.json()
        letter_id = body.get("id")
        if not letter_id:
            raise ExternalServiceError("lob", "Response did not include a letter id")

        logger.info("Letter accepted by Lob", correlation_id=request.correlation_id, letter_id=letter_id)
        return SendReceipt(
            provider_message_id=letter_id,
            external_reference=letter_id,
            expected_delivery_date=body.get("expected_delivery_date"),
            tracking_url=body.get("tracking_url") or body.get("url"),
            raw=body,
        )

    def get_status(self) -> Dict[str, Any]:
        return self.client.get_circuit_status()

    async def close(self) -> None:
        await self.client.close()


class SimulatedSender:
    """
    Stand-in transport used when ``mock_external_services`` is enabled.

    Accepts every message and returns provider-shaped identifiers so the
    rest of the pipeline behaves as in production. Only the most recent
    ``max_kept`` messages are kept in ``sent``.
    """

    def __init__(self, service_name: str, max_kept: int = 500):
        self.service_name = service_name
        self.max_kept = max_kept
        self.sent: list = []

    def _keep(self, message: Any) -> None:
        self.sent.append(message)
        if len(self.sent) > self.max_kept:
            del self.sent[:-self.max_kept]

    async def send_email(self, message: EmailMessage) -> SendReceipt:
        self._keep(message)
        logger.info("Simulated email send", to=message.to_email, correlation_id=message.correlation_id)
        return SendReceipt(provider_message_id=f"sim_{uuid.uuid4().hex[:16]}")

    async def send_sms(self, message: SMSMessage) -> SendReceipt:
        self._keep(message)
        logger.info("Simulated SMS send", to=message.to_number, correlation_id=message.correlation_id)
        return SendReceipt(provider_message_id=f"SM{uuid.uuid4().hex}")

    async def send_letter(self, request: LetterRequest) -> SendReceipt:
        self._keep(request)
        letter_id = f"ltr_{uuid.uuid4().hex[:9]}"
        logger.info("Simulated letter send", letter_id=letter_id, correlation_id=request.correlation_id)
        return SendReceipt(
            provider_message_id=letter_id,
            external_reference=letter_id,
            expected_delivery_date=(utcnow() + timedelta(days=3)).date().isoformat(),
            tracking_url=f"https://lob.com/letters/{letter_id}/tracking",
        )

    def get_status(self) -> Dict[str, Any]:
        return {"service": self.service_name, "state": "simulated", "is_available": True}

    async def close(self) -> None:
        return None


class SenderClients:
    """Container for all channel transports."""

    def __init__(self, email, sms, physical):
        self.email = email
        self.sms = sms
        self.physical = physical

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SenderClients":
        settings = settings or get_settings()
        if settings.mock_external_services:
            logger.info("Using simulated channel transports")
            return cls(
                email=SimulatedSender("sendgrid"),
                sms=SimulatedSender("twilio"),
                physical=SimulatedSender("lob"),
            )

        return cls(
            email=SendGridEmailSender.from_settings(settings),
            sms=TwilioSMSSender.from_settings(settings),
            physical=LobMailSender.from_settings(settings),
        )

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        """Circuit breaker status of every transport."""
        return {
            "email": self.email.get_status(),
            "sms": self.sms.get_status(),
            "physical": self.physical.get_status(),
        }

    async def close(self) -> None:
        await self.email.close()
        await self.sms.close()
        await self.physical.close()
