"""
Tests for the SendGrid, Twilio and Lob transports.
"""
import json

import httpx
import pytest

from collections_engine.core.exceptions import ExternalServiceError
from collections_engine.services.external import (
    EmailMessage,
    LetterRequest,
    LobMailSender,
    PostalAddress,
    SenderClients,
    SendGridEmailSender,
    SimulatedSender,
    SMSMessage,
    TwilioSMSSender,
)


def recording_transport(response: httpx.Response):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return response

    return httpx.MockTransport(handler), requests


def make_address(name: str) -> PostalAddress:
    return PostalAddress(
        name=name,
        address_line1="123 Main St",
        address_city="Springfield",
        address_state="IL",
        address_zip="62701",
    )


class TestSendGridEmailSender:
    """Test cases for the SendGrid transport."""

    @pytest.mark.asyncio
    async def test_send_email(self, settings_factory):
        transport, requests = recording_transport(
            httpx.Response(202, headers={"X-Message-Id": "sg-msg-1"})
        )
        sender = SendGridEmailSender.from_settings(
            settings_factory(sendgrid_api_key="SG.key"), transport=transport
        )

        receipt = await sender.send_email(EmailMessage(
            to_email="jane@example.com",
            to_name="Jane Doe",
            subject="Balance due",
            html="<p>Hello</p>",
            from_email="billing@acme.test",
            from_name="Acme Recovery",
            correlation_id="corr-1",
        ))

        assert receipt.provider_message_id == "sg-msg-1"
        request = requests[0]
        assert request.url.path == "/v3/mail/send"
        assert request.headers["Authorization"] == "Bearer SG.key"

        payload = json.loads(request.content)
        personalization = payload["personalizations"][0]
        assert personalization["to"] == [{"email": "jane@example.com", "name": "Jane Doe"}]
        assert personalization["custom_args"] == {"correlation_id": "corr-1"}
        assert payload["from"] == {"email": "billing@acme.test", "name": "Acme Recovery"}
        assert "reply_to" not in payload
        await sender.close()

    @pytest.mark.asyncio
    async def test_http_error_becomes_service_error(self, settings):
        transport, _ = recording_transport(httpx.Response(500, text="upstream"))
        sender = SendGridEmailSender.from_settings(settings, transport=transport)

        with pytest.raises(ExternalServiceError) as exc_info:
            await sender.send_email(EmailMessage(
                to_email="jane@example.com",
                subject="s",
                html="h",
                from_email="billing@acme.test",
                correlation_id="corr-1",
            ))

        assert exc_info.value.status_code == 500
        assert exc_info.value.service_name == "sendgrid"
        await sender.close()


class TestTwilioSMSSender:
    """Test cases for the Twilio transport."""

    @pytest.mark.asyncio
    async def test_send_sms(self, settings_factory):
        transport, requests = recording_transport(httpx.Response(201, json={"sid": "SM123"}))
        sender = TwilioSMSSender.from_settings(
            settings_factory(
                twilio_account_sid="AC1",
                twilio_auth_token="token",
                twilio_from_number="+15550001111",
            ),
            transport=transport,
        )

        receipt = await sender.send_sms(
            SMSMessage(to_number="+15555550100", body="Hi", correlation_id="corr-1")
        )

        assert receipt.provider_message_id == "SM123"
        request = requests[0]
        assert request.url.path == "/2010-04-01/Accounts/AC1/Messages.json"
        form = request.content.decode()
        assert "From=%2B15550001111" in form
        assert "Body=Hi" in form
        await sender.close()

    @pytest.mark.asyncio
    async def test_missing_sid(self, settings):
        transport, _ = recording_transport(httpx.Response(201, json={}))
        sender = TwilioSMSSender.from_settings(settings, transport=transport)

        with pytest.raises(ExternalServiceError):
            await sender.send_sms(SMSMessage(to_number="+1", body="Hi", correlation_id="c"))
        await sender.close()


class TestLobMailSender:
    """Test cases for the Lob transport."""

    @pytest.mark.asyncio
    async def test_send_letter(self, settings):
        transport, requests = recording_transport(httpx.Response(200, json={
            "id": "ltr_abc",
            "expected_delivery_date": "2026-03-06",
            "url": "https://lob.com/letters/ltr_abc",
        }))
        sender = LobMailSender.from_settings(settings, transport=transport)

        receipt = await sender.send_letter(LetterRequest(
            to_address=make_address("Jane Doe"),
            from_address=make_address("Acme Recovery"),
            content="<p>Dear Jane</p>",
            correlation_id="corr-1",
        ))

        assert receipt.external_reference == "ltr_abc"
        assert receipt.expected_delivery_date == "2026-03-06"
        assert receipt.tracking_url == "https://lob.com/letters/ltr_abc"

        payload = json.loads(requests[0].content)
        assert payload["to"]["name"] == "Jane Doe"
        assert payload["metadata"] == {"correlation_id": "corr-1"}
        await sender.close()


class TestSenderClients:
    def test_simulated_when_mocked(self, settings):
        senders = SenderClients.from_settings(settings)

        assert isinstance(senders.email, SimulatedSender)
        assert senders.get_status()["sms"]["is_available"] is True

    @pytest.mark.asyncio
    async def test_real_transports_when_not_mocked(self, settings_factory):
        senders = SenderClients.from_settings(settings_factory(mock_external_services=False))

        assert isinstance(senders.email, SendGridEmailSender)
        assert isinstance(senders.sms, TwilioSMSSender)
        assert isinstance(senders.physical, LobMailSender)
        assert senders.get_status()["email"]["state"] == "closed"
        await senders.close()


class TestSimulatedSender:
    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        sender = SimulatedSender("twilio", max_kept=2)

        for i in range(5):
            await sender.send_sms(
                SMSMessage(to_number=f"+1555000000{i}", body="Hi", correlation_id=f"c{i}")
            )

        assert len(sender.sent) == 2
        assert [m.to_number for m in sender.sent] == ["+15550000003", "+15550000004"]
