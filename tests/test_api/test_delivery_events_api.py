"""
Tests for the delivery-event webhook and tracking pixel endpoints.
"""
import base64
import hashlib
import hmac
import json
import uuid

import pytest

from collections_engine.api.delivery_events import TRACKING_PIXEL
from collections_engine.core.config import get_settings
from collections_engine.models.workflow import CommunicationStatus, StepType


async def sent_record(store, debtor_id):
    correlation_id = str(uuid.uuid4())
    await store.create_communication({
        "debtor_id": debtor_id,
        "channel": StepType.EMAIL,
        "status": CommunicationStatus.SENT,
        "correlation_id": correlation_id,
    })
    return correlation_id


def sign(secret: str, timestamp: str, body: bytes) -> str:
    digest = hmac.new(secret.encode(), timestamp.encode() + body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class TestDeliveryEventsWebhook:
    """Test cases for POST /delivery-events."""

    @pytest.mark.asyncio
    async def test_batch_is_applied(self, api, seed, store):
        correlation_id = await sent_record(store, seed.debtor())
        events = [
            {"event": "delivered", "correlation_id": correlation_id, "timestamp": 1772445600},
            {"event": "open", "correlation_id": correlation_id, "timestamp": 1772449200},
            {"event": "processed", "correlation_id": correlation_id},
            {"correlation_id": correlation_id},
        ]

        response = api.post("/delivery-events", json=events)

        assert response.status_code == 200
        assert response.json() == {"success": True, "processed": 4, "applied": 2, "ignored": 2}
        record = await store.get_communication_by_correlation(correlation_id)
        assert record.status == CommunicationStatus.OPENED

    def test_single_event_object(self, api):
        response = api.post("/delivery-events", json={"event": "open", "correlation_id": "unknown"})

        assert response.status_code == 200
        assert response.json()["processed"] == 1
        assert response.json()["ignored"] == 1

    def test_invalid_json(self, api):
        response = api.post(
            "/delivery-events", content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400

    def test_scalar_body(self, api):
        assert api.post("/delivery-events", json=42).status_code == 400


class TestDeliveryEventsSignature:
    """Test cases for signed delivery webhooks."""

    @pytest.fixture
    def signed_api(self, api, settings_factory):
        from collections_engine.main import app

        app.dependency_overrides[get_settings] = lambda: settings_factory(
            delivery_webhook_secret="hook-secret"
        )
        return api

    def test_valid_signature(self, signed_api):
        body = json.dumps([{"event": "open", "correlation_id": "unknown"}]).encode()
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Timestamp": "1772445600",
            "X-Webhook-Signature": sign("hook-secret", "1772445600", body),
        }

        response = signed_api.post("/delivery-events", content=body, headers=headers)

        assert response.status_code == 200

    def test_invalid_signature(self, signed_api):
        body = b"[]"
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Timestamp": "1772445600",
            "X-Webhook-Signature": sign("wrong-secret", "1772445600", body),
        }

        response = signed_api.post("/delivery-events", content=body, headers=headers)

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid signature"

    def test_missing_signature(self, signed_api):
        assert signed_api.post("/delivery-events", json=[]).status_code == 401


class TestTrackingPixel:
    """Test cases for GET /open."""

    @pytest.mark.asyncio
    async def test_open_is_recorded(self, api, seed, store):
        correlation_id = await sent_record(store, seed.debtor())

        response = api.get(f"/open?id={correlation_id}")

        assert response.status_code == 200
        assert response.content == TRACKING_PIXEL
        assert response.headers["content-type"] == "image/gif"
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        record = await store.get_communication_by_correlation(correlation_id)
        assert record.status == CommunicationStatus.OPENED

    def test_pixel_for_invalid_id(self, api):
        response = api.get("/open?id=not-a-uuid")

        assert response.status_code == 200
        assert response.content == TRACKING_PIXEL

    def test_pixel_without_id(self, api):
        assert api.get("/open").content == TRACKING_PIXEL

    def test_head_and_post(self, api):
        assert api.head(f"/open?id={uuid.uuid4()}").status_code == 200
        assert api.post("/open").content == TRACKING_PIXEL

    def test_pixel_is_a_gif(self):
        assert TRACKING_PIXEL.startswith(b"GIF89a")
