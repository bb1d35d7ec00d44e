"""
Delivery-event webhook and email open tracking endpoints.
"""
import base64
import json
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response
from pydantic import ValidationError

from collections_engine.core.config import Settings, get_settings
from collections_engine.core.dependencies import get_delivery_event_service
from collections_engine.core.exceptions import AuthenticationError
from collections_engine.core.logging import get_logger
from collections_engine.schemas.delivery_event import DeliveryEventPayload, DeliveryEventsResponse
from collections_engine.services.delivery_events import DeliveryEventService, verify_signature

logger = get_logger(__name__)

router = APIRouter(tags=["delivery"])

TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@router.post("/delivery-events", response_model=DeliveryEventsResponse)
async def receive_delivery_events(
    request: Request,
    settings: Settings = Depends(get_settings),
    service: DeliveryEventService = Depends(get_delivery_event_service)
):
    """
    Receive a batch of provider delivery events.

    When ``delivery_webhook_secret`` is configured the request must carry a
    valid base64 HMAC-SHA256 of timestamp + body.
    """
    body = await request.body()

    if settings.delivery_webhook_secret:
        signature = request.headers.get("X-Webhook-Signature", "")
        timestamp = request.headers.get("X-Webhook-Timestamp")
        if not verify_signature(settings.delivery_webhook_secret, timestamp, body, signature):
            logger.warning("Delivery webhook signature rejected")
            raise AuthenticationError()

    try:
        raw = json.loads(body or b"[]")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be JSON")

    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Body must be an event or a list of events"
        )

    events = []
    malformed = 0
    for item in raw:
        try:
            events.append(DeliveryEventPayload.model_validate(item))
        except ValidationError:
            malformed += 1

    result = await service.process_events(events)
    if malformed:
        logger.warning("Malformed delivery events ignored", count=malformed)

    return DeliveryEventsResponse(
        processed=result.processed + malformed,
        applied=result.applied,
        ignored=result.ignored + malformed,
    )


@router.api_route("/open", methods=["GET", "POST", "HEAD"])
async def track_open(
    id: str = "",
    service: DeliveryEventService = Depends(get_delivery_event_service)
):
    """Tracking pixel. Always answers with the GIF, whatever the id."""
    try:
        correlation_id = str(uuid.UUID(id))
    except ValueError:
        correlation_id = None

    if correlation_id:
        try:
            await service.record_open(correlation_id)
        except Exception as e:
            logger.error("Failed to record open", correlation_id=correlation_id, error=str(e))

    return Response(content=TRACKING_PIXEL, media_type="image/gif", headers=NO_CACHE_HEADERS)
