"""
Pydantic schemas for provider delivery events.
"""
from datetime import datetime, timezone
from typing import List, Optional, Union

from pydantic import BaseModel, Field

from collections_engine.utils.clock import utcnow


class DeliveryEventPayload(BaseModel):
    """
    One provider event.

    Custom arguments attached at send time (our correlation id) arrive as
    top-level keys, so unknown keys are kept.
    """
    event: str = Field(..., description="Provider event type (delivered, open, click, ...)")
    correlation_id: Optional[str] = Field(None, description="Correlation id set when sending")
    timestamp: Optional[Union[int, float]] = Field(None, description="Unix timestamp of the event")
    email: Optional[str] = None
    reason: Optional[str] = None
    sg_event_id: Optional[str] = None
    sg_message_id: Optional[str] = None

    model_config = {"extra": "allow"}

    def occurred_at(self) -> datetime:
        if self.timestamp is None:
            return utcnow()
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc).replace(tzinfo=None)


class DeliveryBatchResult(BaseModel):
    processed: int = 0
    applied: int = 0
    ignored: int = 0
    errors: List[str] = Field(default_factory=list)


class DeliveryEventsResponse(BaseModel):
    success: bool = True
    processed: int
    applied: int
    ignored: int
