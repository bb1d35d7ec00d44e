from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from collections_engine.services.webhook_notifier import WEBHOOK_EVENTS


class WebhookConfigRequest(BaseModel):
    """Tenant outbound webhook configuration"""
    url: str = Field(..., description="Endpoint receiving engine events")
    secret: str = Field(..., min_length=8, description="Shared secret for X-Webhook-Signature")
    events: List[str] = Field(..., min_length=1)
    is_active: bool = True

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not (v.startswith("https://") or v.startswith("http://")):
            raise ValueError("Invalid URL format")
        return v

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: List[str]) -> List[str]:
        invalid = [event for event in v if event not in WEBHOOK_EVENTS]
        if invalid:
            raise ValueError(f"Invalid events: {', '.join(invalid)}")
        return v


class WebhookView(BaseModel):
    """Webhook configuration without its secret"""
    url: str
    events: List[str]
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WebhookConfigResponse(BaseModel):
    success: bool = True
    webhook: Optional[WebhookView] = None
    available_events: Dict[str, str] = Field(default_factory=lambda: dict(WEBHOOK_EVENTS))
