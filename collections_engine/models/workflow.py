"""Domain models for workflows, enrollments and the execution ledger."""

from datetime import datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field, field_validator


class StepType(str, Enum):
    """Workflow step type enumeration"""
    EMAIL = "email"
    SMS = "sms"
    PHYSICAL = "physical"
    WAIT = "wait"


class EnrollmentStatus(str, Enum):
    """Enrollment status enumeration"""
    ACTIVE = "active"
    COMPLETED = "completed"
    STOPPED = "stopped"


class ExecutionStatus(str, Enum):
    """Execution status enumeration"""
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


OPEN_EXECUTION_STATUSES = (ExecutionStatus.PENDING.value, ExecutionStatus.EXECUTING.value)


class CommunicationStatus(str, Enum):
    """Communication record status enumeration"""
    DRAFT = "draft"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    FAILED = "failed"
    PAID = "paid"
    ESCALATED = "escalated"


class PlanTier(str, Enum):
    """Tenant subscription plan"""
    FREE = "free"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


# Debtor statuses that end any active enrollment
HALTING_DEBTOR_STATUSES = frozenset({"paid", "resolved", "escalated"})


class WorkflowStep(BaseModel):
    """A single timed action within a workflow."""
    id: str
    workflow_id: str
    step_number: int
    step_type: StepType
    delay_days: int = 0
    delay_hours: int = 0
    template_id: Optional[str] = None

    model_config = {"from_attributes": True}


class WorkflowDefinition(BaseModel):
    id: str
    tenant_id: str
    name: str
    is_default: bool = False
    is_active: bool = True

    model_config = {"from_attributes": True}


class Template(BaseModel):
    id: str
    tenant_id: str
    name: str
    channel: StepType
    email_subject: Optional[str] = None
    html_content: Optional[str] = None
    sms_content: Optional[str] = None
    physical_content: Optional[str] = None

    model_config = {"from_attributes": True}


class Debtor(BaseModel):
    id: str
    tenant_id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = "US"
    balance_cents: int = 0
    account_number: Optional[str] = None
    original_creditor: Optional[str] = None
    status: str = "active"

    model_config = {"from_attributes": True}


class TenantSettings(BaseModel):
    """Tenant plan and branding. Missing rows resolve to these defaults."""
    tenant_id: str
    plan: PlanTier = PlanTier.FREE
    company_name: Optional[str] = None
    company_address: Optional[str] = None
    company_city: Optional[str] = None
    company_state: Optional[str] = None
    company_zip: Optional[str] = None
    company_phone: Optional[str] = None
    company_email: Optional[str] = None
    company_website: Optional[str] = None
    license_number: Optional[str] = None
    letter_footer: Optional[str] = None
    legal_disclaimer: Optional[str] = None
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    reply_to_email: Optional[str] = None

    model_config = {"from_attributes": True}

    @field_validator("plan", mode="before")
    @classmethod
    def normalize_plan(cls, v):
        # Unknown or missing plans fall back to the most restrictive tier
        if isinstance(v, PlanTier):
            return v
        try:
            return PlanTier(str(v).lower())
        except ValueError:
            return PlanTier.FREE


class Enrollment(BaseModel):
    id: str
    debtor_id: str
    workflow_id: str
    status: EnrollmentStatus
    current_step_number: int = 0
    next_action_at: Optional[datetime] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    status_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class Execution(BaseModel):
    id: str
    enrollment_id: str
    workflow_step_id: Optional[str] = None
    step_number: int
    status: ExecutionStatus
    attempt: int = 1
    scheduled_at: datetime
    claimed_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    communication_record_id: Optional[str] = None

    model_config = {"from_attributes": True}


class CommunicationRecord(BaseModel):
    """A sent (or attempted) email, SMS or letter."""
    id: str
    debtor_id: str
    template_id: Optional[str] = None
    channel: StepType
    status: CommunicationStatus
    correlation_id: str
    provider_message_id: Optional[str] = None
    external_reference: Optional[str] = None
    expected_delivery_date: Optional[str] = None
    tracking_url: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
    bounced_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    spam_reported_at: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TenantWebhookConfig(BaseModel):
    tenant_id: str
    url: str
    secret: Optional[str] = None
    events: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class EnrollmentTimeline(BaseModel):
    """Enrollment with its ordered execution ledger."""
    enrollment: Enrollment
    executions: List[Execution] = Field(default_factory=list)
