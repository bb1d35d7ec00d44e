"""SQLAlchemy database models for the collections workflow engine."""

import uuid

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer,
    String, Text, JSON, UniqueConstraint, text
)
from sqlalchemy.orm import declarative_base, relationship

from collections_engine.utils.clock import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class WorkflowRecord(Base):
    """Workflow definitions owned by a tenant."""
    __tablename__ = "workflows"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    steps = relationship(
        "WorkflowStepRecord",
        back_populates="workflow",
        order_by="WorkflowStepRecord.step_number",
    )

    __table_args__ = (
        # At most one default workflow per tenant
        Index(
            "uq_workflows_default_per_tenant",
            "tenant_id",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
    )


class WorkflowStepRecord(Base):
    """Ordered steps of a workflow."""
    __tablename__ = "workflow_steps"

    id = Column(String(36), primary_key=True, default=_uuid)
    workflow_id = Column(String(36), ForeignKey("workflows.id"), nullable=False, index=True)
    step_number = Column(Integer, nullable=False)
    step_type = Column(String(20), nullable=False)
    delay_days = Column(Integer, nullable=False, default=0)
    delay_hours = Column(Integer, nullable=False, default=0)
    template_id = Column(String(36), ForeignKey("templates.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    workflow = relationship("WorkflowRecord", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("workflow_id", "step_number", name="uq_workflow_steps_number"),
    )


class TemplateRecord(Base):
    """Message templates per channel."""
    __tablename__ = "templates"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    channel = Column(String(20), nullable=False)
    email_subject = Column(Text, nullable=True)
    html_content = Column(Text, nullable=True)
    sms_content = Column(Text, nullable=True)
    physical_content = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class DebtorRecord(Base):
    """Debtor accounts. Status is maintained outside the engine."""
    __tablename__ = "debtors"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    address = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    state = Column(String(50), nullable=True)
    zip = Column(String(20), nullable=True)
    country = Column(String(2), nullable=True, default="US")
    balance_cents = Column(Integer, nullable=False, default=0)
    account_number = Column(String(100), nullable=True)
    original_creditor = Column(String(255), nullable=True)
    status = Column(String(50), nullable=False, default="active")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class CompanySettingsRecord(Base):
    """Tenant plan and branding."""
    __tablename__ = "company_settings"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, unique=True)
    plan = Column(String(20), nullable=False, default="free")
    company_name = Column(String(255), nullable=True)
    company_address = Column(String(255), nullable=True)
    company_city = Column(String(100), nullable=True)
    company_state = Column(String(50), nullable=True)
    company_zip = Column(String(20), nullable=True)
    company_phone = Column(String(50), nullable=True)
    company_email = Column(String(255), nullable=True)
    company_website = Column(String(255), nullable=True)
    license_number = Column(String(100), nullable=True)
    letter_footer = Column(Text, nullable=True)
    legal_disclaimer = Column(Text, nullable=True)
    from_email = Column(String(255), nullable=True)
    from_name = Column(String(255), nullable=True)
    reply_to_email = Column(String(255), nullable=True)


class EnrollmentRecord(Base):
    """Debtor enrollment in a workflow."""
    __tablename__ = "debtor_workflows"

    id = Column(String(36), primary_key=True, default=_uuid)
    debtor_id = Column(String(36), ForeignKey("debtors.id"), nullable=False, index=True)
    workflow_id = Column(String(36), ForeignKey("workflows.id"), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    current_step_number = Column(Integer, nullable=False, default=0)
    next_action_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    status_reason = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    executions = relationship(
        "ExecutionRecord",
        back_populates="enrollment",
        order_by="ExecutionRecord.scheduled_at",
    )

    __table_args__ = (
        Index(
            "uq_debtor_workflows_one_active",
            "debtor_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )


class ExecutionRecord(Base):
    """Execution ledger: one row per attempt at a step."""
    __tablename__ = "workflow_executions"

    id = Column(String(36), primary_key=True, default=_uuid)
    enrollment_id = Column(
        String(36), ForeignKey("debtor_workflows.id"), nullable=False, index=True
    )
    workflow_step_id = Column(String(36), ForeignKey("workflow_steps.id"), nullable=True)
    step_number = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    attempt = Column(Integer, nullable=False, default=1)
    scheduled_at = Column(DateTime, nullable=False, default=utcnow)
    claimed_at = Column(DateTime, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    communication_record_id = Column(String(36), ForeignKey("letters.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    enrollment = relationship("EnrollmentRecord", back_populates="executions")

    __table_args__ = (
        Index("ix_workflow_executions_due", "status", "scheduled_at"),
        Index(
            "uq_workflow_executions_one_open",
            "enrollment_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'executing')"),
            postgresql_where=text("status IN ('pending', 'executing')"),
        ),
    )


class CommunicationRecordRow(Base):
    """Communications sent to debtors (email, SMS, letters)."""
    __tablename__ = "letters"

    id = Column(String(36), primary_key=True, default=_uuid)
    debtor_id = Column(String(36), ForeignKey("debtors.id"), nullable=False, index=True)
    template_id = Column(String(36), nullable=True)
    channel = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="draft")
    correlation_id = Column(String(64), nullable=False, unique=True)
    provider_message_id = Column(String(255), nullable=True)
    external_reference = Column(String(255), nullable=True)
    expected_delivery_date = Column(String(20), nullable=True)
    tracking_url = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    opened_at = Column(DateTime, nullable=True)
    clicked_at = Column(DateTime, nullable=True)
    bounced_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    spam_reported_at = Column(DateTime, nullable=True)
    unsubscribed_at = Column(DateTime, nullable=True)


class DeliveryEventRecord(Base):
    """Idempotency ledger for provider delivery events."""
    __tablename__ = "delivery_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    correlation_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(30), nullable=False)
    occurred_at = Column(DateTime, nullable=False)
    provider_event_id = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=True)
    received_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("correlation_id", "event_type", name="uq_delivery_events_type"),
    )


class TenantWebhookRecord(Base):
    """Per-tenant outbound webhook configuration."""
    __tablename__ = "tenant_webhooks"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, unique=True)
    url = Column(Text, nullable=False)
    secret = Column(String(255), nullable=True)
    events = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
