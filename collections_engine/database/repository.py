"""
Storage interface for the workflow engine.

The engine only talks to the relational store through ``WorkflowStore``.
Two implementations exist: ``SQLAlchemyWorkflowStore`` (any SQLAlchemy
database, SQLite in tests) and ``SupabaseWorkflowStore`` (PostgREST).
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from collections_engine.models.workflow import (
    CommunicationRecord,
    Debtor,
    Enrollment,
    Execution,
    Template,
    TenantSettings,
    TenantWebhookConfig,
    WorkflowDefinition,
    WorkflowStep,
)


def plain_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Unwrap enum members so field dicts can go straight to the store."""
    return {
        key: value.value if isinstance(value, Enum) else value
        for key, value in fields.items()
    }


class WorkflowStore(ABC):
    """Abstract data access for workflows, enrollments and the execution ledger."""

    # Definitions (read-only to the engine)

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        ...

    @abstractmethod
    async def get_workflow_steps(self, workflow_id: str) -> List[WorkflowStep]:
        """Steps ordered by step_number."""

    @abstractmethod
    async def get_workflow_step(
        self, workflow_id: str, step_number: int
    ) -> Optional[WorkflowStep]:
        ...

    @abstractmethod
    async def get_template(self, template_id: str) -> Optional[Template]:
        ...

    @abstractmethod
    async def get_debtor(self, debtor_id: str) -> Optional[Debtor]:
        ...

    @abstractmethod
    async def get_tenant_settings(self, tenant_id: str) -> TenantSettings:
        """Tenant settings, or defaults when the tenant has no row."""

    # Enrollments

    @abstractmethod
    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        ...

    @abstractmethod
    async def get_active_enrollment(self, debtor_id: str) -> Optional[Enrollment]:
        ...

    @abstractmethod
    async def create_enrollment(
        self, debtor_id: str, workflow_id: str, now: datetime
    ) -> Enrollment:
        """
        Insert an active enrollment.

        Raises:
            AlreadyEnrolledError: If the debtor already has an active enrollment
        """

    @abstractmethod
    async def update_enrollment(
        self,
        enrollment_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        """Update an enrollment, optionally only while it has ``expected_status``."""

    # Execution ledger

    @abstractmethod
    async def create_execution(
        self,
        enrollment_id: str,
        step_number: int,
        workflow_step_id: Optional[str],
        scheduled_at: datetime,
        attempt: int = 1,
    ) -> Execution:
        ...

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        ...

    @abstractmethod
    async def list_due_executions(self, now: datetime, limit: int) -> List[Execution]:
        """Pending executions with scheduled_at <= now, oldest first."""

    @abstractmethod
    async def claim_execution(self, execution_id: str, now: datetime) -> bool:
        """
        Atomically move a pending execution to executing.

        Returns:
            True only for the single caller whose update changed the row
        """

    @abstractmethod
    async def update_execution(
        self,
        execution_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        ...

    @abstractmethod
    async def skip_open_executions(
        self, enrollment_id: str, reason: str, now: datetime
    ) -> int:
        """Move every pending or executing execution of an enrollment to skipped."""

    @abstractmethod
    async def list_executions(self, enrollment_id: str) -> List[Execution]:
        """Full ledger for an enrollment in scheduling order."""

    @abstractmethod
    async def list_stale_executions(self, claimed_before: datetime) -> List[Execution]:
        """Executions stuck in executing since before ``claimed_before``."""

    # Communication records

    @abstractmethod
    async def create_communication(self, fields: Dict[str, Any]) -> CommunicationRecord:
        ...

    @abstractmethod
    async def update_communication(
        self,
        record_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Sequence[str]] = None,
    ) -> bool:
        """Update a record, optionally only while its status is one of ``expected_statuses``."""

    @abstractmethod
    async def get_communication_by_correlation(
        self, correlation_id: str
    ) -> Optional[CommunicationRecord]:
        ...

    # Delivery events

    @abstractmethod
    async def record_delivery_event(
        self,
        correlation_id: str,
        event_type: str,
        occurred_at: datetime,
        provider_event_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Insert into the idempotency ledger. False when already recorded."""

    # Tenant webhooks

    @abstractmethod
    async def get_webhook_config(self, tenant_id: str) -> Optional[TenantWebhookConfig]:
        ...

    @abstractmethod
    async def upsert_webhook_config(
        self, config: TenantWebhookConfig
    ) -> TenantWebhookConfig:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...
